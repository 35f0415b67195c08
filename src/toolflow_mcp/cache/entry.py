"""
Cache entry and statistics types for the tiered documentation cache.
"""

import json
from dataclasses import dataclass, field
from typing import Any


def compute_size_bytes(value: Any) -> int:
    """Size of the value as serialized for the durable tier."""
    return len(json.dumps(value, default=str).encode("utf-8"))


@dataclass
class CacheEntry:
    """
    A cached value with its freshness window.

    Invariants: created_at < expires_at <= stale_until. Without
    stale-while-revalidate, stale_until == expires_at.
    """
    key: str
    value: Any
    created_at: float
    expires_at: float
    stale_until: float
    tags: frozenset[str] = frozenset()
    size_bytes: int = 0
    access_count: int = 0
    last_accessed: float = 0.0
    partition: str | None = None

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at

    def is_dead(self, now: float) -> bool:
        """Past the last instant the entry may be served."""
        return now >= self.stale_until

    def touch(self, now: float) -> None:
        self.last_accessed = now
        self.access_count += 1

    def to_record(self) -> dict[str, Any]:
        """Durable layout: key, value, timestamps, tags, size, partition."""
        return {
            "key": self.key,
            "value": json.dumps(self.value, default=str),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "stale_until": self.stale_until,
            "tags": json.dumps(sorted(self.tags)),
            "size_bytes": self.size_bytes,
            "partition": self.partition,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any], now: float) -> "CacheEntry":
        return cls(
            key=record["key"],
            value=json.loads(record["value"]),
            created_at=record["created_at"],
            expires_at=record["expires_at"],
            stale_until=record["stale_until"],
            tags=frozenset(json.loads(record.get("tags") or "[]")),
            size_bytes=record.get("size_bytes", 0),
            access_count=0,
            last_accessed=now,
            partition=record.get("partition"),
        )


@dataclass
class CacheStats:
    """Statistics about cache usage."""
    total_entries: int = 0
    total_size_bytes: int = 0
    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    durable_hits: int = 0
    evictions: int = 0
    refreshes: int = 0
    durable_errors: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups served from cache."""
        if self.total_requests == 0:
            return 0.0
        return self.hits / self.total_requests

    @property
    def miss_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.misses / self.total_requests

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "total_size_bytes": self.total_size_bytes,
            "hit_rate": self.hit_rate,
            "miss_rate": self.miss_rate,
            "evictions": self.evictions,
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "durable_hits": self.durable_hits,
            "refreshes": self.refreshes,
            "durable_errors": self.durable_errors,
            **self.extra,
        }
