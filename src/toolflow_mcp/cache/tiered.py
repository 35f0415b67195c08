"""
Tiered cache for documentation lookups.

Two levels:
- Memory tier: OrderedDict kept in least-recently-accessed order, bounded by
  entry count and aggregate byte size
- Durable tier: optional CacheStore (SQLite by default)

Freshness policy:
- An entry is fresh until expires_at (TTL)
- With stale-while-revalidate enabled, an expired entry may still be served
  to callers that ask for it until stale_until, while a background task
  refreshes it
- stale_until never exceeds created_at + max_age

Durable-tier failures are logged and degrade to cache misses.
"""

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Literal

from ..config import CacheConfig
from ..errors import CacheStoreError
from .entry import CacheEntry, CacheStats, compute_size_bytes
from .store import CacheStore

logger = logging.getLogger(__name__)

LookupStatus = Literal["hit", "stale", "miss"]


@dataclass
class CacheLookup:
    """Value returned by get_or_load and where it came from."""
    value: Any
    status: LookupStatus


@dataclass
class _PendingLoad:
    """A loader call in flight and the tags its result will be stored under."""
    tags: frozenset[str]
    partition: str | None
    task: asyncio.Task | None = None
    discarded: bool = False


class TieredCache:
    """
    Memory + durable cache with TTL, stale-while-revalidate, max-age,
    tag invalidation and LRU eviction under a byte cap.

    The memory tier is guarded by a lock so independent runs (and threads)
    can share one instance. The durable tier assumes a single writer process.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        store: CacheStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CacheConfig()
        self.store = store
        self._clock = clock

        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._total_bytes = 0
        self._lock = threading.Lock()

        self._hits = 0
        self._misses = 0
        self._stale_hits = 0
        self._durable_hits = 0
        self._evictions = 0
        self._refreshes = 0
        self._durable_errors = 0

        self._inflight: dict[str, _PendingLoad] = {}
        self._orphans: set[asyncio.Task] = set()
        self._sweeper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Memory tier helpers (call with the lock held)
    # ------------------------------------------------------------------

    def _remove_locked(self, key: str) -> CacheEntry | None:
        entry = self._memory.pop(key, None)
        if entry is not None:
            self._total_bytes -= entry.size_bytes
        return entry

    def _insert_locked(self, entry: CacheEntry) -> None:
        self._remove_locked(entry.key)

        if entry.size_bytes > self.config.max_memory_bytes:
            logger.debug(
                f"[CACHE] {entry.key[:12]} is {entry.size_bytes} bytes, "
                f"over the memory cap; durable tier only"
            )
            return

        while self._memory and (
            len(self._memory) >= self.config.max_memory_entries
            or self._total_bytes + entry.size_bytes > self.config.max_memory_bytes
        ):
            evicted_key, evicted = self._memory.popitem(last=False)
            self._total_bytes -= evicted.size_bytes
            self._evictions += 1
            logger.debug(f"[CACHE] Evicted {evicted_key[:12]} (last accessed {evicted.last_accessed:.3f})")

        self._memory[entry.key] = entry
        self._total_bytes += entry.size_bytes

    def _discard_loads(self, matches: Callable[[str, _PendingLoad], bool]) -> None:
        """Stop in-flight loads hit by an invalidation from storing their result."""
        for key, pending in list(self._inflight.items()):
            if matches(key, pending):
                pending.discarded = True
                del self._inflight[key]
                self._orphans.add(pending.task)
                pending.task.add_done_callback(self._orphans.discard)

    async def _durable(self, operation: str, call: Awaitable[Any], default: Any = None) -> Any:
        """Await a durable-tier call; failures are logged and yield default."""
        try:
            return await call
        except CacheStoreError as e:
            self._durable_errors += 1
            logger.warning(f"[CACHE] Durable tier {operation} failed, continuing without it: {e}")
            return default

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_entry(self, key: str, allow_stale: bool = False) -> CacheEntry | None:
        """
        Look up an entry.

        Returns fresh entries always; expired-but-not-dead entries only when
        allow_stale is set and stale-while-revalidate is enabled.
        """
        now = self._clock()
        serve_stale = allow_stale and self.config.stale_while_revalidate

        with self._lock:
            entry = self._memory.get(key)
            if entry is not None:
                if entry.is_dead(now):
                    self._remove_locked(key)
                elif entry.is_fresh(now) or serve_stale:
                    entry.touch(now)
                    self._memory.move_to_end(key)
                    self._hits += 1
                    if not entry.is_fresh(now):
                        self._stale_hits += 1
                    return entry
                else:
                    self._misses += 1
                    return None

        if self.store is None:
            with self._lock:
                self._misses += 1
            return None

        stored = await self._durable("read", self.store.get(key, now))
        if stored is None or stored.is_dead(now):
            with self._lock:
                self._misses += 1
            return None

        stored.touch(now)
        with self._lock:
            self._insert_locked(stored)
            if stored.is_fresh(now) or serve_stale:
                self._hits += 1
                self._durable_hits += 1
                if not stored.is_fresh(now):
                    self._stale_hits += 1
                return stored
            self._misses += 1
        return None

    async def get(self, key: str, allow_stale: bool = False) -> Any | None:
        """Cached value, or None on a miss. None is never stored, so it only means a miss."""
        entry = await self.get_entry(key, allow_stale=allow_stale)
        return entry.value if entry is not None else None

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: float | None = None,
        tags: Iterable[str] | None = None,
        partition: str | None = None,
    ) -> CacheEntry:
        """Store a value in both tiers and return the new entry."""
        if value is None:
            raise ValueError(f"Cannot cache None for {key[:12]}")
        ttl = self.config.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl}")
        ttl = min(ttl, self.config.max_age_seconds)

        now = self._clock()
        expires_at = now + ttl
        if self.config.stale_while_revalidate:
            stale_until = min(
                expires_at + self.config.swr_window_seconds,
                now + self.config.max_age_seconds,
            )
        else:
            stale_until = expires_at

        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=expires_at,
            stale_until=stale_until,
            tags=frozenset(tags or ()),
            size_bytes=compute_size_bytes(value),
            last_accessed=now,
            partition=partition,
        )

        with self._lock:
            self._insert_locked(entry)

        if self.store is not None:
            await self._durable("write", self.store.put(entry))
        return entry

    async def invalidate(self, key: str) -> bool:
        """Remove one key from both tiers."""
        self._discard_loads(lambda k, _: k == key)
        with self._lock:
            removed = self._remove_locked(key) is not None

        if self.store is not None:
            removed = await self._durable("delete", self.store.delete(key), False) or removed
        return removed

    async def invalidate_by_tag(self, tag: str) -> int:
        """Remove every entry whose tags contain tag; returns distinct keys removed."""
        self._discard_loads(lambda _, pending: tag in pending.tags)
        with self._lock:
            keys = {k for k, e in self._memory.items() if tag in e.tags}
            for key in keys:
                self._remove_locked(key)

        if self.store is not None:
            keys.update(await self._durable("tag delete", self.store.delete_by_tag(tag), []))

        if keys:
            logger.info(f"[CACHE] Invalidated {len(keys)} entries tagged {tag!r}")
        return len(keys)

    async def invalidate_partition(self, partition: str) -> int:
        """Remove every entry stored under one project signature."""
        self._discard_loads(lambda _, pending: pending.partition == partition)
        with self._lock:
            keys = {k for k, e in self._memory.items() if e.partition == partition}
            for key in keys:
                self._remove_locked(key)

        if self.store is not None:
            keys.update(
                await self._durable("partition delete", self.store.delete_partition(partition), [])
            )
        return len(keys)

    async def clear(self) -> None:
        self._discard_loads(lambda *_: True)
        with self._lock:
            self._memory.clear()
            self._total_bytes = 0

        if self.store is not None:
            await self._durable("clear", self.store.clear())

    def stats(self) -> CacheStats:
        """Counters and memory-tier occupancy."""
        with self._lock:
            return CacheStats(
                total_entries=len(self._memory),
                total_size_bytes=self._total_bytes,
                hits=self._hits,
                misses=self._misses,
                stale_hits=self._stale_hits,
                durable_hits=self._durable_hits,
                evictions=self._evictions,
                refreshes=self._refreshes,
                durable_errors=self._durable_errors,
                extra={
                    "durable_tier": self.store is not None,
                    "refreshing": len(self._inflight),
                },
            )

    # ------------------------------------------------------------------
    # Read-through with stale-while-revalidate
    # ------------------------------------------------------------------

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl_seconds: float | None = None,
        tags: Iterable[str] | None = None,
        partition: str | None = None,
    ) -> CacheLookup:
        """
        Serve key from cache, calling loader on a miss.

        A stale entry is returned immediately and refreshed in the
        background. Concurrent misses or refreshes for the same key share
        one loader call. Loader errors on a miss propagate to the caller.
        """
        tags = frozenset(tags or ())
        entry = await self.get_entry(key, allow_stale=True)
        now = self._clock()

        if entry is not None:
            if entry.is_fresh(now):
                return CacheLookup(entry.value, "hit")
            self._start_load(key, loader, ttl_seconds, tags, partition, background=True)
            return CacheLookup(entry.value, "stale")

        task = self._start_load(key, loader, ttl_seconds, tags, partition, background=False)
        value = await asyncio.shield(task)
        return CacheLookup(value, "miss")

    def _start_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl_seconds: float | None,
        tags: frozenset[str],
        partition: str | None,
        background: bool,
    ) -> asyncio.Task:
        pending = self._inflight.get(key)
        if pending is not None:
            return pending.task

        pending = _PendingLoad(tags=tags, partition=partition)

        async def load() -> Any:
            value = await loader()
            if pending.discarded:
                logger.debug(f"[CACHE] Not storing {key[:12]}: invalidated while loading")
                return value
            if value is None:
                return value
            await self.set(key, value, ttl_seconds=ttl_seconds, tags=tags, partition=partition)
            if background:
                self._refreshes += 1
                logger.debug(f"[CACHE] Refreshed stale entry {key[:12]}")
            return value

        pending.task = asyncio.create_task(load())
        self._inflight[key] = pending
        pending.task.add_done_callback(lambda t: self._load_done(key, t, background))
        return pending.task

    def _load_done(self, key: str, task: asyncio.Task, background: bool) -> None:
        pending = self._inflight.get(key)
        if pending is not None and pending.task is task:
            del self._inflight[key]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and background:
            logger.warning(f"[CACHE] Background refresh of {key[:12]} failed: {error}")

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def sweep(self) -> int:
        """Purge entries that can no longer be served, in both tiers."""
        now = self._clock()
        with self._lock:
            dead = [k for k, e in self._memory.items() if e.is_dead(now)]
            for key in dead:
                self._remove_locked(key)

        purged = len(dead)
        if self.store is not None:
            purged += await self._durable("purge", self.store.purge_expired(now), 0)

        if purged:
            logger.debug(f"[CACHE] Sweep purged {purged} dead entries")
        return purged

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            await self.sweep()

    def start_sweeper(self) -> None:
        """Start the periodic background sweep on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def close(self) -> None:
        """Stop background work and close the durable tier."""
        tasks = [pending.task for pending in self._inflight.values()]
        tasks.extend(self._orphans)
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        self._orphans.clear()

        if self.store is not None:
            await self._durable("close", self.store.close())
