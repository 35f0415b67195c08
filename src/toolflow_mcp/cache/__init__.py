"""Tiered documentation cache."""

from .entry import CacheEntry, CacheStats, compute_size_bytes
from .store import CacheStore, SqliteCacheStore
from .tiered import CacheLookup, TieredCache

__all__ = [
    "CacheEntry",
    "CacheLookup",
    "CacheStats",
    "CacheStore",
    "SqliteCacheStore",
    "TieredCache",
    "compute_size_bytes",
]
