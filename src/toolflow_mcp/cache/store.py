"""
Durable tier for the documentation cache.

SQLite-backed storage via aiosqlite with:
- Write-ahead logging (WAL) for durability
- Tag table for bulk invalidation by tag
- Partition column (project signature) for bulk invalidation when a
  project's dependency versions change

Any database failure surfaces as CacheStoreError; the tiered cache treats
that as a miss. The store assumes a single writer process.
"""

import sqlite3
from pathlib import Path
from typing import Protocol

import aiosqlite

from ..errors import CacheStoreError
from .entry import CacheEntry


class CacheStore(Protocol):
    """Contract of a durable cache tier."""

    async def get(self, key: str, now: float) -> CacheEntry | None: ...

    async def put(self, entry: CacheEntry) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def delete_by_tag(self, tag: str) -> list[str]: ...

    async def delete_partition(self, partition: str) -> list[str]: ...

    async def purge_expired(self, now: float) -> int: ...

    async def clear(self) -> int: ...

    async def close(self) -> None: ...


_COLUMNS = "key, value, created_at, expires_at, stale_until, tags, size_bytes, partition"


class SqliteCacheStore:
    """Durable cache tier stored in a single SQLite file."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._db is not None:
            return

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self.db_path))
            self._db.row_factory = aiosqlite.Row

            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA synchronous=NORMAL")
            await self._db.execute("PRAGMA foreign_keys=ON")
            await self._create_schema()
        except (sqlite3.Error, OSError) as e:
            self._db = None
            raise CacheStoreError(f"Cannot open cache database {self.db_path}: {e}") from e

    async def _create_schema(self) -> None:
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL,
                stale_until REAL NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                size_bytes INTEGER DEFAULT 0,
                partition TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_cache_stale_until ON cache_entries(stale_until);
            CREATE INDEX IF NOT EXISTS idx_cache_partition ON cache_entries(partition);

            CREATE TABLE IF NOT EXISTS cache_tags (
                tag TEXT NOT NULL,
                entry_key TEXT NOT NULL,
                PRIMARY KEY (tag, entry_key),
                FOREIGN KEY (entry_key) REFERENCES cache_entries(key) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_cache_tags_tag ON cache_tags(tag);
        """)

        async with self._db.execute("SELECT version FROM schema_version") as cursor:
            row = await cursor.fetchone()
        if row is None:
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,)
            )
        await self._db.commit()

    async def _conn(self) -> aiosqlite.Connection:
        await self.initialize()
        return self._db

    async def get(self, key: str, now: float) -> CacheEntry | None:
        try:
            db = await self._conn()
            async with db.execute(
                f"SELECT {_COLUMNS} FROM cache_entries WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Cache read failed for {key}: {e}") from e

        if row is None:
            return None
        try:
            return CacheEntry.from_record(dict(row), now)
        except (ValueError, KeyError, TypeError) as e:
            await self.delete(key)
            raise CacheStoreError(f"Corrupt cache record {key} removed: {e}") from e

    async def put(self, entry: CacheEntry) -> None:
        record = entry.to_record()
        try:
            db = await self._conn()
            await db.execute("DELETE FROM cache_tags WHERE entry_key = ?", (entry.key,))
            await db.execute(
                f"INSERT OR REPLACE INTO cache_entries ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record["key"], record["value"], record["created_at"],
                    record["expires_at"], record["stale_until"], record["tags"],
                    record["size_bytes"], record["partition"],
                )
            )
            await db.executemany(
                "INSERT OR IGNORE INTO cache_tags (tag, entry_key) VALUES (?, ?)",
                [(tag, entry.key) for tag in entry.tags]
            )
            await db.commit()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Cache write failed for {entry.key}: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            db = await self._conn()
            cursor = await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            await db.commit()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Cache delete failed for {key}: {e}") from e
        return cursor.rowcount > 0

    async def _delete_keys(self, query: str, params: tuple) -> list[str]:
        try:
            db = await self._conn()
            async with db.execute(query, params) as cursor:
                keys = [row[0] async for row in cursor]
            if keys:
                placeholders = ",".join("?" * len(keys))
                await db.execute(
                    f"DELETE FROM cache_entries WHERE key IN ({placeholders})", tuple(keys)
                )
                await db.commit()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Cache bulk delete failed: {e}") from e
        return keys

    async def delete_by_tag(self, tag: str) -> list[str]:
        """Delete every entry carrying the tag; returns the deleted keys."""
        return await self._delete_keys(
            "SELECT entry_key FROM cache_tags WHERE tag = ?", (tag,)
        )

    async def delete_partition(self, partition: str) -> list[str]:
        """Delete every entry of one project partition."""
        return await self._delete_keys(
            "SELECT key FROM cache_entries WHERE partition = ?", (partition,)
        )

    async def purge_expired(self, now: float) -> int:
        """Delete entries that may no longer be served."""
        try:
            db = await self._conn()
            cursor = await db.execute("DELETE FROM cache_entries WHERE stale_until <= ?", (now,))
            await db.commit()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Cache purge failed: {e}") from e
        return cursor.rowcount

    async def count(self) -> int:
        try:
            db = await self._conn()
            async with db.execute("SELECT COUNT(*) FROM cache_entries") as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Cache count failed: {e}") from e
        return row[0] if row else 0

    async def clear(self) -> int:
        try:
            db = await self._conn()
            cursor = await db.execute("DELETE FROM cache_entries")
            await db.execute("DELETE FROM cache_tags")
            await db.commit()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Cache clear failed: {e}") from e
        return cursor.rowcount

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
