"""
Lesson memory for the Toolflow MCP Server

SQLite-backed store of lessons recorded by the Learn stage, also used as
the SemanticSearch collaborator:
- Async operations via aiosqlite
- Write-ahead logging (WAL) for durability
- Tag table for tag lookups
- Term-overlap ranking for search (no embeddings)
- Oldest lessons evicted past a fixed entry limit
"""

import json
import re
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiosqlite

DEFAULT_DB_PATH = Path.home() / ".toolflow" / "lessons.db"

MAX_LESSONS = 5000
SEARCH_WINDOW = 500  # most recent lessons considered by search

_TERM = re.compile(r"[a-z0-9_]{3,}")
_STOPWORDS = frozenset({
    "the", "and", "for", "with", "that", "this", "from", "into", "when", "then",
    "should", "would", "could", "have", "has", "are", "was", "were", "not",
})


def terms(text: str) -> set[str]:
    return {t for t in _TERM.findall(text.lower()) if t not in _STOPWORDS}


@dataclass
class Lesson:
    """One recorded lesson."""
    lesson_id: str
    kind: str
    summary: str
    pattern: dict[str, Any]
    tags: list[str] = field(default_factory=list)
    recorded_at: float = 0.0

    def render(self) -> str:
        """Text form returned by search."""
        text = f"[{self.kind}] {self.summary}"
        files = self.pattern.get("files") or []
        if files:
            text += f" (files: {', '.join(files)})"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "lesson_id": self.lesson_id,
            "kind": self.kind,
            "summary": self.summary,
            "pattern": self.pattern,
            "tags": self.tags,
            "recorded_at": self.recorded_at,
        }


class LessonMemory:
    """
    Lesson store and keyword search over past lessons.

    Satisfies both the LessonStore and the SemanticSearch contracts.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._db is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path))

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS lessons (
                lesson_id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                summary TEXT NOT NULL,
                pattern TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                recorded_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_lessons_recorded_at ON lessons(recorded_at);

            CREATE TABLE IF NOT EXISTS lesson_tags (
                tag TEXT NOT NULL,
                lesson_id TEXT NOT NULL,
                PRIMARY KEY (tag, lesson_id),
                FOREIGN KEY (lesson_id) REFERENCES lessons(lesson_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_lesson_tags_tag ON lesson_tags(tag);
        """)

        async with self._db.execute("SELECT version FROM schema_version") as cursor:
            if await cursor.fetchone() is None:
                await self._db.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
                )
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def record(self, pattern: dict[str, Any]) -> str:
        """Persist a lesson pattern and return its id."""
        await self.initialize()

        summary = str(pattern.get("summary") or "").strip()
        if not summary:
            raise ValueError("lesson pattern needs a summary")

        lesson_id = f"lesson-{uuid.uuid4().hex[:12]}"
        kind = str(pattern.get("kind", "generic"))
        tags = sorted({kind, *pattern.get("frameworks", []), *pattern.get("tags", [])})

        await self._db.execute(
            "INSERT INTO lessons (lesson_id, kind, summary, pattern, tags, recorded_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (lesson_id, kind, summary, json.dumps(pattern, default=str), json.dumps(tags), time.time()),
        )
        await self._db.executemany(
            "INSERT OR IGNORE INTO lesson_tags (tag, lesson_id) VALUES (?, ?)",
            [(tag, lesson_id) for tag in tags],
        )
        await self._db.commit()
        await self._evict_oldest()
        return lesson_id

    async def _evict_oldest(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM lessons") as cursor:
            (count,) = await cursor.fetchone()
        excess = count - MAX_LESSONS
        if excess <= 0:
            return 0

        await self._db.execute(
            "DELETE FROM lessons WHERE lesson_id IN "
            "(SELECT lesson_id FROM lessons ORDER BY recorded_at ASC LIMIT ?)",
            (excess,),
        )
        await self._db.commit()
        return excess

    def _row_to_lesson(self, row: tuple) -> Lesson:
        return Lesson(
            lesson_id=row[0],
            kind=row[1],
            summary=row[2],
            pattern=json.loads(row[3]),
            tags=json.loads(row[4]),
            recorded_at=row[5],
        )

    async def recent(self, limit: int = SEARCH_WINDOW) -> list[Lesson]:
        await self.initialize()
        async with self._db.execute(
            "SELECT lesson_id, kind, summary, pattern, tags, recorded_at FROM lessons "
            "ORDER BY recorded_at DESC LIMIT ?",
            (limit,),
        ) as cursor:
            return [self._row_to_lesson(row) async for row in cursor]

    async def by_tag(self, tag: str) -> list[Lesson]:
        await self.initialize()
        async with self._db.execute(
            "SELECT l.lesson_id, l.kind, l.summary, l.pattern, l.tags, l.recorded_at "
            "FROM lessons l JOIN lesson_tags t ON t.lesson_id = l.lesson_id "
            "WHERE t.tag = ? ORDER BY l.recorded_at DESC",
            (tag,),
        ) as cursor:
            return [self._row_to_lesson(row) async for row in cursor]

    async def search(self, query: str, limit: int) -> list[str]:
        """Lessons sharing the most terms with the query, best first."""
        wanted = terms(query)
        if not wanted or limit <= 0:
            return []

        scored = []
        for lesson in await self.recent():
            have = terms(lesson.summary) | {t.lower() for t in lesson.tags}
            overlap = len(wanted & have)
            if overlap:
                scored.append((overlap / len(wanted), lesson.recorded_at, lesson))

        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [lesson.render() for _, _, lesson in scored[:limit]]

    async def count(self) -> int:
        await self.initialize()
        async with self._db.execute("SELECT COUNT(*) FROM lessons") as cursor:
            (count,) = await cursor.fetchone()
        return count

    async def clear(self) -> int:
        await self.initialize()
        cursor = await self._db.execute("DELETE FROM lessons")
        await self._db.commit()
        return cursor.rowcount
