"""
Learn stage: record what the run did as a lesson.

Recording is fire-and-forget: the stage queues the write and returns at
once. Pending writes are kept so the server can drain them on shutdown.
"""

import asyncio
import logging
from typing import Any

from ...interfaces import LessonStore
from ...models import ContextPatch, RunContext, StageId
from .base import Stage, request_text, tool_kind

logger = logging.getLogger(__name__)


def lesson_pattern(context: RunContext) -> dict[str, Any]:
    """The lesson worth keeping from a run."""
    request = context.data.get("request", {})
    plan = context.data.get("plan") or {}
    kind = tool_kind(context.tool_name)

    pattern: dict[str, Any] = {
        "kind": kind,
        "summary": request.get("lesson") or plan.get("summary") or request_text(context),
        "frameworks": list(context.data.get("frameworks", [])),
        "files": [e["path"] for e in context.data.get("edits", [])],
        "risk": plan.get("risk", "low"),
        "retries": context.retry_count,
        "request_id": context.request_id,
    }
    tags = request.get("tags")
    if isinstance(tags, list):
        pattern["tags"] = [str(t) for t in tags]
    return pattern


class LearnStage(Stage):
    stage_id = StageId.LEARN

    def __init__(self, store: LessonStore):
        self.store = store
        self._pending: set[asyncio.Task] = set()

    async def execute(self, context: RunContext) -> ContextPatch:
        pattern = lesson_pattern(context)
        if not pattern["summary"]:
            return ContextPatch(data={"lesson": None})

        task = asyncio.create_task(self._record(pattern))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return ContextPatch(data={"lesson": {"queued": True, "pattern": pattern}})

    async def _record(self, pattern: dict[str, Any]) -> None:
        try:
            lesson_id = await self.store.record(pattern)
            logger.debug(f"[LEARN] Recorded lesson {lesson_id}")
        except Exception as e:
            logger.warning(f"[LEARN] Could not record lesson: {e}")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for queued lesson writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
