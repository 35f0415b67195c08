"""
Stage contract.

Every stage consumes a RunContext snapshot, returns a ContextPatch, says
whether a given failure is worth retrying, and declares a static cost.
"""

import errno
from abc import ABC, abstractmethod
from typing import Any

import httpx

from ...errors import PolicyViolation, ScopeViolation, StageInputError, TransientError
from ...models import Budget, ContextPatch, RunContext, StageId

RETRYABLE_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE, errno.EAGAIN})


def is_transient(error: BaseException) -> bool:
    """Default retry classification shared by all stages."""
    if isinstance(error, (StageInputError, PolicyViolation, ScopeViolation)):
        return False
    if isinstance(error, (TransientError, httpx.TransportError, TimeoutError)):
        return True
    if isinstance(error, OSError):
        return error.errno in RETRYABLE_ERRNOS
    return False


def narrowed(limit: int, level: int) -> int:
    """Shrink a retrieval limit for a retried run (halved per level, never below 1)."""
    return max(1, limit // (2 ** max(0, level)))


TOOL_KINDS = ("create", "analyze", "fix", "learn")


def tool_kind(tool_name: str) -> str:
    """'toolflow_fix' -> 'fix'; unknown tools map to 'generic'."""
    kind = tool_name.rsplit("_", 1)[-1].lower()
    return kind if kind in TOOL_KINDS else "generic"


def remaining_budget(context: RunContext) -> Budget:
    """Token, chunk and file headroom left for this run (time is not tracked here)."""
    return context.budget.remaining(context.consumed(0))


def request_text(context: RunContext) -> str:
    """The free-text part of the request, used for queries and plans."""
    request = context.data.get("request", {})
    for key in ("request", "query", "task", "description"):
        value = request.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


class Stage(ABC):
    """A named, polymorphic unit of pipeline work."""

    stage_id: StageId

    @property
    def name(self) -> str:
        return self.stage_id.value

    @abstractmethod
    async def execute(self, context: RunContext) -> ContextPatch:
        """Produce a partial update. Must not mutate context."""

    def can_retry(self, error: BaseException) -> bool:
        return is_transient(error)

    def cost_estimate(self) -> dict[str, Any]:
        """Static partial budget; bookkeeping only, never enforced."""
        return {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
