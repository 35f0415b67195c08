"""
Shared data model for pipeline runs.

A run carries a RunContext from stage to stage. Stages never mutate the
context they receive; they return a ContextPatch that the engine merges
into a fresh context.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Mapping


class StageId(Enum):
    """Identifiers of the pipeline stages."""
    AGENTS_MD = "AgentsMD"
    REPO_FACTS = "RepoFacts"
    DOCUMENTATION = "Documentation"
    SEMANTIC_SEARCH = "SemanticSearch"
    SNIPPET = "Snippet"
    PLAN = "Plan"
    EDIT = "Edit"
    VALIDATE = "Validate"
    GATE = "Gate"
    DOCUMENT = "Document"
    LEARN = "Learn"


# The fixed execution order. Never reordered, never parallelized.
STAGE_ORDER: tuple[StageId, ...] = (
    StageId.AGENTS_MD,
    StageId.REPO_FACTS,
    StageId.DOCUMENTATION,
    StageId.SEMANTIC_SEARCH,
    StageId.SNIPPET,
    StageId.PLAN,
    StageId.EDIT,
    StageId.VALIDATE,
    StageId.GATE,
    StageId.DOCUMENT,
    StageId.LEARN,
)

# Metadata keys holding per-stage usage deltas; the engine sums them.
TOKENS_USED = "tokens_used"
CHUNKS_USED = "chunks_used"
FILES_USED = "files_used"
USAGE_KEYS = (TOKENS_USED, CHUNKS_USED, FILES_USED)

# Metadata flag a stage sets to end the run early (successfully).
STOP_PIPELINE = "stop_pipeline"

# Metadata key the engine sets after each retry.
NARROWING_LEVEL = "narrowing_level"


@dataclass(frozen=True)
class Budget:
    """Per-run resource ceilings (or consumption, when used as a counter)."""
    time_ms: int = 0
    tokens: int = 0
    chunks: int = 0
    files: int = 0

    def merged(self, overrides: Mapping[str, Any] | None) -> "Budget":
        """Return a copy with the given fields replaced."""
        if not overrides:
            return self
        unknown = set(overrides) - {"time_ms", "tokens", "chunks", "files"}
        if unknown:
            raise ValueError(f"Unknown budget fields: {sorted(unknown)}")
        return replace(self, **{k: int(v) for k, v in overrides.items()})

    def remaining(self, consumed: "Budget") -> "Budget":
        """Remaining ceiling per field, clamped at zero."""
        return Budget(
            time_ms=max(0, self.time_ms - consumed.time_ms),
            tokens=max(0, self.tokens - consumed.tokens),
            chunks=max(0, self.chunks - consumed.chunks),
            files=max(0, self.files - consumed.files),
        )

    def exhausted_fields(self, consumed: "Budget") -> list[str]:
        """
        Fields whose ceiling has been reached.

        Time is exhausted once elapsed >= ceiling; counted resources only
        once consumption goes past the ceiling, so a stage may use a budget
        up to its full value.
        """
        fields = []
        if consumed.time_ms >= self.time_ms:
            fields.append("time_ms")
        if consumed.tokens > self.tokens:
            fields.append("tokens")
        if consumed.chunks > self.chunks:
            fields.append("chunks")
        if consumed.files > self.files:
            fields.append("files")
        return fields

    def to_dict(self) -> dict[str, int]:
        return {
            "time_ms": self.time_ms,
            "tokens": self.tokens,
            "chunks": self.chunks,
            "files": self.files,
        }


@dataclass(frozen=True)
class Scope:
    """Static per-run limits for the stages that touch files."""
    max_files: int = 3
    max_lines_per_file: int = 1000
    max_hunks_per_file: int = 10
    allowed_file_types: frozenset[str] = frozenset()
    excluded_paths: frozenset[str] = frozenset()

    def merged(self, overrides: Mapping[str, Any] | None) -> "Scope":
        """Return a copy with the given fields replaced."""
        if not overrides:
            return self
        values: dict[str, Any] = {}
        for key, value in overrides.items():
            if key in ("allowed_file_types", "excluded_paths"):
                values[key] = frozenset(value)
            elif key in ("max_files", "max_lines_per_file", "max_hunks_per_file"):
                values[key] = int(value)
            else:
                raise ValueError(f"Unknown scope field: {key}")
        return replace(self, **values)

    def is_excluded(self, path: str) -> bool:
        parts = PurePosixPath(path.replace("\\", "/")).parts
        return any(part in self.excluded_paths for part in parts)

    def allows(self, path: str) -> bool:
        """True if the path has an allowed type and no excluded segment."""
        suffix = PurePosixPath(path).suffix.lower()
        if self.allowed_file_types and suffix not in self.allowed_file_types:
            return False
        return not self.is_excluded(path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_files": self.max_files,
            "max_lines_per_file": self.max_lines_per_file,
            "max_hunks_per_file": self.max_hunks_per_file,
            "allowed_file_types": sorted(self.allowed_file_types),
            "excluded_paths": sorted(self.excluded_paths),
        }


@dataclass(frozen=True)
class RunError:
    """A recorded stage failure. Once appended to a run it is never removed."""
    stage: str
    message: str
    timestamp: float
    retryable: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "message": self.message,
            "timestamp": self.timestamp,
            "retryable": self.retryable,
        }


@dataclass
class ContextPatch:
    """Partial context returned by a stage."""
    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RunContext:
    """State threaded through a single pipeline execution."""
    tool_name: str
    request_id: str
    start_time: float  # engine clock, seconds
    budget: Budget
    scope: Scope
    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    errors: list[RunError] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 2

    def merged(self, patch: ContextPatch) -> "RunContext":
        """
        Return a fresh context with the patch applied.

        data and metadata are merged shallowly; usage counters in the
        patch are deltas added to the running totals.
        """
        metadata = dict(self.metadata)
        for key, value in patch.metadata.items():
            if key in USAGE_KEYS:
                metadata[key] = metadata.get(key, 0) + int(value or 0)
            else:
                metadata[key] = value

        return replace(
            self,
            data={**self.data, **patch.data},
            metadata=metadata,
            errors=list(self.errors),
        )

    def with_error(self, error: RunError) -> "RunContext":
        """Return a fresh context with the error appended."""
        return replace(
            self,
            data=dict(self.data),
            metadata=dict(self.metadata),
            errors=[*self.errors, error],
        )

    def consumed(self, elapsed_ms: int) -> Budget:
        """Resources used so far, given the elapsed wall-clock time."""
        return Budget(
            time_ms=elapsed_ms,
            tokens=int(self.metadata.get(TOKENS_USED, 0)),
            chunks=int(self.metadata.get(CHUNKS_USED, 0)),
            files=int(self.metadata.get(FILES_USED, 0)),
        )

    @property
    def narrowing_level(self) -> int:
        return int(self.metadata.get(NARROWING_LEVEL, 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "request_id": self.request_id,
            "budget": self.budget.to_dict(),
            "scope": self.scope.to_dict(),
            "data": self.data,
            "metadata": {k: v for k, v in self.metadata.items() if not k.startswith("_")},
            "errors": [e.to_dict() for e in self.errors],
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
        }


@dataclass(frozen=True)
class RunResult:
    """Outcome of one pipeline run. Immutable after construction."""
    success: bool
    data: Mapping[str, Any]
    final_context: RunContext
    execution_time_ms: int
    stages_executed: tuple[str, ...]
    errors: tuple[RunError, ...]
    budget_used: Budget

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "request_id": self.final_context.request_id,
            "tool_name": self.final_context.tool_name,
            "data": dict(self.data),
            "execution_time_ms": self.execution_time_ms,
            "stages_executed": list(self.stages_executed),
            "errors": [e.to_dict() for e in self.errors],
            "budget_used": self.budget_used.to_dict(),
            "retry_count": self.final_context.retry_count,
        }


def now_timestamp() -> float:
    """Wall-clock timestamp used on RunError records."""
    return time.time()
