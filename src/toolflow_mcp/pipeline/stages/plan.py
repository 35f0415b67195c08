"""
Plan stage: turn the request and gathered context into an ordered plan.

Planning is deterministic. The request supplies any concrete file edits;
this stage checks their shape, attaches the project's directives as
constraints, and rates risk and confidence from what was gathered.
"""

from dataclasses import asdict, dataclass, field
from typing import Any

from ...errors import StageInputError
from ...interfaces import EditStep
from ...models import STOP_PIPELINE, ContextPatch, RunContext, StageId
from .base import Stage, request_text, tool_kind

MAX_CONSTRAINTS = 10

KIND_STEPS = {
    "create": [
        "Review project directives and documentation",
        "Create or extend the requested files",
        "Validate the new code",
        "Document the change",
    ],
    "analyze": [
        "Review gathered snippets and search results",
        "Summarize findings per file",
        "List follow-up actions",
    ],
    "fix": [
        "Locate the failing code in the gathered snippets",
        "Apply the smallest change that fixes it",
        "Validate the edited files",
        "Record the fix as a lesson",
    ],
    "learn": [
        "Extract the pattern from the request",
        "Record it in lesson memory",
    ],
    "generic": [
        "Review gathered context",
        "Carry out the request",
    ],
}

SENSITIVE_NAMES = ("package.json", "pyproject.toml", "setup.cfg", "dockerfile", ".env", "settings.py")


@dataclass
class Plan:
    """A deterministic execution plan for one run."""
    kind: str
    summary: str
    steps: list[str]
    edits: list[EditStep] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    risk: str = "low"
    confidence: float = 0.5

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "summary": self.summary,
            "steps": list(self.steps),
            "edits": [asdict(e) for e in self.edits],
            "constraints": list(self.constraints),
            "risk": self.risk,
            "confidence": self.confidence,
        }


def parse_edits(raw: Any) -> list[EditStep]:
    """Validate request edits: a list of {path, content, description?} mappings."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise StageInputError("'edits' must be a list")

    edits = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise StageInputError(f"edit #{i} must be an object")
        path, content = item.get("path"), item.get("content")
        if not isinstance(path, str) or not path.strip():
            raise StageInputError(f"edit #{i} needs a non-empty 'path'")
        if not isinstance(content, str):
            raise StageInputError(f"edit #{i} needs string 'content'")
        edits.append(EditStep(path=path.strip(), content=content, description=str(item.get("description", ""))))
    return edits


def assess_risk(edits: list[EditStep], max_files: int) -> str:
    if not edits:
        return "low"
    if len(edits) > max_files or any(e.path.lower().endswith(SENSITIVE_NAMES) for e in edits):
        return "high"
    return "medium" if len(edits) > 1 else "low"


def assess_confidence(context: RunContext) -> float:
    score = 0.5
    for key in ("directives", "documentation", "search_results", "snippets"):
        if context.data.get(key):
            score += 0.1
    score -= 0.1 * context.narrowing_level
    return round(min(0.95, max(0.1, score)), 2)


class PlanStage(Stage):
    stage_id = StageId.PLAN

    async def execute(self, context: RunContext) -> ContextPatch:
        request = context.data.get("request", {})
        kind = tool_kind(context.tool_name)
        text = request_text(context)
        edits = parse_edits(request.get("edits"))

        if kind == "analyze" and edits:
            raise StageInputError("analyze requests cannot carry edits")
        if kind in ("create", "fix") and not text and not edits:
            raise StageInputError(f"{kind} request needs a description or edits")

        constraints = list(context.data.get("directives", []))[:MAX_CONSTRAINTS]
        constraints.append(
            f"Touch at most {context.scope.max_files} files, "
            f"{context.scope.max_lines_per_file} lines and "
            f"{context.scope.max_hunks_per_file} hunks per file"
        )

        plan = Plan(
            kind=kind,
            summary=text[:200] or f"{kind} request",
            steps=list(KIND_STEPS[kind]),
            edits=edits,
            constraints=constraints,
            risk=assess_risk(edits, context.scope.max_files),
            confidence=assess_confidence(context),
        )

        metadata: dict[str, Any] = {"plan_risk": plan.risk}
        if request.get("plan_only"):
            metadata[STOP_PIPELINE] = True
        return ContextPatch(data={"plan": plan.to_dict()}, metadata=metadata)
