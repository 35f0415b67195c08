"""Concrete pipeline stages, one per StageId."""

from .base import Stage, is_transient, narrowed, tool_kind
from .document import DocumentStage
from .edit import EditStage
from .gate import GateStage
from .gathering import (
    AgentsMDStage,
    ContextGatherer,
    DocumentationLookup,
    DocumentationStage,
    GatherSession,
    RepoFactsStage,
    SemanticSearchStage,
)
from .learn import LearnStage
from .plan import PlanStage
from .snippet import SnippetStage
from .validate import ValidateStage

__all__ = [
    "AgentsMDStage",
    "ContextGatherer",
    "DocumentStage",
    "DocumentationLookup",
    "DocumentationStage",
    "EditStage",
    "GateStage",
    "GatherSession",
    "LearnStage",
    "PlanStage",
    "RepoFactsStage",
    "SemanticSearchStage",
    "SnippetStage",
    "Stage",
    "ValidateStage",
    "is_transient",
    "narrowed",
    "tool_kind",
]
