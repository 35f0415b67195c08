"""
Collaborator contracts consumed by the pipeline stages.

Default implementations live in toolflow_mcp.collaborators; tests and
embedders may pass anything that satisfies these protocols.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence


@dataclass
class EditStep:
    """One file change requested by a plan."""
    path: str
    content: str
    description: str = ""


@dataclass
class AppliedEdit:
    """Description of an edit after the editor handled it."""
    path: str
    diff: str
    lines_changed: int
    hunks: int
    written: bool
    created: bool = False


@dataclass
class ValidationOutcome:
    """Result of checking one artifact."""
    artifact: str
    passed: bool
    details: list[str] = field(default_factory=list)


class DirectiveProvider(Protocol):
    async def read(self) -> list[str]:
        """Ordered project directives (for example, from AGENTS.md)."""
        ...


class RepoFactDetector(Protocol):
    async def detect(self) -> set[str]:
        """Technology and structure facts, such as 'framework:react'."""
        ...


class DocumentationProvider(Protocol):
    async def query(self, framework: str, topic: str | None = None) -> str:
        """Documentation text for a framework; raises on failure."""
        ...


class SemanticSearch(Protocol):
    async def search(self, query: str, limit: int) -> list[str]:
        """Ranked text snippets, best first."""
        ...


class FileReader(Protocol):
    async def read(self, path: str) -> str:
        """File text truncated to a bounded preview length."""
        ...


class Editor(Protocol):
    async def apply(self, plan: Sequence[EditStep], dry_run: bool = False) -> list[AppliedEdit]:
        """Apply the plan's edits, or only describe them when dry_run is set."""
        ...


class Validator(Protocol):
    async def check(self, artifact: str, content: str) -> ValidationOutcome:
        """Pass/fail with details for one artifact."""
        ...


class LessonStore(Protocol):
    async def record(self, pattern: dict[str, Any]) -> str:
        """Persist a lesson and return its id."""
        ...
