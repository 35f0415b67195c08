"""
Workspace editor for the Edit stage.

Builds a unified diff (difflib) for every edit step. Files are only
written when the editor was created with write=True and the call is not
a dry run; otherwise the diff describes what would change.
"""

import difflib
import logging
from pathlib import Path
from typing import Sequence

import aiofiles

from ..interfaces import AppliedEdit, EditStep
from .files import resolve_in_root

logger = logging.getLogger(__name__)


def summarize_diff(diff_lines: list[str]) -> tuple[int, int]:
    """(changed lines, hunks) of a unified diff."""
    hunks = sum(1 for line in diff_lines if line.startswith("@@"))
    changed = sum(
        1 for line in diff_lines
        if line[:1] in ("+", "-") and not line.startswith(("+++", "---"))
    )
    return changed, hunks


class WorkspaceEditor:
    """Applies edit steps to files under a project root."""

    def __init__(self, root: str | Path, write: bool = False):
        self.root = Path(root)
        self.write = write

    async def _current(self, path: Path) -> str | None:
        if not path.is_file():
            return None
        async with aiofiles.open(path, mode="r", encoding="utf-8", errors="replace") as f:
            return await f.read()

    async def apply(self, plan: Sequence[EditStep], dry_run: bool = False) -> list[AppliedEdit]:
        applied = []
        for step in plan:
            target = resolve_in_root(self.root, step.path)
            before = await self._current(target)

            diff_lines = list(difflib.unified_diff(
                (before or "").splitlines(keepends=True),
                step.content.splitlines(keepends=True),
                fromfile=f"a/{step.path}",
                tofile=f"b/{step.path}",
            ))
            changed, hunks = summarize_diff(diff_lines)

            written = False
            if self.write and not dry_run and before != step.content:
                target.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(target, mode="w", encoding="utf-8") as f:
                    await f.write(step.content)
                written = True
                logger.info(f"[EDIT] Wrote {step.path} ({changed} lines, {hunks} hunks)")

            applied.append(AppliedEdit(
                path=step.path,
                diff="".join(diff_lines),
                lines_changed=changed,
                hunks=hunks,
                written=written,
                created=before is None,
            ))
        return applied
