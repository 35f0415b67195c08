"""
Edit stage: apply the plan's file edits inside the run's Scope.

Scope is checked on a dry run before anything is written: file count,
allowed types, excluded paths, and per-file line and hunk limits.
"""

import logging
from dataclasses import asdict

from ...errors import ScopeViolation
from ...interfaces import AppliedEdit, Editor, EditStep
from ...models import ContextPatch, RunContext, Scope, StageId
from .base import Stage

logger = logging.getLogger(__name__)


def check_scope(edits: list[EditStep], previews: list[AppliedEdit], scope: Scope) -> None:
    """Raise ScopeViolation on the first limit an edit breaks."""
    paths = {e.path for e in edits}
    if len(paths) > scope.max_files:
        raise ScopeViolation(f"plan touches {len(paths)} files, scope allows {scope.max_files}")

    for edit in edits:
        if scope.is_excluded(edit.path):
            raise ScopeViolation(f"{edit.path} is in an excluded path")
        if not scope.allows(edit.path):
            raise ScopeViolation(f"{edit.path} is not an allowed file type")
        lines = len(edit.content.splitlines())
        if lines > scope.max_lines_per_file:
            raise ScopeViolation(
                f"{edit.path} would have {lines} lines, scope allows {scope.max_lines_per_file}"
            )

    for preview in previews:
        if preview.hunks > scope.max_hunks_per_file:
            raise ScopeViolation(
                f"{preview.path} changes {preview.hunks} hunks, scope allows {scope.max_hunks_per_file}"
            )
        if preview.lines_changed > scope.max_lines_per_file:
            raise ScopeViolation(
                f"{preview.path} changes {preview.lines_changed} lines, "
                f"scope allows {scope.max_lines_per_file}"
            )


class EditStage(Stage):
    stage_id = StageId.EDIT

    def __init__(self, editor: Editor):
        self.editor = editor

    async def execute(self, context: RunContext) -> ContextPatch:
        plan = context.data.get("plan") or {}
        edits = [EditStep(**e) for e in plan.get("edits", [])]
        if not edits:
            return ContextPatch(data={"edits": []}, metadata={"files_edited": 0})

        check_scope(edits, [], context.scope)
        previews = await self.editor.apply(edits, dry_run=True)
        check_scope(edits, previews, context.scope)

        applied = await self.editor.apply(edits)
        written = sum(1 for a in applied if a.written)
        logger.info(f"[STAGE] Edit: {len(applied)} edits, {written} written")

        return ContextPatch(
            data={"edits": [asdict(a) for a in applied]},
            metadata={"files_edited": len(applied), "files_written": written},
        )
