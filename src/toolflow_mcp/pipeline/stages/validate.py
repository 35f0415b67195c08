"""Validate stage: check every edited artifact."""

import asyncio
from dataclasses import asdict

from ...interfaces import Validator
from ...models import ContextPatch, RunContext, StageId
from .base import Stage


class ValidateStage(Stage):
    stage_id = StageId.VALIDATE

    def __init__(self, validator: Validator):
        self.validator = validator

    async def execute(self, context: RunContext) -> ContextPatch:
        plan = context.data.get("plan") or {}
        edits = plan.get("edits", [])
        if not edits:
            return ContextPatch(data={"validation": []}, metadata={"validation_passed": True})

        outcomes = await asyncio.gather(
            *(self.validator.check(e["path"], e["content"]) for e in edits)
        )
        passed = all(o.passed for o in outcomes)
        return ContextPatch(
            data={"validation": [asdict(o) for o in outcomes]},
            metadata={"validation_passed": passed},
        )
