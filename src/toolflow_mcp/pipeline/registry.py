"""
Stage registry: StageId -> Stage, built once and injected into the engine.
"""

from typing import Iterable

from ..errors import PipelineConfigurationError
from ..models import STAGE_ORDER, StageId
from .stages.base import Stage


class StageRegistry:
    """Lookup table for the stages of one engine."""

    def __init__(self, stages: Iterable[Stage] = ()):
        self._stages: dict[StageId, Stage] = {}
        for stage in stages:
            self.register(stage)

    def register(self, stage: Stage) -> None:
        stage_id = getattr(stage, "stage_id", None)
        if not isinstance(stage_id, StageId):
            raise PipelineConfigurationError(f"{stage!r} has no valid stage_id")
        if stage_id in self._stages:
            raise PipelineConfigurationError(f"Stage {stage_id.value} registered twice")
        self._stages[stage_id] = stage

    def get(self, stage_id: StageId) -> Stage | None:
        return self._stages.get(stage_id)

    def names(self) -> list[str]:
        return [sid.value for sid in STAGE_ORDER if sid in self._stages]

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._stages
