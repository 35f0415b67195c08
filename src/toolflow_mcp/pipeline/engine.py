"""
Budget-bounded pipeline engine.

Runs the registered stages in the fixed STAGE_ORDER:
- Budget (time, tokens, chunks, files) is checked before every stage
- A failing stage is retried in place while its error is retryable and the
  run's shared retry budget lasts; each retry raises the narrowing level so
  retrieval stages ask for less
- A stage can end the run early (successfully) via the stop_pipeline flag
- Callers always get a RunResult, never an exception
"""

import logging
import time
import uuid
from dataclasses import replace
from typing import Any, Callable, Mapping

from ..config import PipelineConfig
from ..errors import PipelineConfigurationError, ToolflowError
from ..models import (
    NARROWING_LEVEL,
    STAGE_ORDER,
    STOP_PIPELINE,
    Budget,
    ContextPatch,
    RunContext,
    RunError,
    RunResult,
    Scope,
    now_timestamp,
)
from ..utils import LatencyTracker, MetricsCollector, Timing, get_metrics_collector
from .registry import StageRegistry

logger = logging.getLogger(__name__)

PIPELINE_STAGE = "pipeline"


class PipelineEngine:
    """
    Executes one tool request through the stage pipeline.

    The engine holds no per-run state; concurrent execute() calls each get
    their own RunContext.
    """

    def __init__(
        self,
        registry: StageRegistry,
        config: PipelineConfig | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.config = config or PipelineConfig()
        self.metrics = metrics or get_metrics_collector()
        self._clock = clock

    def default_budget(self) -> Budget:
        return Budget(
            time_ms=self.config.budget_time_ms,
            tokens=self.config.budget_tokens,
            chunks=self.config.budget_chunks,
            files=self.config.budget_files,
        )

    def default_scope(self) -> Scope:
        return Scope(
            max_files=self.config.scope_max_files,
            max_lines_per_file=self.config.scope_max_lines_per_file,
            max_hunks_per_file=self.config.scope_max_hunks_per_file,
            allowed_file_types=frozenset(self.config.allowed_file_types),
            excluded_paths=frozenset(self.config.excluded_paths),
        )

    def _elapsed_ms(self, start: float) -> int:
        return int((self._clock() - start) * 1000)

    def _new_context(
        self,
        tool_name: str,
        request_data: Mapping[str, Any] | None,
        budget_override: Mapping[str, Any] | None,
        scope_override: Mapping[str, Any] | None,
        start: float,
    ) -> RunContext:
        if request_data is not None and not isinstance(request_data, Mapping):
            raise PipelineConfigurationError(
                f"request data must be a mapping, got {type(request_data).__name__}"
            )
        try:
            budget = self.default_budget().merged(budget_override)
            scope = self.default_scope().merged(scope_override)
        except (TypeError, ValueError) as e:
            raise PipelineConfigurationError(f"Invalid run override: {e}") from e

        return RunContext(
            tool_name=tool_name,
            request_id=uuid.uuid4().hex[:12],
            start_time=start,
            budget=budget,
            scope=scope,
            data={"request": dict(request_data or {})},
            metadata={NARROWING_LEVEL: 0},
            max_retries=self.config.max_retries,
        )

    async def execute(
        self,
        tool_name: str,
        request_data: Mapping[str, Any] | None = None,
        budget_override: Mapping[str, Any] | None = None,
        scope_override: Mapping[str, Any] | None = None,
    ) -> RunResult:
        """Run the pipeline for one request."""
        start = self._clock()

        try:
            if len(self.registry) == 0:
                raise PipelineConfigurationError("Stage registry is empty")
            context = self._new_context(tool_name, request_data, budget_override, scope_override, start)
        except PipelineConfigurationError as e:
            logger.error(f"[PIPELINE] {tool_name}: cannot start run: {e}")
            return self._structural_failure(tool_name, start, str(e))

        logger.info(
            f"[PIPELINE] {context.request_id} {tool_name} started "
            f"(budget {context.budget.to_dict()}, max_retries {context.max_retries})"
        )

        stages_executed: list[str] = []
        halted = False
        exhausted = False
        index = 0

        while index < len(STAGE_ORDER):
            stage_id = STAGE_ORDER[index]
            stage = self.registry.get(stage_id)
            if stage is None:
                logger.warning(f"[PIPELINE] {context.request_id} no stage registered for {stage_id.value}, skipping")
                index += 1
                continue

            consumed = context.consumed(self._elapsed_ms(start))
            over = context.budget.exhausted_fields(consumed)
            if over:
                exhausted = True
                context = context.with_error(RunError(
                    stage=PIPELINE_STAGE,
                    message=f"Budget exhausted ({', '.join(over)}) before {stage.name}",
                    timestamp=now_timestamp(),
                    retryable=False,
                ))
                logger.warning(
                    f"[PIPELINE] {context.request_id} budget exhausted ({', '.join(over)}), "
                    f"not scheduling {stage.name}"
                )
                break

            try:
                with LatencyTracker(f"stage:{stage.name}", self.metrics) as tracker:
                    patch = await stage.execute(context)
            except Exception as e:
                retryable = stage.can_retry(e)
                context = context.with_error(RunError(
                    stage=stage.name,
                    message=f"{type(e).__name__}: {e}",
                    timestamp=now_timestamp(),
                    retryable=retryable,
                ))

                if retryable and context.retry_count < context.max_retries:
                    retry_count = context.retry_count + 1
                    context = replace(
                        context.merged(ContextPatch(metadata={NARROWING_LEVEL: retry_count})),
                        retry_count=retry_count,
                    )
                    logger.warning(
                        f"[STAGE] {stage.name} failed ({e}); retry {retry_count}/{context.max_retries}"
                    )
                    continue

                if isinstance(e, ToolflowError):
                    logger.warning(f"[STAGE] {stage.name} failed, halting run: {e}")
                else:
                    logger.error(f"[STAGE] {stage.name} raised unexpectedly, halting run", exc_info=True)
                halted = True
                break

            if not isinstance(patch, ContextPatch):
                context = context.with_error(RunError(
                    stage=stage.name,
                    message=f"Stage returned {type(patch).__name__}, expected ContextPatch",
                    timestamp=now_timestamp(),
                    retryable=False,
                ))
                halted = True
                break

            context = context.merged(patch)
            stages_executed.append(stage.name)
            logger.debug(f"[STAGE] {stage.name} done in {tracker.elapsed_ms:.1f}ms")

            if context.metadata.get(STOP_PIPELINE):
                logger.info(f"[PIPELINE] {context.request_id} stopped early by {stage.name}")
                break
            index += 1

        await self._release(context)

        execution_time_ms = self._elapsed_ms(start)
        success = not halted and not exhausted
        result = RunResult(
            success=success,
            data=dict(context.data),
            final_context=context,
            execution_time_ms=execution_time_ms,
            stages_executed=tuple(stages_executed),
            errors=tuple(context.errors),
            budget_used=context.consumed(execution_time_ms),
        )

        self.metrics.record(Timing(
            name=f"pipeline:{tool_name}",
            elapsed_ms=float(execution_time_ms),
            ok=success,
            error=context.errors[-1].message if context.errors and not success else None,
        ))
        logger.info(
            f"[PIPELINE] {context.request_id} {tool_name} finished: success={success}, "
            f"stages={len(stages_executed)}, retries={context.retry_count}, "
            f"errors={len(context.errors)}, {execution_time_ms}ms"
        )
        return result

    async def _release(self, context: RunContext) -> None:
        """Close per-run helpers that stages parked in private metadata."""
        for key, value in context.metadata.items():
            if key.startswith("_") and hasattr(value, "aclose"):
                await value.aclose()

    def _structural_failure(self, tool_name: str, start: float, message: str) -> RunResult:
        context = RunContext(
            tool_name=tool_name,
            request_id=uuid.uuid4().hex[:12],
            start_time=start,
            budget=self.default_budget(),
            scope=self.default_scope(),
            max_retries=self.config.max_retries,
            errors=[RunError(
                stage=PIPELINE_STAGE,
                message=message,
                timestamp=now_timestamp(),
                retryable=False,
            )],
        )
        execution_time_ms = self._elapsed_ms(start)
        return RunResult(
            success=False,
            data={},
            final_context=context,
            execution_time_ms=execution_time_ms,
            stages_executed=(),
            errors=tuple(context.errors),
            budget_used=Budget(time_ms=execution_time_ms),
        )

    def stats(self) -> dict[str, Any]:
        """Registered stages and default run limits."""
        return {
            "stages": self.registry.names(),
            "stage_order": [sid.value for sid in STAGE_ORDER],
            "stage_costs": {
                sid.value: self.registry.get(sid).cost_estimate()
                for sid in STAGE_ORDER
                if sid in self.registry
            },
            "default_budget": self.default_budget().to_dict(),
            "default_scope": self.default_scope().to_dict(),
            "max_retries": self.config.max_retries,
        }
