"""
Utility functions for the Toolflow MCP Server.

Includes:
- Timing samples for stages, pipeline runs and provider calls
- A bounded in-process collector with per-name latency summaries
- Logging setup (stderr only; stdout carries the MCP stdio transport)
"""

import asyncio
import functools
import logging
import sys
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, ParamSpec, TypeVar

P = ParamSpec("P")
T = TypeVar("T")

logger = logging.getLogger(__name__)

MAX_SAMPLES_PER_NAME = 1000


@dataclass
class Timing:
    """One timed call: a stage attempt, a whole run, or a provider request."""
    name: str
    elapsed_ms: float
    ok: bool = True
    error: str | None = None


def _percentile(ordered: list[float], fraction: float) -> float:
    index = min(len(ordered) - 1, int(len(ordered) * fraction))
    return ordered[index]


class MetricsCollector:
    """Keeps the most recent timings per name and summarizes them on demand."""

    def __init__(self, max_samples: int = MAX_SAMPLES_PER_NAME):
        self.max_samples = max_samples
        self._samples: dict[str, deque[Timing]] = {}

    def record(self, timing: Timing) -> None:
        samples = self._samples.get(timing.name)
        if samples is None:
            samples = self._samples[timing.name] = deque(maxlen=self.max_samples)
        samples.append(timing)

    def summary(self, name: str) -> dict[str, Any]:
        samples = self._samples.get(name)
        if not samples:
            return {"call_count": 0}

        ordered = sorted(t.elapsed_ms for t in samples)
        failures = [t for t in samples if not t.ok]
        summary = {
            "call_count": len(samples),
            "failures": len(failures),
            "mean_ms": round(sum(ordered) / len(ordered), 2),
            "p50_ms": round(_percentile(ordered, 0.5), 2),
            "p95_ms": round(_percentile(ordered, 0.95), 2),
            "max_ms": round(ordered[-1], 2),
        }
        if failures:
            summary["last_error"] = failures[-1].error
        return summary

    def get_stats(self) -> dict[str, dict[str, Any]]:
        """Summary for every recorded name, sorted by name."""
        return {name: self.summary(name) for name in sorted(self._samples)}


_collector = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Process-wide collector used when none is injected."""
    return _collector


class LatencyTracker:
    """
    Times a block and records it under `name`.

        with LatencyTracker("stage:Plan", collector) as tracker:
            ...
        tracker.elapsed_ms
    """

    def __init__(self, name: str, collector: MetricsCollector | None = None):
        self.name = name
        self.collector = collector
        self.elapsed_ms = 0.0
        self._started = 0.0

    def __enter__(self) -> "LatencyTracker":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.elapsed_ms = (time.perf_counter() - self._started) * 1000
        if self.collector is not None:
            self.collector.record(Timing(
                name=self.name,
                elapsed_ms=self.elapsed_ms,
                ok=exc_type is None,
                error=f"{exc_type.__name__}: {exc_val}" if exc_type else None,
            ))


def timed(
    name: str | None = None,
    slow_ms: float | None = None,
    collector: MetricsCollector | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """
    Record every call of a coroutine function; warn when one exceeds slow_ms.

    The timing name defaults to the function's qualified name.
    """
    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"timed() needs a coroutine function, got {func.__qualname__}")
        label = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            tracker = LatencyTracker(label, collector or _collector)
            with tracker:
                result = await func(*args, **kwargs)
            if slow_ms is not None and tracker.elapsed_ms > slow_ms:
                logger.warning(f"[SLOW] {label} took {tracker.elapsed_ms:.0f}ms (limit {slow_ms:.0f}ms)")
            return result

        return wrapper

    return decorator


def enable_logging(log_level: int = logging.INFO) -> None:
    """Send log output to stderr."""
    logging.basicConfig(
        level=log_level,
        stream=sys.stderr,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
