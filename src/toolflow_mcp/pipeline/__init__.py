"""Budget-bounded stage pipeline."""

from .engine import PipelineEngine
from .factory import ToolflowRuntime, build_cache, build_registry, build_runtime
from .registry import StageRegistry

__all__ = [
    "PipelineEngine",
    "StageRegistry",
    "ToolflowRuntime",
    "build_cache",
    "build_registry",
    "build_runtime",
]
