"""
Toolflow MCP Server

Coding-assistant tools (create, analyze, fix, learn) executed through a
budget-bounded eleven-stage pipeline, backed by a two-tier documentation
cache with stale-while-revalidate.
"""

__version__ = "0.3.0"

from .cache import TieredCache
from .config import CacheConfig, PipelineConfig, ServerConfig, get_config
from .models import Budget, RunContext, RunResult, Scope, StageId
from .pipeline import PipelineEngine, StageRegistry, build_runtime

__all__ = [
    "Budget",
    "CacheConfig",
    "PipelineConfig",
    "PipelineEngine",
    "RunContext",
    "RunResult",
    "Scope",
    "ServerConfig",
    "StageId",
    "StageRegistry",
    "TieredCache",
    "build_runtime",
    "get_config",
]
