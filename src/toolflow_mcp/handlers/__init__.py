"""
Request handlers for the Toolflow MCP Server.

- tools: pipeline tools (toolflow_create, toolflow_analyze, toolflow_fix, toolflow_learn)
- status: toolflow_status and toolflow_cache_invalidate
"""

from .status import handle_cache_invalidate, handle_status
from .tools import PIPELINE_TOOLS, handle_pipeline_tool, validate_arguments, validate_path

__all__ = [
    "PIPELINE_TOOLS",
    "handle_cache_invalidate",
    "handle_pipeline_tool",
    "handle_status",
    "validate_arguments",
    "validate_path",
]
