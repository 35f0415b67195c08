"""
Pipeline tool handlers for the Toolflow MCP Server.

- handle_pipeline_tool: toolflow_create / toolflow_analyze / toolflow_fix /
  toolflow_learn, each one pipeline run
"""

import json
import logging
from typing import Any, Callable

from mcp.types import TextContent

from ..config import ServerConfig
from ..pipeline import ToolflowRuntime

logger = logging.getLogger(__name__)


# Input validation constants
MAX_PATH_LENGTH = 4096
MAX_EDITS_COUNT = 50
MAX_EDIT_CONTENT_LENGTH = 1_000_000
MAX_TAGS_COUNT = 20

PIPELINE_TOOLS = frozenset({
    "toolflow_create", "toolflow_analyze", "toolflow_fix", "toolflow_learn",
})

# Request fields forwarded to the pipeline; everything else is dropped.
REQUEST_FIELDS = ("request", "paths", "edits", "topic", "plan_only", "tags")


def validate_path(path: str) -> tuple[bool, str]:
    """
    Validate a project-relative path for safety.

    Returns:
        (is_valid, error_message) tuple
    """
    if not path:
        return False, "Empty path"

    if len(path) > MAX_PATH_LENGTH:
        return False, f"Path too long ({len(path)} > {MAX_PATH_LENGTH})"

    if '\x00' in path:
        return False, "Path contains null bytes"

    suspicious_patterns = ['../', '..\\', '/etc/', '/proc/', '/sys/', '/dev/']
    path_lower = path.lower()
    for pattern in suspicious_patterns:
        if pattern in path_lower:
            return False, f"Suspicious path pattern: {pattern}"

    return True, ""


def _error(message: str) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps({"success": False, "error": message}))]


def validate_arguments(arguments: dict[str, Any], server_config: ServerConfig) -> str | None:
    """First problem found in the tool arguments, or None."""
    if not isinstance(arguments, dict):
        return "Arguments must be an object"

    request = arguments.get("request", "")
    if not isinstance(request, str):
        return "'request' must be a string"
    if len(request) > server_config.max_request_chars:
        return f"Request too long ({len(request)} > {server_config.max_request_chars} characters)"

    paths = arguments.get("paths", [])
    if not isinstance(paths, list):
        return "'paths' must be a list of strings"
    if len(paths) > server_config.max_paths_count:
        return f"Too many paths ({len(paths)} > {server_config.max_paths_count})"
    for path in paths:
        if not isinstance(path, str):
            return "'paths' must be a list of strings"
        valid, error = validate_path(path)
        if not valid:
            return f"Invalid path '{path[:100]}': {error}"

    edits = arguments.get("edits", [])
    if not isinstance(edits, list):
        return "'edits' must be a list"
    if len(edits) > MAX_EDITS_COUNT:
        return f"Too many edits ({len(edits)} > {MAX_EDITS_COUNT})"
    for edit in edits:
        if not isinstance(edit, dict):
            return "Each edit must be an object with 'path' and 'content'"
        valid, error = validate_path(str(edit.get("path", "")))
        if not valid:
            return f"Invalid edit path: {error}"
        if len(str(edit.get("content", ""))) > MAX_EDIT_CONTENT_LENGTH:
            return f"Edit content for '{edit.get('path')}' is too large"

    tags = arguments.get("tags", [])
    if not isinstance(tags, list) or len(tags) > MAX_TAGS_COUNT:
        return f"'tags' must be a list of at most {MAX_TAGS_COUNT} strings"

    for key in ("budget", "scope"):
        value = arguments.get(key)
        if value is not None and not isinstance(value, dict):
            return f"'{key}' must be an object"

    return None


async def handle_pipeline_tool(
    name: str,
    arguments: dict[str, Any],
    get_runtime: Callable[[], ToolflowRuntime],
    server_config: ServerConfig,
) -> list[TextContent]:
    """Run one pipeline tool call and return the RunResult as JSON."""
    error = validate_arguments(arguments, server_config)
    if error:
        logger.info(f"[TOOL] {name} rejected: {error}")
        return _error(error)

    request_data = {key: arguments[key] for key in REQUEST_FIELDS if key in arguments}
    runtime = get_runtime()
    result = await runtime.engine.execute(
        name,
        request_data,
        budget_override=arguments.get("budget"),
        scope_override=arguments.get("scope"),
    )

    payload = result.to_dict()
    report = result.data.get("report")
    if report:
        payload.pop("data")
        payload["report"] = report
        payload["plan"] = result.data.get("plan")
        payload["edits"] = result.data.get("edits", [])

    return [TextContent(type="text", text=json.dumps(payload, indent=2, default=str))]
