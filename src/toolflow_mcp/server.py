"""
Toolflow MCP Server

Runs coding-assistant tool calls through a budget-bounded stage pipeline
(AgentsMD → RepoFacts → Documentation → SemanticSearch → Snippet → Plan →
Edit → Validate → Gate → Document → Learn) with a tiered documentation cache.

Tools:
- toolflow_create: Plan (and optionally apply) new code
- toolflow_analyze: Gather context and produce an analysis plan, no edits
- toolflow_fix: Plan and apply a fix within the run's scope
- toolflow_learn: Look up documentation for a topic and record a lesson
- toolflow_status: Engine limits, cache statistics, stage metrics
- toolflow_cache_invalidate: Drop cached documentation by key, tag, partition or all
"""

import asyncio
import logging
import signal
import sys
import time
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from .config import CacheConfig, PipelineConfig, ServerConfig, get_config
from .handlers import PIPELINE_TOOLS, handle_cache_invalidate, handle_pipeline_tool, handle_status
from .pipeline import ToolflowRuntime, build_runtime
from .utils import enable_logging, get_metrics_collector

logger = logging.getLogger(__name__)


# Global instances (initialized lazily)
_pipeline_config: PipelineConfig | None = None
_cache_config: CacheConfig | None = None
_server_config: ServerConfig | None = None
_runtime: ToolflowRuntime | None = None

# Shutdown flag for graceful termination
_shutdown_event: asyncio.Event | None = None


def get_configs() -> tuple[PipelineConfig, CacheConfig, ServerConfig]:
    """Get or create the configuration singletons."""
    global _pipeline_config, _cache_config, _server_config

    if _pipeline_config is None:
        _pipeline_config, _cache_config, _server_config = get_config()
        for error in _pipeline_config.validate() + _cache_config.validate():
            logger.warning(f"[CONFIG] {error}")

    return _pipeline_config, _cache_config, _server_config


def get_runtime() -> ToolflowRuntime:
    """Get or create the shared pipeline runtime."""
    global _runtime

    if _runtime is None:
        pipeline_config, cache_config, _ = get_configs()
        _runtime = build_runtime(pipeline_config, cache_config, metrics=get_metrics_collector())
        _runtime.cache.start_sweeper()

    return _runtime


async def cleanup_resources() -> None:
    """Cleanup resources on shutdown."""
    global _runtime

    if _runtime is not None:
        try:
            await _runtime.close()
        except Exception as e:
            logger.error(f"Error closing runtime: {e}")
        _runtime = None


def _run_tool_schema(extra: dict[str, Any] | None = None, required: list[str] | None = None) -> dict[str, Any]:
    """Input schema shared by the four pipeline tools."""
    properties: dict[str, Any] = {
        "request": {
            "type": "string",
            "description": "What the tool should do, in plain language.",
        },
        "paths": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Project-relative files to read as snippets (read before search hits).",
        },
        "tags": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Extra tags stored with the lesson recorded at the end of the run.",
        },
        "budget": {
            "type": "object",
            "description": "Per-run ceilings overriding the defaults: time_ms, tokens, chunks, files.",
            "properties": {
                "time_ms": {"type": "integer", "minimum": 0},
                "tokens": {"type": "integer", "minimum": 0},
                "chunks": {"type": "integer", "minimum": 0},
                "files": {"type": "integer", "minimum": 0},
            },
            "additionalProperties": False,
        },
        "scope": {
            "type": "object",
            "description": (
                "Edit limits overriding the defaults: max_files, max_lines_per_file, "
                "max_hunks_per_file, allowed_file_types, excluded_paths."
            ),
        },
        "plan_only": {
            "type": "boolean",
            "description": "Stop after the Plan stage. Default: false.",
        },
    }
    properties.update(extra or {})
    return {"type": "object", "properties": properties, "required": required or ["request"]}


EDITS_PROPERTY = {
    "edits": {
        "type": "array",
        "description": "Full new contents for each file to change.",
        "items": {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "content": {"type": "string"},
                "description": {"type": "string"},
            },
            "required": ["path", "content"],
        },
    },
}


def create_server() -> Server:
    """Create and configure the MCP server."""
    _, _, server_config = get_configs()
    server = Server(server_config.name)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available tools."""
        return [
            Tool(
                name="toolflow_create",
                description=(
                    "Create new code. Gathers directives, repo facts, documentation and related "
                    "lessons, plans the change, applies the given edits within scope, "
                    "validates them and reports."
                ),
                inputSchema=_run_tool_schema(EDITS_PROPERTY),
            ),
            Tool(
                name="toolflow_analyze",
                description=(
                    "Analyze code without editing. Gathers context within the run budget "
                    "and returns a plan and report."
                ),
                inputSchema=_run_tool_schema(),
            ),
            Tool(
                name="toolflow_fix",
                description=(
                    "Fix a problem. Same pipeline as toolflow_create; edits must stay "
                    "inside the run's scope (files, lines and hunks per file)."
                ),
                inputSchema=_run_tool_schema(EDITS_PROPERTY),
            ),
            Tool(
                name="toolflow_learn",
                description=(
                    "Look up framework documentation (cached) for a topic and record what "
                    "was learned as a lesson for later runs."
                ),
                inputSchema=_run_tool_schema({
                    "topic": {
                        "type": "string",
                        "description": "Documentation topic, e.g. 'routing' or 'hooks'.",
                    },
                }),
            ),
            Tool(
                name="toolflow_status",
                description="Server health: engine limits, cache hit rates, stage latency metrics.",
                inputSchema={"type": "object", "properties": {}},
            ),
            Tool(
                name="toolflow_cache_invalidate",
                description="Drop cached documentation by key, tag, project partition, or everything.",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "key": {"type": "string", "description": "Exact cache key"},
                        "tag": {"type": "string", "description": "Framework name or 'project:<signature>'"},
                        "partition": {"type": "string", "description": "Project signature"},
                        "all": {"type": "boolean", "description": "Clear the whole cache"},
                    },
                },
            ),
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle tool calls."""
        start_time = time.time()
        arguments = arguments or {}
        try:
            if name in PIPELINE_TOOLS:
                result = await handle_pipeline_tool(name, arguments, get_runtime, server_config)
            elif name == "toolflow_status":
                result = await handle_status(arguments, get_runtime, get_configs(), get_metrics_collector())
            elif name == "toolflow_cache_invalidate":
                result = await handle_cache_invalidate(arguments, get_runtime)
            else:
                result = [TextContent(type="text", text=f"Unknown tool: {name}")]

            logger.debug(f"[TOOL] {name} answered in {int((time.time() - start_time) * 1000)}ms")
            return result

        except Exception as e:
            logger.error(f"[TOOL] {name} failed: {e}", exc_info=True)
            return [TextContent(type="text", text=f"Error: {str(e)}")]

    return server


async def run_server():
    """Run the MCP server with graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    server = create_server()

    loop = asyncio.get_running_loop()

    def handle_shutdown(sig):
        logger.info(f"Received {sig.name}, shutting down gracefully...")
        _shutdown_event.set()

    # Unix only
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))

    try:
        async with stdio_server() as (read_stream, write_stream):
            server_task = asyncio.create_task(
                server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options(),
                )
            )

            done, pending = await asyncio.wait(
                [server_task, asyncio.create_task(_shutdown_event.wait())],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    finally:
        await cleanup_resources()


def main():
    """Main entry point."""
    enable_logging()
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
