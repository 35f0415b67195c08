"""
Status and cache maintenance handlers.

- handle_status: server health, engine limits, cache and stage metrics
- handle_cache_invalidate: drop documentation cache entries
"""

import json
import logging
from typing import Any, Callable

from mcp.types import TextContent

from ..config import CacheConfig, PipelineConfig, ServerConfig
from ..pipeline import ToolflowRuntime
from ..utils import MetricsCollector

logger = logging.getLogger(__name__)


async def handle_status(
    arguments: dict[str, Any],
    get_runtime: Callable[[], ToolflowRuntime],
    configs: tuple[PipelineConfig, CacheConfig, ServerConfig],
    metrics_collector: MetricsCollector,
) -> list[TextContent]:
    """Handle toolflow_status."""
    pipeline_config, cache_config, server_config = configs
    runtime = get_runtime()

    status = {
        "server": {
            "name": server_config.name,
            "version": server_config.version,
        },
        "configuration": {
            "project_root": pipeline_config.project_root,
            "docs_url": pipeline_config.docs_url,
            "docs_api_key_set": bool(pipeline_config.docs_api_key),
            "write_edits": pipeline_config.write_edits,
            "cache_persistence": cache_config.persistence_enabled,
            "cache_ttl_seconds": cache_config.default_ttl_seconds,
        },
        "engine": runtime.engine.stats(),
        "cache": runtime.cache.stats().to_dict(),
        "lessons": {
            "stored": await runtime.lessons.count(),
            "pending_writes": runtime.learn_stage.pending,
        },
        "metrics": metrics_collector.get_stats(),
    }

    errors = pipeline_config.validate() + cache_config.validate()
    if errors:
        status["errors"] = errors

    return [TextContent(type="text", text=json.dumps(status, indent=2, default=str))]


async def handle_cache_invalidate(
    arguments: dict[str, Any],
    get_runtime: Callable[[], ToolflowRuntime],
) -> list[TextContent]:
    """Handle toolflow_cache_invalidate: exactly one of key, tag, partition or all."""
    selectors = [k for k in ("key", "tag", "partition") if arguments.get(k)]
    clear_all = bool(arguments.get("all"))

    if len(selectors) + int(clear_all) != 1:
        return [TextContent(type="text", text=json.dumps({
            "success": False,
            "error": "Provide exactly one of 'key', 'tag', 'partition' or 'all'",
        }))]

    cache = get_runtime().cache
    if clear_all:
        await cache.clear()
        result = {"success": True, "cleared": True}
    else:
        selector = selectors[0]
        value = str(arguments[selector])
        if selector == "key":
            removed = int(await cache.invalidate(value))
        elif selector == "tag":
            removed = await cache.invalidate_by_tag(value)
        else:
            removed = await cache.invalidate_partition(value)
        result = {"success": True, selector: value, "removed": removed}

    logger.info(f"[CACHE] Invalidation via tool: {result}")
    return [TextContent(type="text", text=json.dumps(result))]
