"""
Configuration for the Toolflow MCP Server

Environment Variables:
- TOOLFLOW_PROJECT_ROOT: Project the tools operate on (default: current directory)
- TOOLFLOW_BUDGET_TIME_MS: Per-run time ceiling in milliseconds (default: 120000)
- TOOLFLOW_BUDGET_TOKENS: Per-run token ceiling (default: 8000)
- TOOLFLOW_BUDGET_CHUNKS: Per-run chunk ceiling (default: 10)
- TOOLFLOW_BUDGET_FILES: Per-run file ceiling (default: 3)
- TOOLFLOW_MAX_RETRIES: Retries shared by all stages of one run (default: 2)
- TOOLFLOW_DOCS_URL: Context7-compatible MCP endpoint for documentation lookups
- TOOLFLOW_DOCS_API_KEY: Bearer token for the documentation endpoint
- TOOLFLOW_CACHE_DB: SQLite file for the durable cache tier
- TOOLFLOW_CACHE_TTL: Default documentation TTL in seconds (default: 24h)

Cache policy defaults: TTL 24h, stale-while-revalidate window 7d, max-age 30d.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


HOUR_SECONDS = 60 * 60
DAY_SECONDS = 24 * HOUR_SECONDS

DEFAULT_ALLOWED_FILE_TYPES = frozenset({
    ".py", ".ts", ".js", ".tsx", ".jsx", ".html", ".css", ".md", ".json",
})

DEFAULT_EXCLUDED_PATHS = frozenset({
    "node_modules", ".git", "dist", "build", "__pycache__", ".venv",
})


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


@dataclass
class PipelineConfig:
    """Configuration for pipeline runs."""

    project_root: str = field(
        default_factory=lambda: os.getenv("TOOLFLOW_PROJECT_ROOT", os.getcwd())
    )

    # Default budget (ceilings for a single run)
    budget_time_ms: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_BUDGET_TIME_MS", 120_000)
    )
    budget_tokens: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_BUDGET_TOKENS", 8000)
    )
    budget_chunks: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_BUDGET_CHUNKS", 10)
    )
    budget_files: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_BUDGET_FILES", 3)
    )

    # Default scope (static limits for editing stages)
    scope_max_files: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_SCOPE_MAX_FILES", 3)
    )
    scope_max_lines_per_file: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_SCOPE_MAX_LINES", 1000)
    )
    scope_max_hunks_per_file: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_SCOPE_MAX_HUNKS", 10)
    )
    allowed_file_types: frozenset[str] = DEFAULT_ALLOWED_FILE_TYPES
    excluded_paths: frozenset[str] = DEFAULT_EXCLUDED_PATHS

    # Retries are shared by every stage of a run
    max_retries: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_MAX_RETRIES", 2)
    )

    # Context gathering
    snippet_preview_chars: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_SNIPPET_PREVIEW", 4000)
    )
    semantic_search_limit: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_SEARCH_LIMIT", 5)
    )

    # Documentation provider (Context7-compatible MCP endpoint)
    docs_url: str = field(
        default_factory=lambda: os.getenv("TOOLFLOW_DOCS_URL", "https://mcp.context7.com/mcp")
    )
    docs_api_key: str = field(default_factory=lambda: os.getenv("TOOLFLOW_DOCS_API_KEY", ""))
    docs_timeout_seconds: float = field(
        default_factory=lambda: _env_float("TOOLFLOW_DOCS_TIMEOUT", 15.0)
    )
    docs_max_tokens: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_DOCS_MAX_TOKENS", 5000)
    )

    # Token counting: tiktoken when enabled, 4 chars per token otherwise
    use_tiktoken: bool = field(
        default_factory=lambda: _env_bool("TOOLFLOW_USE_TIKTOKEN", True)
    )

    # Lesson memory (SQLite)
    lessons_db_path: str = field(
        default_factory=lambda: os.getenv(
            "TOOLFLOW_LESSONS_DB", str(Path.home() / ".toolflow" / "lessons.db")
        )
    )

    # Edits are described, not written, unless explicitly enabled
    write_edits: bool = field(
        default_factory=lambda: _env_bool("TOOLFLOW_WRITE_EDITS", False)
    )

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not os.path.isdir(self.project_root):
            errors.append(f"project_root does not exist: {self.project_root}")

        if self.budget_time_ms <= 0:
            errors.append("budget_time_ms must be positive")

        if min(self.budget_tokens, self.budget_chunks, self.budget_files) < 0:
            errors.append("token, chunk and file budgets must not be negative")

        if self.max_retries < 0:
            errors.append("max_retries must not be negative")

        if self.snippet_preview_chars < 100:
            errors.append("snippet_preview_chars must be at least 100")

        return errors


@dataclass
class CacheConfig:
    """Configuration for the tiered documentation cache."""

    max_memory_entries: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_CACHE_MAX_ENTRIES", 1000)
    )
    max_memory_bytes: int = field(
        default_factory=lambda: _env_int("TOOLFLOW_CACHE_MAX_BYTES", 50 * 1024 * 1024)
    )
    default_ttl_seconds: float = field(
        default_factory=lambda: _env_float("TOOLFLOW_CACHE_TTL", DAY_SECONDS)
    )
    stale_while_revalidate: bool = field(
        default_factory=lambda: _env_bool("TOOLFLOW_CACHE_SWR", True)
    )
    swr_window_seconds: float = field(
        default_factory=lambda: _env_float("TOOLFLOW_CACHE_SWR_WINDOW", 7 * DAY_SECONDS)
    )
    max_age_seconds: float = field(
        default_factory=lambda: _env_float("TOOLFLOW_CACHE_MAX_AGE", 30 * DAY_SECONDS)
    )
    sweep_interval_seconds: float = field(
        default_factory=lambda: _env_float("TOOLFLOW_CACHE_SWEEP_INTERVAL", 300)
    )

    # Durable tier
    persistence_enabled: bool = field(
        default_factory=lambda: _env_bool("TOOLFLOW_CACHE_PERSIST", True)
    )
    db_path: str = field(
        default_factory=lambda: os.getenv(
            "TOOLFLOW_CACHE_DB", str(Path.home() / ".toolflow" / "docs-cache.db")
        )
    )

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if self.max_memory_entries < 1:
            errors.append("max_memory_entries must be at least 1")

        if self.max_memory_bytes < 1024:
            errors.append("max_memory_bytes must be at least 1024")

        if self.default_ttl_seconds <= 0:
            errors.append("default_ttl_seconds must be positive")

        if self.max_age_seconds < self.default_ttl_seconds:
            errors.append("max_age_seconds must not be shorter than default_ttl_seconds")

        if self.swr_window_seconds < 0:
            errors.append("swr_window_seconds must not be negative")

        return errors


@dataclass
class ServerConfig:
    """Configuration for the MCP server."""

    name: str = "toolflow"
    version: str = "0.3.0"
    description: str = (
        "MCP server running coding-assistant tool calls through a "
        "budget-bounded stage pipeline with a tiered documentation cache"
    )

    # Input limits
    max_request_chars: int = 50_000
    max_paths_count: int = 100


def get_config() -> tuple[PipelineConfig, CacheConfig, ServerConfig]:
    """Get configuration instances."""
    return PipelineConfig(), CacheConfig(), ServerConfig()
