"""
Pytest configuration and fixtures for Toolflow MCP tests.
"""

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Sequence

import pytest
import pytest_asyncio

from toolflow_mcp.cache import SqliteCacheStore, TieredCache
from toolflow_mcp.collaborators import LessonMemory
from toolflow_mcp.config import CacheConfig, PipelineConfig
from toolflow_mcp.errors import TransientError
from toolflow_mcp.interfaces import AppliedEdit, EditStep, ValidationOutcome
from toolflow_mcp.models import NARROWING_LEVEL, Budget, ContextPatch, RunContext, Scope, StageId
from toolflow_mcp.pipeline import PipelineEngine, ToolflowRuntime, build_registry
from toolflow_mcp.pipeline.stages.base import Stage
from toolflow_mcp.tokens import TokenCounter
from toolflow_mcp.utils import MetricsCollector


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingStage(Stage):
    """
    Stage that returns a fixed patch and records the contexts it saw.

    failures: exceptions raised by the first calls, in order.
    """

    def __init__(
        self,
        stage_id: StageId,
        data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        failures: Sequence[BaseException] = (),
        on_execute: Callable[[RunContext], None] | None = None,
    ):
        self.stage_id = stage_id
        self.data = data if data is not None else {stage_id.value.lower(): True}
        self.metadata = metadata or {}
        self.failures = list(failures)
        self.on_execute = on_execute
        self.calls: list[RunContext] = []

    async def execute(self, context: RunContext) -> ContextPatch:
        self.calls.append(context)
        if self.on_execute is not None:
            self.on_execute(context)
        if self.failures:
            raise self.failures.pop(0)
        return ContextPatch(data=dict(self.data), metadata=dict(self.metadata))


def flaky(stage_id: StageId, times: int) -> RecordingStage:
    """Stage that fails transiently `times` times, then succeeds."""
    return RecordingStage(stage_id, failures=[TransientError("upstream hiccup")] * times)


class FakeDirectives:
    def __init__(self, directives: list[str] | None = None):
        self.directives = directives or []
        self.calls = 0

    async def read(self) -> list[str]:
        self.calls += 1
        return list(self.directives)


class FakeFacts:
    def __init__(self, facts: set[str] | None = None, failures: Sequence[BaseException] = ()):
        self.facts = facts if facts is not None else {"language:python", "framework:fastapi"}
        self.failures = list(failures)
        self.calls = 0

    async def detect(self) -> set[str]:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return set(self.facts)


class FakeDocs:
    """Documentation provider returning canned text, optionally failing first."""

    def __init__(self, text: str = "docs", failures: Sequence[BaseException] = (), delay: float = 0.0):
        self.text = text
        self.failures = list(failures)
        self.delay = delay
        self.calls: list[tuple[str, str | None]] = []

    async def query(self, framework: str, topic: str | None = None) -> str:
        self.calls.append((framework, topic))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return f"{self.text} for {framework}"

    async def close(self) -> None:
        pass


class FakeSearch:
    def __init__(self, results: list[str] | None = None):
        self.results = results or []
        self.limits: list[int] = []

    async def search(self, query: str, limit: int) -> list[str]:
        self.limits.append(limit)
        return self.results[:limit]


class FakeReader:
    def __init__(self, files: dict[str, str] | None = None, errors: dict[str, BaseException] | None = None):
        self.files = files or {}
        self.errors = errors or {}
        self.reads: list[str] = []

    async def read(self, path: str) -> str:
        self.reads.append(path)
        if path in self.errors:
            raise self.errors[path]
        if path not in self.files:
            raise FileNotFoundError(2, "No such file", path)
        return self.files[path]


class FakeEditor:
    """Editor that reports a fixed number of hunks per edit."""

    def __init__(self, hunks: int = 1):
        self.hunks = hunks
        self.calls: list[tuple[list[EditStep], bool]] = []

    async def apply(self, plan: Sequence[EditStep], dry_run: bool = False) -> list[AppliedEdit]:
        self.calls.append((list(plan), dry_run))
        return [
            AppliedEdit(
                path=step.path,
                diff="",
                lines_changed=len(step.content.splitlines()),
                hunks=self.hunks,
                written=not dry_run,
            )
            for step in plan
        ]


class FakeValidator:
    def __init__(self, failing: set[str] | None = None):
        self.failing = failing or set()

    async def check(self, artifact: str, content: str) -> ValidationOutcome:
        passed = artifact not in self.failing
        return ValidationOutcome(artifact, passed, [] if passed else ["broken"])


class FakeLessons:
    def __init__(self):
        self.recorded: list[dict[str, Any]] = []

    async def record(self, pattern: dict[str, Any]) -> str:
        self.recorded.append(pattern)
        return f"lesson-{len(self.recorded)}"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tokens() -> TokenCounter:
    """Character-estimate counter (no tiktoken download in tests)."""
    return TokenCounter(use_tiktoken=False)


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    """Test pipeline configuration rooted in a temporary project."""
    return PipelineConfig(
        project_root=str(tmp_path),
        budget_time_ms=60_000,
        budget_tokens=8000,
        budget_chunks=10,
        budget_files=3,
        max_retries=2,
        use_tiktoken=False,
        lessons_db_path=str(tmp_path / "lessons.db"),
        docs_url="http://docs.test/mcp",
    )


@pytest.fixture
def cache_config(tmp_path: Path) -> CacheConfig:
    return CacheConfig(
        max_memory_entries=100,
        max_memory_bytes=1024 * 1024,
        default_ttl_seconds=3600,
        stale_while_revalidate=True,
        swr_window_seconds=7 * 24 * 3600,
        max_age_seconds=30 * 24 * 3600,
        persistence_enabled=False,
        db_path=str(tmp_path / "cache.db"),
    )


@pytest_asyncio.fixture
async def memory_cache(cache_config: CacheConfig, clock: FakeClock) -> AsyncGenerator[TieredCache, None]:
    """Memory-only cache on the fake clock."""
    cache = TieredCache(cache_config, clock=clock)
    yield cache
    await cache.close()


@pytest_asyncio.fixture
async def cache_store(tmp_path: Path) -> AsyncGenerator[SqliteCacheStore, None]:
    store = SqliteCacheStore(tmp_path / "cache.db")
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def lesson_memory(tmp_path: Path) -> AsyncGenerator[LessonMemory, None]:
    memory = LessonMemory(tmp_path / "lessons.db")
    await memory.initialize()
    yield memory
    await memory.close()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A small FastAPI project with an AGENTS.md."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "tests").mkdir()
    (root / "requirements.txt").write_text("fastapi==0.110.0\nuvicorn>=0.29\n")
    (root / "AGENTS.md").write_text(
        "# Conventions\n"
        "- Use type hints\n"
        "\n"
        "## MUST\n"
        "- Run the tests before committing\n"
    )
    (root / "src" / "app.py").write_text("def handler():\n    return {'ok': True}\n")
    return root


def make_context(
    tool_name: str = "toolflow_analyze",
    request: dict[str, Any] | None = None,
    budget: Budget | None = None,
    scope: Scope | None = None,
    data: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> RunContext:
    """A RunContext as the engine would build it, for driving one stage."""
    return RunContext(
        tool_name=tool_name,
        request_id="test-run",
        start_time=0.0,
        budget=budget or Budget(time_ms=60_000, tokens=8000, chunks=10, files=3),
        scope=scope or Scope(
            allowed_file_types=frozenset({".py", ".ts", ".js", ".json", ".md"}),
            excluded_paths=frozenset({"node_modules", ".git"}),
        ),
        data={"request": dict(request or {}), **(data or {})},
        metadata={NARROWING_LEVEL: 0, **(metadata or {})},
    )


@pytest_asyncio.fixture
async def runtime(
    pipeline_config: PipelineConfig,
    cache_config: CacheConfig,
    project_dir: Path,
    tokens: TokenCounter,
    metrics: MetricsCollector,
) -> AsyncGenerator[ToolflowRuntime, None]:
    """The default eleven-stage pipeline over project_dir, with canned documentation."""
    config = replace(pipeline_config, project_root=str(project_dir))
    cache = TieredCache(cache_config)
    docs = FakeDocs()
    lessons = LessonMemory(config.lessons_db_path)
    registry, learn = build_registry(config, cache, docs, lessons, tokens)
    engine = PipelineEngine(registry, config, metrics=metrics)

    rt = ToolflowRuntime(engine=engine, cache=cache, docs_provider=docs, lessons=lessons, learn_stage=learn)
    yield rt
    await rt.close()
