"""
Wiring of the default pipeline: collaborators, cache, registry, engine.
"""

import logging
from dataclasses import dataclass

from ..cache import SqliteCacheStore, TieredCache
from ..collaborators import (
    AgentsFileDirectiveProvider,
    HttpDocumentationProvider,
    LessonMemory,
    LocalFileReader,
    ProjectFactDetector,
    SyntaxValidator,
    WorkspaceEditor,
)
from ..config import CacheConfig, PipelineConfig
from ..interfaces import DocumentationProvider
from ..tokens import TokenCounter
from ..utils import MetricsCollector
from .engine import PipelineEngine
from .registry import StageRegistry
from .stages import (
    AgentsMDStage,
    ContextGatherer,
    DocumentationLookup,
    DocumentationStage,
    DocumentStage,
    EditStage,
    GateStage,
    LearnStage,
    PlanStage,
    RepoFactsStage,
    SemanticSearchStage,
    SnippetStage,
    ValidateStage,
)

logger = logging.getLogger(__name__)


def build_cache(config: CacheConfig) -> TieredCache:
    store = SqliteCacheStore(config.db_path) if config.persistence_enabled else None
    return TieredCache(config, store=store)


def build_registry(
    config: PipelineConfig,
    cache: TieredCache,
    docs_provider: DocumentationProvider,
    lessons: LessonMemory,
    tokens: TokenCounter,
) -> tuple[StageRegistry, LearnStage]:
    """All eleven default stages; the Learn stage is returned for draining."""
    gatherer = ContextGatherer(
        directives=AgentsFileDirectiveProvider(config.project_root),
        facts=ProjectFactDetector(config.project_root),
        search=lessons,
        documentation=DocumentationLookup(docs_provider, cache),
        search_limit=config.semantic_search_limit,
    )
    learn = LearnStage(lessons)

    registry = StageRegistry([
        AgentsMDStage(gatherer, tokens),
        RepoFactsStage(gatherer, tokens),
        DocumentationStage(gatherer, tokens, max_tokens=config.docs_max_tokens),
        SemanticSearchStage(gatherer, tokens),
        SnippetStage(LocalFileReader(config.project_root, config.snippet_preview_chars), tokens),
        PlanStage(),
        EditStage(WorkspaceEditor(config.project_root, write=config.write_edits)),
        ValidateStage(SyntaxValidator()),
        GateStage(),
        DocumentStage(),
        learn,
    ])
    return registry, learn


@dataclass
class ToolflowRuntime:
    """Long-lived objects shared by all runs of one server process."""
    engine: PipelineEngine
    cache: TieredCache
    docs_provider: HttpDocumentationProvider
    lessons: LessonMemory
    learn_stage: LearnStage

    async def close(self) -> None:
        """Drain lesson writes, then close cache, HTTP client and lesson store."""
        await self.learn_stage.drain()
        await self.cache.close()
        await self.docs_provider.close()
        await self.lessons.close()
        logger.info("[PIPELINE] Runtime closed")


def build_runtime(
    pipeline_config: PipelineConfig | None = None,
    cache_config: CacheConfig | None = None,
    metrics: MetricsCollector | None = None,
) -> ToolflowRuntime:
    pipeline_config = pipeline_config or PipelineConfig()
    cache_config = cache_config or CacheConfig()

    cache = build_cache(cache_config)
    docs_provider = HttpDocumentationProvider(
        pipeline_config.docs_url,
        api_key=pipeline_config.docs_api_key,
        timeout_seconds=pipeline_config.docs_timeout_seconds,
        max_tokens=pipeline_config.docs_max_tokens,
    )
    lessons = LessonMemory(pipeline_config.lessons_db_path)
    tokens = TokenCounter(use_tiktoken=pipeline_config.use_tiktoken)

    registry, learn = build_registry(pipeline_config, cache, docs_provider, lessons, tokens)
    engine = PipelineEngine(registry, pipeline_config, metrics=metrics)
    return ToolflowRuntime(
        engine=engine,
        cache=cache,
        docs_provider=docs_provider,
        lessons=lessons,
        learn_stage=learn,
    )
