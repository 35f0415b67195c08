"""
Tests for the context gathering stages and the cached documentation lookup.
"""

import pytest

from toolflow_mcp.errors import StageInputError, TransientError
from toolflow_mcp.models import NARROWING_LEVEL, Budget, StageId
from toolflow_mcp.pipeline import PipelineEngine, StageRegistry
from toolflow_mcp.pipeline.stages import (
    AgentsMDStage,
    ContextGatherer,
    DocumentationLookup,
    DocumentationStage,
    RepoFactsStage,
    SemanticSearchStage,
)
from toolflow_mcp.pipeline.stages.gathering import (
    GATHER_KEY,
    GatheringStage,
    fallback_documentation,
    frameworks_from_facts,
    project_signature,
)

from .conftest import FakeDirectives, FakeDocs, FakeFacts, FakeSearch, make_context


def gathering_engine(gatherer, tokens, pipeline_config, metrics, clock) -> PipelineEngine:
    registry = StageRegistry([
        AgentsMDStage(gatherer, tokens),
        RepoFactsStage(gatherer, tokens),
        DocumentationStage(gatherer, tokens),
        SemanticSearchStage(gatherer, tokens),
    ])
    return PipelineEngine(registry, pipeline_config, metrics=metrics, clock=clock)


@pytest.fixture
def docs() -> FakeDocs:
    return FakeDocs()


@pytest.fixture
def gatherer(memory_cache, docs) -> ContextGatherer:
    return ContextGatherer(
        directives=FakeDirectives(["Use type hints", "Keep functions small"]),
        facts=FakeFacts(),
        search=FakeSearch(["[fix] timeout in src/app.py", "[create] new router"]),
        documentation=DocumentationLookup(docs, memory_cache),
        search_limit=5,
    )


class TestGatheringRun:
    """The four gathering stages as one engine run."""

    @pytest.mark.asyncio
    async def test_gathers_everything(self, gatherer, docs, tokens, pipeline_config, metrics, clock):
        engine = gathering_engine(gatherer, tokens, pipeline_config, metrics, clock)

        result = await engine.execute("toolflow_analyze", {"request": "timeout handling"})

        assert result.success is True
        assert list(result.stages_executed) == ["AgentsMD", "RepoFacts", "Documentation", "SemanticSearch"]
        assert result.data["directives"] == ["Use type hints", "Keep functions small"]
        assert result.data["frameworks"] == ["fastapi", "python"]
        assert result.data["documentation"] == {
            "fastapi": "docs for fastapi",
            "python": "docs for python",
        }
        assert result.data["search_results"] == ["[fix] timeout in src/app.py", "[create] new router"]
        assert result.final_context.metadata["docs_cache"] == {"fastapi": "miss", "python": "miss"}
        assert result.budget_used.tokens > 0
        assert result.budget_used.chunks == 2

    @pytest.mark.asyncio
    async def test_second_run_hits_cache(self, gatherer, docs, tokens, pipeline_config, metrics, clock):
        engine = gathering_engine(gatherer, tokens, pipeline_config, metrics, clock)

        await engine.execute("toolflow_analyze", {"request": "a"})
        result = await engine.execute("toolflow_analyze", {"request": "b"})

        assert result.final_context.metadata["docs_cache"] == {"fastapi": "hit", "python": "hit"}
        assert len(docs.calls) == 2

    @pytest.mark.asyncio
    async def test_topic_defaults_to_tool_kind(self, gatherer, docs, tokens, pipeline_config, metrics, clock):
        engine = gathering_engine(gatherer, tokens, pipeline_config, metrics, clock)

        await engine.execute("toolflow_fix", {"request": "a"})
        await engine.execute("toolflow_learn", {"request": "b", "topic": "routing"})

        topics = {topic for _, topic in docs.calls}
        assert topics == {"fix", "routing"}

    @pytest.mark.asyncio
    async def test_session_closed_after_run(self, gatherer, tokens, pipeline_config, metrics, clock):
        engine = gathering_engine(gatherer, tokens, pipeline_config, metrics, clock)

        result = await engine.execute("toolflow_analyze", {"request": "a"})

        session = result.final_context.metadata[GATHER_KEY]
        assert session._closed is True
        assert GATHER_KEY not in result.final_context.to_dict()["metadata"]

    @pytest.mark.asyncio
    async def test_lookups_start_concurrently(self, gatherer, tokens, pipeline_config, metrics, clock):
        engine = gathering_engine(gatherer, tokens, pipeline_config, metrics, clock)

        await engine.execute("toolflow_analyze", {"request": "a"})

        assert gatherer.directives.calls == 1
        assert gatherer.facts.calls == 1
        assert gatherer.search.limits == [5]


class TestDocumentationFailures:
    """Provider failures: fallback for permanent errors, retry for transient ones."""

    @pytest.mark.asyncio
    async def test_permanent_failure_uses_fallback(self, memory_cache, tokens, pipeline_config, metrics, clock):
        docs = FakeDocs(failures=[StageInputError("unknown library"), StageInputError("unknown library")])
        gatherer = ContextGatherer(
            FakeDirectives(), FakeFacts(), FakeSearch(), DocumentationLookup(docs, memory_cache)
        )
        engine = gathering_engine(gatherer, tokens, pipeline_config, metrics, clock)

        result = await engine.execute("toolflow_fix", {"request": "a"})

        assert result.success is True
        assert result.errors == ()
        assert result.data["documentation"]["fastapi"] == fallback_documentation("fastapi", "fix")
        assert result.final_context.metadata["docs_fallback"] == ["fastapi", "python"]
        assert memory_cache.stats().total_entries == 0

    @pytest.mark.asyncio
    async def test_transient_failure_retries_stage(self, memory_cache, tokens, pipeline_config, metrics, clock):
        docs = FakeDocs(failures=[TransientError("HTTP 503")])
        gatherer = ContextGatherer(
            FakeDirectives(), FakeFacts(), FakeSearch(), DocumentationLookup(docs, memory_cache)
        )
        engine = gathering_engine(gatherer, tokens, pipeline_config, metrics, clock)

        result = await engine.execute("toolflow_analyze", {"request": "a"})

        assert result.success is True
        assert [e.stage for e in result.errors] == ["Documentation"]
        assert result.final_context.retry_count == 1
        assert list(result.stages_executed).count("Documentation") == 1
        assert set(result.data["documentation"]) == {"fastapi", "python"}

    @pytest.mark.asyncio
    async def test_retry_narrows_frameworks(self, memory_cache, tokens, pipeline_config, metrics, clock):
        docs = FakeDocs(failures=[TransientError("timeout"), TransientError("timeout")])
        gatherer = ContextGatherer(
            FakeDirectives(), FakeFacts(), FakeSearch(),
            DocumentationLookup(docs, memory_cache, max_frameworks=2),
        )
        engine = gathering_engine(gatherer, tokens, pipeline_config, metrics, clock)

        result = await engine.execute("toolflow_analyze", {"request": "a"})

        assert result.final_context.narrowing_level >= 1
        assert set(result.data["documentation"]) == {"fastapi"}

    @pytest.mark.asyncio
    async def test_fact_detection_failure_is_reissued(self, memory_cache, docs, tokens, pipeline_config, metrics, clock):
        facts = FakeFacts(failures=[TransientError("disk busy")])
        gatherer = ContextGatherer(FakeDirectives(), facts, FakeSearch(), DocumentationLookup(docs, memory_cache))
        engine = gathering_engine(gatherer, tokens, pipeline_config, metrics, clock)

        result = await engine.execute("toolflow_analyze", {"request": "a"})

        assert result.success is True
        assert facts.calls == 2
        assert [e.stage for e in result.errors] == ["RepoFacts"]
        assert result.data["frameworks"] == ["fastapi", "python"]


class TestBudgetedGathering:
    """Stages keep what fits the remaining budget."""

    @pytest.mark.asyncio
    async def test_directives_trimmed_to_token_budget(self, tokens):
        gatherer = ContextGatherer(
            FakeDirectives(["Use type hints", "Keep functions small"]), FakeFacts(), FakeSearch()
        )
        context = make_context(budget=Budget(time_ms=1000, tokens=5, chunks=10, files=3))

        patch = await AgentsMDStage(gatherer, tokens).execute(context)
        await patch.metadata[GATHER_KEY].aclose()

        assert patch.data["directives"] == ["Use type hints"]
        assert patch.metadata["tokens_used"] == 4

    @pytest.mark.asyncio
    async def test_search_limit_narrowed(self, tokens):
        search = FakeSearch([f"hit {i}" for i in range(10)])
        gatherer = ContextGatherer(FakeDirectives(), FakeFacts(), search, search_limit=5)
        context = make_context(request={"request": "find hits"}, metadata={NARROWING_LEVEL: 1})

        patch = await SemanticSearchStage(gatherer, tokens).execute(context)
        await patch.metadata[GATHER_KEY].aclose()

        assert search.limits == [2]
        assert patch.data["search_results"] == ["hit 0", "hit 1"]
        assert patch.metadata["chunks_used"] == 2

    @pytest.mark.asyncio
    async def test_search_limited_by_chunk_budget(self, tokens):
        search = FakeSearch([f"hit {i}" for i in range(10)])
        gatherer = ContextGatherer(FakeDirectives(), FakeFacts(), search, search_limit=5)
        context = make_context(
            request={"request": "find hits"},
            budget=Budget(time_ms=1000, tokens=8000, chunks=10, files=3),
            metadata={"chunks_used": 9},
        )

        patch = await SemanticSearchStage(gatherer, tokens).execute(context)
        await patch.metadata[GATHER_KEY].aclose()

        assert patch.data["search_results"] == ["hit 0"]

    @pytest.mark.asyncio
    async def test_no_query_no_search(self, tokens):
        search = FakeSearch(["anything"])
        gatherer = ContextGatherer(FakeDirectives(), FakeFacts(), search)

        patch = await SemanticSearchStage(gatherer, tokens).execute(make_context(request={}))
        await patch.metadata[GATHER_KEY].aclose()

        assert search.limits == []
        assert patch.data["search_results"] == []

    @pytest.mark.asyncio
    async def test_documentation_truncated_to_max_tokens(self, memory_cache, tokens):
        docs = FakeDocs(text="x" * 4000)
        gatherer = ContextGatherer(
            FakeDirectives(), FakeFacts({"framework:react"}), FakeSearch(),
            DocumentationLookup(docs, memory_cache),
        )
        context = make_context()

        patch = await DocumentationStage(gatherer, tokens, max_tokens=100).execute(context)
        await patch.metadata[GATHER_KEY].aclose()

        assert patch.metadata["tokens_used"] <= 100
        assert patch.data["documentation"]["react"].endswith("(truncated)")


class TestDocumentationLookup:
    """Cache keying and project signatures."""

    def test_cache_key_depends_on_all_parts(self):
        key = DocumentationLookup.cache_key("react", "hooks", "sig1")

        assert key == DocumentationLookup.cache_key("react", "hooks", "sig1")
        assert key != DocumentationLookup.cache_key("vue", "hooks", "sig1")
        assert key != DocumentationLookup.cache_key("react", "state", "sig1")
        assert key != DocumentationLookup.cache_key("react", "hooks", "sig2")
        assert len(key) == 64

    def test_signature_changes_with_dependency_versions(self):
        old = project_signature({"framework:react", "dep:react@18.2.0"})
        new = project_signature({"framework:react", "dep:react@19.0.0"})

        assert old != new
        assert old == project_signature({"dep:react@18.2.0", "framework:react"})

    def test_frameworks_before_languages(self):
        facts = {"language:typescript", "framework:react", "structure:src", "framework:express"}

        assert frameworks_from_facts(facts) == ["express", "react", "typescript"]

    @pytest.mark.asyncio
    async def test_entries_tagged_and_partitioned(self, memory_cache, docs):
        lookup = DocumentationLookup(docs, memory_cache)
        facts = {"framework:react"}
        signature = project_signature(facts)

        await lookup.lookup(facts, "create", "hooks")

        assert await memory_cache.invalidate_by_tag(f"project:{signature}") == 1

    @pytest.mark.asyncio
    async def test_partition_invalidation(self, memory_cache, docs):
        lookup = DocumentationLookup(docs, memory_cache)
        facts = {"framework:react", "language:javascript"}

        found = await lookup.lookup(facts, "create", None)

        assert await memory_cache.invalidate_partition(found["signature"]) == 2


class TestGatheringStageContract:

    def test_gather_must_be_implemented(self, gatherer, tokens):
        with pytest.raises(TypeError):
            GatheringStage(gatherer, tokens)
