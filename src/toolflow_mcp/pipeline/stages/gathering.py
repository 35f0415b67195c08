"""
Context gathering stages: AgentsMD, RepoFacts, Documentation, SemanticSearch.

The four lookups are independent I/O, so the first gathering stage to run
opens a GatherSession that issues all of them at once:
- directive read, repo-fact detection and semantic search start immediately
- documentation lookup starts as soon as repo facts are known

Each stage then awaits only its own part and SemanticSearch joins the rest.
A part that fails is dropped from the session, so a retried stage re-issues
it with the run's current narrowing level.
"""

import asyncio
import hashlib
import logging
from abc import abstractmethod
from typing import Any, Iterable

from ...cache import TieredCache
from ...errors import ToolflowError
from ...interfaces import DirectiveProvider, DocumentationProvider, RepoFactDetector, SemanticSearch
from ...models import CHUNKS_USED, TOKENS_USED, ContextPatch, RunContext, StageId
from ...tokens import TokenCounter
from .base import Stage, is_transient, narrowed, remaining_budget, request_text, tool_kind

logger = logging.getLogger(__name__)

GATHER_KEY = "_gather"

FALLBACK_DOCS = {
    "react": "React builds user interfaces from components. Use hooks for state and effects, pass data down through props, and keep rendering pure.",
    "vue": "Vue.js is a progressive framework. Use single-file components, the composition API and reactive state.",
    "angular": "Angular is a TypeScript framework. Use components, services and dependency injection; RxJS observables handle async data.",
    "nextjs": "Next.js is a React framework with file-based routing, server rendering, static generation and API routes.",
    "express": "Express is a Node.js web framework. Compose middleware and routers; always terminate a request with a response or next(err).",
    "django": "Django is a Python web framework. Use models, views, templates and forms; the ORM and admin are built in.",
    "flask": "Flask is a lightweight Python web framework. Use routes, blueprints and Jinja2 templates; extensions add the rest.",
    "fastapi": "FastAPI is an async Python web framework. Declare request and response models with type hints; dependencies are injected per route.",
    "typescript": "TypeScript adds static types to JavaScript. Prefer interfaces and narrow types; enable strict mode.",
    "javascript": "Use modern JavaScript: modules, const/let, async/await and strict equality.",
    "python": "Follow PEP 8, type-hint public functions, and keep modules small and testable.",
}

TOOL_GUIDANCE = {
    "create": "When creating code, follow existing project conventions and add tests with new behavior.",
    "analyze": "When analyzing code, cite files and lines and separate facts from suggestions.",
    "fix": "When fixing code, reproduce the failure first and keep the change minimal.",
    "learn": "When recording lessons, describe the pattern, its context and its outcome.",
    "generic": "Follow the project's existing conventions.",
}


def project_signature(facts: Iterable[str]) -> str:
    """Stable short hash of a project's detected facts (including dependency versions)."""
    joined = "\n".join(sorted(facts))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]


def frameworks_from_facts(facts: Iterable[str]) -> list[str]:
    """Frameworks first, then languages; each name once."""
    facts = sorted(facts)
    names = [f.split(":", 1)[1] for f in facts if f.startswith("framework:")]
    names += [f.split(":", 1)[1] for f in facts if f.startswith("language:")]
    return list(dict.fromkeys(names))


def fallback_documentation(framework: str, kind: str) -> str:
    summary = FALLBACK_DOCS.get(framework, f"{framework} is used in this project; consult its official documentation.")
    return f"{summary}\n\n{TOOL_GUIDANCE.get(kind, TOOL_GUIDANCE['generic'])}"


def fit_items(items: Iterable[str], max_tokens: int, counter: TokenCounter) -> tuple[list[str], int]:
    """Leading items whose combined token count fits max_tokens."""
    kept: list[str] = []
    used = 0
    for item in items:
        cost = counter.count(item)
        if used + cost > max_tokens:
            break
        kept.append(item)
        used += cost
    return kept, used


class DocumentationLookup:
    """
    Documentation provider fronted by the tiered cache.

    Cache key: sha256 of (framework, query, project signature). Entries are
    tagged with the framework and "project:<signature>" and partitioned by
    the signature, so a dependency change can drop a project's entries at once.
    """

    def __init__(
        self,
        provider: DocumentationProvider,
        cache: TieredCache,
        max_frameworks: int = 2,
        ttl_seconds: float | None = None,
    ):
        self.provider = provider
        self.cache = cache
        self.max_frameworks = max_frameworks
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def cache_key(framework: str, query: str | None, signature: str) -> str:
        raw = f"{framework}\x00{query or ''}\x00{signature}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    async def lookup(
        self, facts: set[str], kind: str, topic: str | None, level: int = 0
    ) -> dict[str, Any]:
        frameworks = frameworks_from_facts(facts)[:narrowed(self.max_frameworks, level)]
        signature = project_signature(facts)
        results = await asyncio.gather(
            *(self._fetch(framework, kind, topic, signature) for framework in frameworks)
        )
        return {"signature": signature, "entries": dict(zip(frameworks, results))}

    async def _fetch(self, framework: str, kind: str, topic: str | None, signature: str) -> dict[str, Any]:
        key = self.cache_key(framework, topic, signature)
        try:
            found = await self.cache.get_or_load(
                key,
                lambda: self.provider.query(framework, topic),
                ttl_seconds=self.ttl_seconds,
                tags={framework, f"project:{signature}"},
                partition=signature,
            )
        except ToolflowError as e:
            if is_transient(e):
                raise
            logger.warning(f"[DOCS] {framework}: provider failed ({e}), using fallback guidance")
            return {"content": fallback_documentation(framework, kind), "cache": "fallback"}

        return {"content": str(found.value), "cache": found.status}


class GatherSession:
    """Concurrent lookups for one run, shared by the gathering stages."""

    PARTS = ("directives", "facts", "docs", "search")

    def __init__(self, gatherer: "ContextGatherer", context: RunContext):
        self._gatherer = gatherer
        self._kind = tool_kind(context.tool_name)
        self._query = request_text(context)
        topic = context.data.get("request", {}).get("topic")
        self._topic = topic if isinstance(topic, str) and topic else (
            None if self._kind == "generic" else self._kind
        )
        self._tasks: dict[str, asyncio.Task] = {}
        self._closed = False

    def start(self, context: RunContext) -> None:
        for name in ("directives", "facts", "search"):
            self._ensure(name, context.narrowing_level)

    def _ensure(self, name: str, level: int) -> asyncio.Task:
        task = self._tasks.get(name)
        if task is not None:
            return task

        if name == "directives":
            coro = self._gatherer.directives.read()
        elif name == "facts":
            coro = self._gatherer.facts.detect()
        elif name == "search":
            coro = self._search(level)
        else:
            raise ValueError(f"Unknown gather part: {name}")

        task = asyncio.create_task(coro, name=f"gather:{name}")
        self._tasks[name] = task
        if name == "facts":
            task.add_done_callback(lambda t: self._facts_done(t, level))
        return task

    def _facts_done(self, task: asyncio.Task, level: int) -> None:
        if task.cancelled() or task.exception() is not None or self._closed:
            return
        self._ensure_docs(set(task.result()), level)

    def _ensure_docs(self, facts: set[str], level: int) -> None:
        if "docs" not in self._tasks:
            self._tasks["docs"] = asyncio.create_task(self._docs(facts, level), name="gather:docs")

    async def _search(self, level: int) -> list[str]:
        if not self._query:
            return []
        limit = narrowed(self._gatherer.search_limit, level)
        return list(await self._gatherer.search.search(self._query, limit))

    async def _docs(self, facts: set[str], level: int) -> dict[str, Any]:
        lookup = self._gatherer.documentation
        if lookup is None:
            return {"signature": project_signature(facts), "entries": {}}
        return await lookup.lookup(facts, self._kind, self._topic, level)

    async def part(self, name: str, context: RunContext) -> Any:
        """Await one lookup, (re)issuing it if it is not in flight."""
        level = context.narrowing_level
        if name == "docs" and "docs" not in self._tasks:
            facts = await self.part("facts", context)
            self._ensure_docs(set(facts), level)

        task = self._tasks.get(name) or self._ensure(name, level)
        try:
            return await task
        except Exception:
            if self._tasks.get(name) is task:
                del self._tasks[name]
            raise

    async def join(self, context: RunContext) -> dict[str, Any]:
        """Wait for every lookup; failures propagate to the joining stage."""
        return {name: await self.part(name, context) for name in self.PARTS}

    async def aclose(self) -> None:
        """Cancel lookups nobody awaited (the run ended before the join)."""
        self._closed = True
        pending = [t for t in self._tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for task in self._tasks.values():
            if task.done() and not task.cancelled():
                task.exception()
        self._tasks.clear()


class ContextGatherer:
    """Collaborators behind the gathering stages; opens one session per run."""

    def __init__(
        self,
        directives: DirectiveProvider,
        facts: RepoFactDetector,
        search: SemanticSearch,
        documentation: DocumentationLookup | None = None,
        search_limit: int = 5,
    ):
        self.directives = directives
        self.facts = facts
        self.search = search
        self.documentation = documentation
        self.search_limit = search_limit

    def session(self, context: RunContext) -> tuple[GatherSession, dict[str, Any]]:
        """The run's session, plus the metadata needed to store a new one."""
        existing = context.metadata.get(GATHER_KEY)
        if isinstance(existing, GatherSession):
            return existing, {}
        session = GatherSession(self, context)
        session.start(context)
        return session, {GATHER_KEY: session}


class GatheringStage(Stage):
    """Stage that reads from the run's GatherSession."""

    def __init__(self, gatherer: ContextGatherer, tokens: TokenCounter):
        self.gatherer = gatherer
        self.tokens = tokens

    async def execute(self, context: RunContext) -> ContextPatch:
        session, metadata = self.gatherer.session(context)
        try:
            patch = await self.gather(session, context)
        except BaseException:
            if metadata:
                await session.aclose()
            raise
        patch.metadata.update(metadata)
        return patch

    @abstractmethod
    async def gather(self, session: GatherSession, context: RunContext) -> ContextPatch:
        """Await this stage's part of the session and fit it to the budget."""


class AgentsMDStage(GatheringStage):
    stage_id = StageId.AGENTS_MD

    async def gather(self, session: GatherSession, context: RunContext) -> ContextPatch:
        directives = await session.part("directives", context)
        kept, used = fit_items(directives, remaining_budget(context).tokens, self.tokens)
        if len(kept) < len(directives):
            logger.debug(f"[STAGE] AgentsMD kept {len(kept)}/{len(directives)} directives within token budget")
        return ContextPatch(
            data={"directives": kept},
            metadata={TOKENS_USED: used, "directive_count": len(kept)},
        )

    def cost_estimate(self) -> dict[str, Any]:
        return {"tokens": 500}


class RepoFactsStage(GatheringStage):
    stage_id = StageId.REPO_FACTS

    async def gather(self, session: GatherSession, context: RunContext) -> ContextPatch:
        facts = set(await session.part("facts", context))
        return ContextPatch(
            data={"repo_facts": sorted(facts), "frameworks": frameworks_from_facts(facts)},
            metadata={"project_signature": project_signature(facts)},
        )


class DocumentationStage(GatheringStage):
    stage_id = StageId.DOCUMENTATION

    def __init__(self, gatherer: ContextGatherer, tokens: TokenCounter, max_tokens: int = 5000):
        super().__init__(gatherer, tokens)
        self.max_tokens = max_tokens

    async def gather(self, session: GatherSession, context: RunContext) -> ContextPatch:
        docs = await session.part("docs", context)

        available = min(self.max_tokens, remaining_budget(context).tokens)
        documentation: dict[str, str] = {}
        statuses: dict[str, str] = {}
        used = 0
        for framework, entry in docs["entries"].items():
            text = self.tokens.truncate(entry["content"], available - used)
            if not text:
                break
            documentation[framework] = text
            statuses[framework] = entry["cache"]
            used += self.tokens.count(text)

        return ContextPatch(
            data={"documentation": documentation},
            metadata={
                TOKENS_USED: used,
                "docs_cache": statuses,
                "docs_fallback": sorted(fw for fw, s in statuses.items() if s == "fallback"),
            },
        )

    def cost_estimate(self) -> dict[str, Any]:
        return {"tokens": self.max_tokens}


class SemanticSearchStage(GatheringStage):
    stage_id = StageId.SEMANTIC_SEARCH

    async def gather(self, session: GatherSession, context: RunContext) -> ContextPatch:
        results = (await session.join(context))["search"]

        headroom = remaining_budget(context)
        limit = min(narrowed(self.gatherer.search_limit, context.narrowing_level), headroom.chunks)
        kept, used = fit_items(results[:limit], headroom.tokens, self.tokens)
        return ContextPatch(
            data={"search_results": kept},
            metadata={TOKENS_USED: used, CHUNKS_USED: len(kept)},
        )

    def cost_estimate(self) -> dict[str, Any]:
        return {"chunks": self.gatherer.search_limit}
