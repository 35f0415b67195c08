"""
Snippet stage: read bounded previews of the files relevant to the request.

Candidates come from the request's paths first, then from file names that
appear in search results. Scope (allowed types, excluded paths, max files)
and the remaining files and tokens budgets decide how many are read; the
reads run concurrently. Files that cannot be read are skipped and reported;
only a run of transient read failures (descriptor exhaustion) is raised.
"""

import asyncio
import logging
import re
from typing import Any

from ...interfaces import FileReader
from ...models import FILES_USED, TOKENS_USED, ContextPatch, RunContext, StageId
from ...tokens import TokenCounter
from .base import Stage, is_transient, narrowed, remaining_budget

logger = logging.getLogger(__name__)

PATH_PATTERN = re.compile(r"(?<![\w/.-])((?:[\w.-]+/)*[\w.-]+\.[A-Za-z0-9]{1,5})\b")


def candidate_paths(context: RunContext) -> list[str]:
    request = context.data.get("request", {})
    paths: list[str] = []
    for key in ("paths", "files"):
        value = request.get(key) or []
        if isinstance(value, str):
            value = [value]
        paths.extend(str(p) for p in value)

    for hit in context.data.get("search_results", []):
        paths.extend(PATH_PATTERN.findall(hit))

    return list(dict.fromkeys(p.strip() for p in paths if p and p.strip()))


class SnippetStage(Stage):
    stage_id = StageId.SNIPPET

    def __init__(self, reader: FileReader, tokens: TokenCounter):
        self.reader = reader
        self.tokens = tokens

    async def execute(self, context: RunContext) -> ContextPatch:
        scope = context.scope
        headroom = remaining_budget(context)
        limit = min(narrowed(scope.max_files, context.narrowing_level), headroom.files)

        candidates = [p for p in candidate_paths(context) if scope.allows(p)]
        selected = candidates[:limit]
        if len(candidates) > len(selected):
            logger.debug(f"[STAGE] Snippet reading {len(selected)} of {len(candidates)} candidate files")

        if not selected:
            return ContextPatch(data={"snippets": {}}, metadata={FILES_USED: 0})

        results = await asyncio.gather(
            *(self.reader.read(path) for path in selected), return_exceptions=True
        )

        snippets: dict[str, str] = {}
        failures: dict[str, BaseException] = {}
        for path, result in zip(selected, results):
            if isinstance(result, BaseException):
                failures[path] = result
            else:
                snippets[path] = result

        if failures and not snippets:
            transient = [e for e in failures.values() if is_transient(e)]
            if transient:
                raise transient[0]
        for path, error in failures.items():
            logger.warning(f"[STAGE] Snippet skipped {path}: {error}")

        available = headroom.tokens
        used = 0
        fitted: dict[str, str] = {}
        for path, text in snippets.items():
            preview = self.tokens.truncate(text, available - used)
            if not preview and text:
                break
            fitted[path] = preview
            used += self.tokens.count(preview)

        return ContextPatch(
            data={"snippets": fitted},
            metadata={
                FILES_USED: len(fitted),
                TOKENS_USED: used,
                "snippet_errors": {p: str(e) for p, e in failures.items()},
            },
        )

    def cost_estimate(self) -> dict[str, Any]:
        return {"files": 3}
