"""
AGENTS.md directive provider.

Looks for AGENTS.md in the project root, docs/ and .github/. Bullet and
numbered list items become directives. Items in a section (or following a
line) marked MUST/CRITICAL sort first, items marked MAY/SUGGESTED last;
order is otherwise preserved.
"""

import logging
import re
from pathlib import Path

import aiofiles

logger = logging.getLogger(__name__)

SEARCH_PATHS = [
    "AGENTS.md",
    "agents.md",
    "Agents.md",
    "docs/AGENTS.md",
    "docs/agents.md",
    ".github/AGENTS.md",
    ".github/agents.md",
]

_ITEM = re.compile(r"^(?:[-*•]|\d+[.)])\s+(.*)$")
_HIGH = ("MUST", "CRITICAL", "NEVER", "ALWAYS")
_LOW = ("MAY", "SUGGESTED", "OPTIONAL")


def _priority(text: str) -> int | None:
    if any(word in text for word in _HIGH):
        return 0
    if any(word in text for word in _LOW):
        return 2
    return None


def parse_directives(content: str) -> list[str]:
    """List items of an AGENTS.md document, highest priority first."""
    items: list[tuple[int, int, str]] = []
    section_priority = 1
    in_code = False

    for line in content.splitlines():
        stripped = line.strip()
        if stripped.startswith("```"):
            in_code = not in_code
            continue
        if in_code or not stripped:
            continue

        if stripped.startswith("#"):
            section_priority = _priority(stripped) or 1
            continue

        match = _ITEM.match(stripped)
        if match:
            text = match.group(1).strip()
            if text:
                priority = _priority(text)
                items.append((section_priority if priority is None else priority, len(items), text))

    return [text for _, _, text in sorted(items)]


class AgentsFileDirectiveProvider:
    """Reads directives from the first AGENTS.md found under root."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def locate(self) -> Path | None:
        for relative in SEARCH_PATHS:
            path = self.root / relative
            if path.is_file():
                return path
        return None

    async def read(self) -> list[str]:
        path = self.locate()
        if path is None:
            logger.debug(f"[DIRECTIVES] No AGENTS.md under {self.root}")
            return []

        async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
            content = await f.read()

        directives = parse_directives(content)
        logger.debug(f"[DIRECTIVES] {len(directives)} directives from {path}")
        return directives
