"""
Workspace file access for the Snippet and Edit stages.

- Paths are resolved against the project root; anything escaping it is refused
- Reads are async (aiofiles) with a bounded preview length
- Encoding fallback: utf-8, then latin-1
"""

from pathlib import Path

import aiofiles

from ..errors import ScopeViolation

TRUNCATION_MARKER = "\n... (preview truncated)"


def resolve_in_root(root: Path, path: str) -> Path:
    """Absolute path of path inside root; ScopeViolation if it leaves root."""
    if not path or "\x00" in path:
        raise ScopeViolation(f"invalid path: {path!r}")

    root = root.resolve()
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = root / candidate
    candidate = candidate.resolve()

    if candidate != root and root not in candidate.parents:
        raise ScopeViolation(f"{path} is outside the project root")
    return candidate


class LocalFileReader:
    """Reads a bounded preview of a project file."""

    def __init__(self, root: str | Path, preview_chars: int = 4000):
        self.root = Path(root)
        self.preview_chars = preview_chars

    async def _read(self, path: Path, encoding: str) -> str:
        async with aiofiles.open(path, mode="r", encoding=encoding) as f:
            return await f.read(self.preview_chars + 1)

    async def read(self, path: str) -> str:
        """
        Preview of the file at path.

        Raises OSError (FileNotFoundError, PermissionError, ...) from the
        filesystem unchanged, so the caller can classify it.
        """
        resolved = resolve_in_root(self.root, path)

        try:
            text = await self._read(resolved, "utf-8")
        except UnicodeDecodeError:
            text = await self._read(resolved, "latin-1")

        if len(text) > self.preview_chars:
            return text[:self.preview_chars] + TRUNCATION_MARKER
        return text
