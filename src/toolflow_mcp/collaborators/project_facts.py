"""
Project fact detection for the RepoFacts stage

Reads the manifest files at the project root:
- package.json, tsconfig.json (JS/TS)
- pyproject.toml, requirements.txt, setup.py (Python)
- Cargo.toml, go.mod (Rust/Go)

and reports facts such as "language:python", "framework:react" and
"dep:react@18.2.0". Dependency facts carry versions so the project
signature changes when dependencies are upgraded.
"""

import json
import logging
import re
from pathlib import Path

import aiofiles

logger = logging.getLogger(__name__)

MANIFEST_FILES = [
    "package.json",
    "tsconfig.json",
    "pyproject.toml",
    "requirements.txt",
    "setup.py",
    "Cargo.toml",
    "go.mod",
]

# dependency name -> framework fact
JS_FRAMEWORKS = {
    "react": "react",
    "vue": "vue",
    "@angular/core": "angular",
    "next": "nextjs",
    "express": "express",
    "svelte": "svelte",
}

PY_FRAMEWORKS = {
    "django": "django",
    "flask": "flask",
    "fastapi": "fastapi",
}

STRUCTURE_DIRS = {
    "src": "structure:src",
    "tests": "structure:tests",
    "test": "structure:tests",
    "docs": "structure:docs",
}

_PY_REQUIREMENT = re.compile(r"""^\s*["']?([A-Za-z0-9_.\-]+)\s*(?:\[[^\]]*\])?\s*(?:[=<>~!]=?\s*([\w.*+\-]+))?""")


def _python_requirements(text: str) -> dict[str, str]:
    """Package names (lowercased) with pinned or minimum versions where given."""
    found: dict[str, str] = {}
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip().rstrip(",")
        if not line or line.startswith(("-", "[")):
            continue
        match = _PY_REQUIREMENT.match(line)
        if match:
            found[match.group(1).lower()] = match.group(2) or ""
    return found


class ProjectFactDetector:
    """Detects technology and structure facts for one project root."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    async def _read(self, name: str) -> str | None:
        path = self.root / name
        if not path.is_file():
            return None
        async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
            return await f.read()

    async def detect(self) -> set[str]:
        facts: set[str] = set()
        manifests = {}
        for name in MANIFEST_FILES:
            content = await self._read(name)
            if content is not None:
                manifests[name] = content

        if "package.json" in manifests:
            facts |= self._package_json_facts(manifests["package.json"])
        if "tsconfig.json" in manifests:
            facts.add("language:typescript")

        python_text = "\n".join(
            manifests[n] for n in ("pyproject.toml", "requirements.txt", "setup.py") if n in manifests
        )
        if python_text:
            facts.add("language:python")
            for name, version in _python_requirements(python_text).items():
                framework = PY_FRAMEWORKS.get(name)
                if framework:
                    facts.add(f"framework:{framework}")
                    facts.add(f"dep:{name}@{version or '*'}")

        if "Cargo.toml" in manifests:
            facts.add("language:rust")
        if "go.mod" in manifests:
            facts.add("language:go")

        for directory, fact in STRUCTURE_DIRS.items():
            if (self.root / directory).is_dir():
                facts.add(fact)

        logger.debug(f"[FACTS] {self.root}: {sorted(facts)}")
        return facts

    def _package_json_facts(self, content: str) -> set[str]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning(f"[FACTS] package.json is not valid JSON: {e}")
            return {"language:javascript"}

        facts = {"language:javascript"}
        deps = {**data.get("devDependencies", {}), **data.get("dependencies", {})}
        if "typescript" in deps:
            facts.add("language:typescript")
        for name, version in deps.items():
            framework = JS_FRAMEWORKS.get(name)
            if framework:
                facts.add(f"framework:{framework}")
                facts.add(f"dep:{name}@{str(version).lstrip('^~')}")
        return facts
