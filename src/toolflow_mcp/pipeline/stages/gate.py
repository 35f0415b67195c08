"""
Gate stage: policy checks before results are documented and learned from.

Blocks the run (PolicyViolation) when:
- an edited artifact failed validation
- the edits touched more files than the scope allows
- the request or an edit carries something that looks like a credential
"""

import re
from typing import Any, Iterator

from ...errors import PolicyViolation
from ...models import ContextPatch, RunContext, StageId
from .base import Stage

# (pattern, description)
SECRET_PATTERNS: list[tuple[str, str]] = [
    (r'''(?i)(?:api[_-]?key|apikey)\s*[=:]\s*['"]?([\w\-]{20,})''', "API key"),
    (r'''(?i)(?:secret[_-]?key|secretkey)\s*[=:]\s*['"]?([\w\-]{20,})''', "Secret key"),
    (r'''(?i)(?:auth|access)[_-]?token\s*[=:]\s*['"]?([\w\-]{20,})''', "Access token"),
    (r'''AKIA[0-9A-Z]{16}''', "AWS access key id"),
    (r'''-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----''', "Private key"),
    (r'''(?i)(?:mongodb|postgres|mysql|redis)://[^\s'"]+:[^\s'"]+@''', "Connection string with credentials"),
    (r'''\bsk-[A-Za-z0-9]{32,}\b''', "API secret"),
]

_COMPILED = [(re.compile(p), desc) for p, desc in SECRET_PATTERNS]


def find_secrets(text: str) -> list[str]:
    """Descriptions of the credential patterns found in text."""
    return [desc for pattern, desc in _COMPILED if pattern.search(text)]


def iter_strings(value: Any) -> Iterator[str]:
    """Every string nested in a JSON-like value (keys included)."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield str(key)
            yield from iter_strings(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            yield from iter_strings(item)


class GateStage(Stage):
    stage_id = StageId.GATE

    async def execute(self, context: RunContext) -> ContextPatch:
        checks: list[dict[str, Any]] = []

        failed = [v["artifact"] for v in context.data.get("validation", []) if not v.get("passed")]
        checks.append({"check": "validation", "passed": not failed})
        if failed:
            raise PolicyViolation(f"validation failed for {', '.join(failed)}")

        edited = {e["path"] for e in context.data.get("edits", [])}
        checks.append({"check": "scope", "passed": len(edited) <= context.scope.max_files})
        if len(edited) > context.scope.max_files:
            raise PolicyViolation(
                f"{len(edited)} files edited, scope allows {context.scope.max_files}"
            )

        secrets = [s for text in iter_strings(context.data.get("request", {})) for s in find_secrets(text)]
        checks.append({"check": "secrets", "passed": not secrets})
        if secrets:
            raise PolicyViolation(f"request contains credentials: {', '.join(sorted(set(secrets)))}")

        return ContextPatch(data={"gate": {"passed": True, "checks": checks}})
