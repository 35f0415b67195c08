"""
Syntax validator for edited artifacts.

- Python: ast.parse
- JSON: json.loads
- JS/TS/CSS: bracket balance, skipping strings and comments
- anything else passes unchecked
"""

import ast
import json
from pathlib import PurePosixPath

from ..interfaces import ValidationOutcome

BRACKETS = {")": "(", "]": "[", "}": "{"}
BRACKET_TYPES = {".js", ".jsx", ".ts", ".tsx", ".css", ".mjs", ".cjs"}


def bracket_errors(source: str) -> list[str]:
    """Unbalanced brackets in C-like source, with line numbers."""
    stack: list[tuple[str, int]] = []
    errors: list[str] = []
    line = 1
    i = 0
    quote: str | None = None
    length = len(source)

    while i < length:
        ch = source[i]
        nxt = source[i + 1] if i + 1 < length else ""

        if ch == "\n":
            line += 1

        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch == "/" and nxt == "/":
            end = source.find("\n", i)
            i = length if end == -1 else end
            continue
        if ch == "/" and nxt == "*":
            end = source.find("*/", i + 2)
            stop = length if end == -1 else end + 2
            line += source.count("\n", i, stop)
            i = stop
            continue

        if ch in "'\"`":
            quote = ch
        elif ch in "([{":
            stack.append((ch, line))
        elif ch in BRACKETS:
            if not stack or stack[-1][0] != BRACKETS[ch]:
                errors.append(f"line {line}: unexpected '{ch}'")
            else:
                stack.pop()
        i += 1

    if quote:
        errors.append(f"line {line}: unterminated string")
    errors.extend(f"line {opened}: unclosed '{ch}'" for ch, opened in stack)
    return errors


class SyntaxValidator:
    """Checks that edited files still parse."""

    async def check(self, artifact: str, content: str) -> ValidationOutcome:
        suffix = PurePosixPath(artifact).suffix.lower()

        if suffix == ".py":
            try:
                ast.parse(content, filename=artifact)
            except SyntaxError as e:
                return ValidationOutcome(artifact, False, [f"line {e.lineno}: {e.msg}"])
            return ValidationOutcome(artifact, True, ["python syntax ok"])

        if suffix == ".json":
            try:
                json.loads(content)
            except json.JSONDecodeError as e:
                return ValidationOutcome(artifact, False, [f"line {e.lineno}: {e.msg}"])
            return ValidationOutcome(artifact, True, ["valid json"])

        if suffix in BRACKET_TYPES:
            errors = bracket_errors(content)
            return ValidationOutcome(artifact, not errors, errors or ["brackets balanced"])

        return ValidationOutcome(artifact, True, [f"no checker for '{suffix or 'plain'}' files"])
