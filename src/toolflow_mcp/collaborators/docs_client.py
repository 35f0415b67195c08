"""
Documentation provider backed by a Context7-compatible MCP endpoint.

Two JSON-RPC `tools/call` requests per lookup:
- resolve-library-id: framework name -> library id (memoized per process)
- get-library-docs: library id + topic -> documentation text

Failure mapping:
- timeouts, connection errors, HTTP 429 and 5xx -> TransientError
- other HTTP 4xx, JSON-RPC errors, unknown libraries -> StageInputError
"""

import itertools
import json
import logging
import re
from typing import Any

import httpx

from ..errors import StageInputError, TransientError
from ..utils import timed

logger = logging.getLogger(__name__)

USER_AGENT = "toolflow-mcp/0.3.0"

_LABELLED_ID = re.compile(r"library ID:\s*`?(/[\w.\-]+/[\w.\-]+(?:/[\w.\-]+)?)")
_BARE_ID = re.compile(r"(?<![\w:/])(/[\w.\-]+/[\w.\-]+(?:/[\w.\-]+)?)")


def _text_content(result: Any) -> str:
    """Text of an MCP tool result (content list or plain string)."""
    if isinstance(result, str):
        return result
    if not isinstance(result, dict):
        return ""
    content = result.get("content", "")
    if isinstance(content, str):
        return content
    return "\n".join(
        part.get("text", "") for part in content
        if isinstance(part, dict) and part.get("type", "text") == "text"
    )


def _decode_body(response: httpx.Response) -> dict[str, Any]:
    """JSON-RPC envelope from a JSON or server-sent-events response."""
    if response.headers.get("content-type", "").startswith("text/event-stream"):
        payloads = [
            line[5:].strip() for line in response.text.splitlines()
            if line.startswith("data:") and line[5:].strip()
        ]
        if not payloads:
            raise StageInputError("documentation endpoint sent an empty event stream")
        raw = payloads[-1]
    else:
        raw = response.text

    try:
        body = json.loads(raw)
    except json.JSONDecodeError as e:
        raise StageInputError(f"documentation endpoint returned invalid JSON: {e}") from e
    if not isinstance(body, dict):
        raise StageInputError("documentation endpoint returned a non-object body")
    return body


class HttpDocumentationProvider:
    """Fetches framework documentation over HTTP with a pooled async client."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout_seconds: float = 15.0,
        max_tokens: int = 5000,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.max_tokens = max_tokens
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
        )
        self._ids = itertools.count(1)
        self._library_ids: dict[str, str] = {}

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "User-Agent": USER_AGENT,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "tools/call",
            "params": {"name": name, "arguments": arguments},
        }
        try:
            response = await self._client.post(self.url, json=request, headers=self._headers())
        except httpx.TimeoutException as e:
            raise TransientError(f"{name} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientError(f"{name} connection failed: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientError(f"{name} returned HTTP {status}")
        if status >= 400:
            raise StageInputError(f"{name} returned HTTP {status}")

        body = _decode_body(response)
        if body.get("error"):
            error = body["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise StageInputError(f"{name} failed: {message}")

        result = body.get("result", {})
        if isinstance(result, dict) and result.get("isError"):
            raise StageInputError(f"{name} failed: {_text_content(result)[:200]}")
        return _text_content(result)

    async def resolve_library_id(self, framework: str) -> str:
        cached = self._library_ids.get(framework)
        if cached:
            return cached

        text = await self._call_tool("resolve-library-id", {"libraryName": framework})
        match = _LABELLED_ID.search(text) or _BARE_ID.search(text)
        if match is None:
            raise StageInputError(f"no documentation library found for {framework!r}")

        library_id = match.group(1)
        self._library_ids[framework] = library_id
        logger.debug(f"[DOCS] {framework} -> {library_id}")
        return library_id

    @timed("docs:query", slow_ms=5000)
    async def query(self, framework: str, topic: str | None = None) -> str:
        """Documentation text for framework, optionally focused on topic."""
        library_id = await self.resolve_library_id(framework)
        arguments: dict[str, Any] = {
            "context7CompatibleLibraryID": library_id,
            "tokens": self.max_tokens,
        }
        if topic:
            arguments["topic"] = topic

        text = await self._call_tool("get-library-docs", arguments)
        if not text.strip():
            raise StageInputError(f"empty documentation for {library_id}")
        logger.info(f"[DOCS] Fetched {len(text)} chars for {framework} ({topic or 'general'})")
        return text

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
