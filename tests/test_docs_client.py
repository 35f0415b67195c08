"""
Tests for the HTTP documentation provider (httpx.MockTransport, no network).
"""

import json

import httpx
import pytest

from toolflow_mcp.collaborators import HttpDocumentationProvider
from toolflow_mcp.errors import StageInputError, TransientError

URL = "http://docs.test/mcp"


def rpc_result(request: httpx.Request, text: str, is_error: bool = False) -> httpx.Response:
    body = json.loads(request.content)
    result = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


class DocsServer:
    """Minimal Context7-style endpoint."""

    def __init__(self, libraries: dict[str, str] | None = None, docs: str = "Routing guide"):
        self.libraries = libraries if libraries is not None else {"fastapi": "/tiangolo/fastapi"}
        self.docs = docs
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        name = body["params"]["name"]
        arguments = body["params"]["arguments"]

        if name == "resolve-library-id":
            library = self.libraries.get(arguments["libraryName"])
            if library is None:
                return rpc_result(request, "No matching libraries found.")
            return rpc_result(request, f"- Title: {arguments['libraryName']}\n- Context7-compatible library ID: {library}")
        return rpc_result(request, f"{self.docs} ({arguments.get('topic', 'general')})")


def provider_for(handler) -> HttpDocumentationProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpDocumentationProvider(URL, api_key="secret", client=client)


class TestHttpDocumentationProvider:

    @pytest.mark.asyncio
    async def test_query_resolves_then_fetches(self):
        server = DocsServer()
        provider = provider_for(server)

        text = await provider.query("fastapi", "routing")

        assert text == "Routing guide (routing)"
        assert [r["params"]["name"] for r in server.requests] == ["resolve-library-id", "get-library-docs"]
        arguments = server.requests[1]["params"]["arguments"]
        assert arguments["context7CompatibleLibraryID"] == "/tiangolo/fastapi"
        assert arguments["tokens"] == 5000

    @pytest.mark.asyncio
    async def test_library_id_memoized(self):
        server = DocsServer()
        provider = provider_for(server)

        await provider.query("fastapi")
        await provider.query("fastapi", "security")

        names = [r["params"]["name"] for r in server.requests]
        assert names.count("resolve-library-id") == 1
        assert "topic" not in server.requests[1]["params"]["arguments"]

    @pytest.mark.asyncio
    async def test_sends_auth_header(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("authorization"))
            return DocsServer()(request)

        await provider_for(handler).query("fastapi")

        assert seen == ["Bearer secret", "Bearer secret"]

    @pytest.mark.asyncio
    async def test_event_stream_response(self):
        def handler(request):
            body = json.loads(request.content)
            text = "library ID: `/vercel/next.js`" if body["params"]["name"] == "resolve-library-id" else "App router"
            payload = {"jsonrpc": "2.0", "id": body["id"], "result": {"content": [{"type": "text", "text": text}]}}
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                text=f"event: message\ndata: {json.dumps(payload)}\n\n",
            )

        assert await provider_for(handler).query("nextjs") == "App router"

    @pytest.mark.asyncio
    async def test_unknown_library(self):
        provider = provider_for(DocsServer(libraries={}))

        with pytest.raises(StageInputError, match="no documentation library"):
            await provider.query("leftpad")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (429, TransientError),
        (503, TransientError),
        (404, StageInputError),
        (401, StageInputError),
    ])
    async def test_http_status_mapping(self, status, error):
        provider = provider_for(lambda request: httpx.Response(status))

        with pytest.raises(error):
            await provider.query("fastapi")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientError):
            await provider_for(handler).query("fastapi")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(TransientError):
            await provider_for(handler).query("fastapi")

    @pytest.mark.asyncio
    async def test_rpc_error(self):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"],
                                             "error": {"code": -32602, "message": "bad params"}})

        with pytest.raises(StageInputError, match="bad params"):
            await provider_for(handler).query("fastapi")

    @pytest.mark.asyncio
    async def test_tool_error_result(self):
        def handler(request):
            return rpc_result(request, "rate limited upstream", is_error=True)

        with pytest.raises(StageInputError):
            await provider_for(handler).query("fastapi")

    @pytest.mark.asyncio
    async def test_empty_documentation(self):
        def handler(request):
            body = json.loads(request.content)
            if body["params"]["name"] == "resolve-library-id":
                return rpc_result(request, "library ID: /tiangolo/fastapi")
            return rpc_result(request, "   ")

        with pytest.raises(StageInputError, match="empty documentation"):
            await provider_for(handler).query("fastapi")

    @pytest.mark.asyncio
    async def test_close_keeps_borrowed_client(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(DocsServer()))
        provider = HttpDocumentationProvider(URL, client=client)

        await provider.close()

        assert client.is_closed is False
        await client.aclose()
