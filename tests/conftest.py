"""Shared fixtures: an in-process fake MCP server behind httpx.MockTransport."""

import json
from typing import Any, Optional

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

PRIMARY_URL = "https://shop.example.com/api/mcp"
SCOPED_URL = "https://account.shop.example.com/customer/api/mcp"
AUTH_URL = "https://auth.example.com/authorize"


def text_result(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": False}


def auth_recovery(url: str = AUTH_URL):
    """Recovery whose generator always returns ``url``."""
    from mcp_client.auth import AuthLink, AuthorizationRecovery

    generator = MagicMock()
    generator.generate = AsyncMock(return_value=AuthLink(url=url))
    return AuthorizationRecovery(generator)


class FakeMCPServer:
    """
    Answers JSON-RPC requests per endpoint URL.

    ``tools[url]`` is the ``tools/list`` listing, ``results[(url, name)]``
    the ``tools/call`` result. ``list_status`` / ``call_status`` make a
    request fail with an HTTP status instead.
    """

    def __init__(self) -> None:
        self.tools: dict[str, list[dict[str, Any]]] = {}
        self.results: dict[tuple[str, str], Any] = {}
        self.list_status: dict[str, int] = {}
        self.call_status: dict[tuple[str, str], int] = {}
        self.requests: list[dict[str, Any]] = []

    def add_tool(self, url: str, name: str, schema: Optional[dict[str, Any]] = None) -> None:
        self.tools.setdefault(url, []).append({
            "name": name,
            "description": f"{name} tool",
            "inputSchema": schema or {"type": "object", "properties": {}},
        })

    def calls(self, method: str = "tools/call") -> list[dict[str, Any]]:
        return [r for r in self.requests if r["body"]["method"] == method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        body = json.loads(request.content)
        self.requests.append({
            "url": url,
            "body": body,
            "authorization": request.headers.get("authorization"),
        })

        if body["method"] == "tools/list":
            if url in self.list_status:
                return httpx.Response(self.list_status[url], text="listing failed")
            result: Any = {"tools": self.tools.get(url, [])}
        else:
            key = (url, body["params"]["name"])
            if key in self.call_status:
                return httpx.Response(self.call_status[key], text="call failed")
            result = self.results.get(key, text_result("ok"))

        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def transport(self, **kwargs: Any):
        from mcp_client.transport import JSONRPCTransport

        kwargs.setdefault("retry_delay", 0)
        return JSONRPCTransport(http_client=self.http_client(), **kwargs)

    def client(self, access_token: Optional[str] = "customer-token", **kwargs: Any):
        from mcp_client.client import DualMCPClient

        return DualMCPClient(
            PRIMARY_URL,
            SCOPED_URL,
            kwargs.pop("auth_recovery", None) or auth_recovery(),
            conversation_id=kwargs.pop("conversation_id", "conv-1"),
            transport=self.transport(),
            access_token=access_token,
            **kwargs
        )


@pytest.fixture
def mcp_server() -> FakeMCPServer:
    return FakeMCPServer()
