"""MCP Client - Tool discovery and execution.

Connects to a primary and a scoped MCP server over JSON-RPC, merges their
tool listings and routes tool calls, turning every failure into a
structured result instead of an exception.
"""

from mcp_client.auth import AuthLink, AuthorizationRecovery, InMemoryTokenStore
from mcp_client.client import DualMCPClient, derive_endpoint_urls
from mcp_client.errors import (
    MCPClientError,
    MCPHTTPError,
    MCPRPCError,
    MCPTimeoutError,
    MCPTransportError,
)
from mcp_client.events import ClientEvents, ClientEventType
from mcp_client.registry import ToolRegistry
from mcp_client.transport import JSONRPCTransport

__all__ = [
    "AuthLink",
    "AuthorizationRecovery",
    "InMemoryTokenStore",
    "DualMCPClient",
    "derive_endpoint_urls",
    "MCPClientError",
    "MCPHTTPError",
    "MCPRPCError",
    "MCPTimeoutError",
    "MCPTransportError",
    "ClientEvents",
    "ClientEventType",
    "ToolRegistry",
    "JSONRPCTransport",
]
