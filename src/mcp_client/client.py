"""Dual MCP Client for tool discovery and execution.

Talks to two capability servers: the primary (storefront) endpoint, which
needs no credentials, and the scoped (customer) endpoint, which expects
the customer's raw access token in the Authorization header. Each
endpoint connects and fails independently; their tool listings are merged
into one registry used for routing.
"""

import asyncio
import re
from typing import Any, Optional

from shared.config import MCPSettings
from shared.logging import get_logger
from shared.models import (
    ConnectionResults,
    Endpoint,
    EndpointName,
    EndpointState,
    Tool,
    ToolErrorType,
    ToolResult,
)
from shared.schema import validate_schema
from mcp_client.auth import AuthorizationRecovery, TokenStore
from mcp_client.errors import MCPClientError, MCPHTTPError
from mcp_client.events import (
    ClientError,
    ClientEvents,
    ClientEventType,
    ConnectionStateChange,
    ToolsUpdated,
)
from mcp_client.registry import ToolRegistry
from mcp_client.transport import JSONRPCTransport

logger = get_logger(__name__)


def derive_endpoint_urls(host_url: str) -> tuple[str, str]:
    """
    Derive the default (primary, scoped) MCP endpoint URLs for a shop.

    The customer endpoint lives on the shop's ``account`` host:
    ``https://shop.myshopify.com`` -> ``https://shop.account.myshopify.com``,
    any other host gets an ``account.`` sub-domain.
    """
    host = host_url.rstrip("/")
    primary = f"{host}/api/mcp"

    if re.search(r"://account\.|\.account\.myshopify\.com$", host):
        account_host = host
    elif re.search(r"\.myshopify\.com$", host):
        account_host = re.sub(r"(\.myshopify\.com)$", r".account\1", host)
    else:
        account_host = host.replace("://", "://account.", 1)

    return primary, f"{account_host}/customer/api/mcp"


class DualMCPClient:
    """
    Client for a primary and a scoped MCP server.

    Provides:
    - Independent per-endpoint connection state
    - A merged tool registry (scoped tools win name collisions)
    - Tool call routing with structured, non-raising results
    - Typed lifecycle events scoped to this instance

    One instance serves one conversation request.
    """

    def __init__(
        self,
        primary_url: str,
        scoped_url: str,
        auth_recovery: AuthorizationRecovery,
        *,
        conversation_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        transport: Optional[JSONRPCTransport] = None,
        token_store: Optional[TokenStore] = None,
        access_token: Optional[str] = None
    ) -> None:
        """
        Initialize the client.

        Args:
            primary_url: Storefront MCP endpoint URL
            scoped_url: Customer MCP endpoint URL
            auth_recovery: Builds ``auth_required`` results on scoped 401s
            conversation_id: Conversation the client works for
            subject_id: Shop identifier passed to the auth-link generator
            transport: JSON-RPC transport (a default one is created if omitted)
            token_store: Source of customer access tokens
            access_token: Pre-resolved customer access token
        """
        self.conversation_id = conversation_id
        self.subject_id = subject_id
        self.transport = transport or JSONRPCTransport()
        self.token_store = token_store
        self.auth_recovery = auth_recovery
        self.events = ClientEvents()

        self.endpoints: dict[EndpointName, Endpoint] = {
            EndpointName.PRIMARY: Endpoint(name=EndpointName.PRIMARY, url=primary_url),
            EndpointName.SCOPED: Endpoint(
                name=EndpointName.SCOPED,
                url=scoped_url,
                requires_auth=True
            ),
        }
        self._access_token = access_token
        self._listings: dict[EndpointName, list[Tool]] = {name: [] for name in EndpointName}
        self._registry = ToolRegistry()

    @classmethod
    def from_settings(
        cls,
        settings: MCPSettings,
        auth_recovery: AuthorizationRecovery,
        host_url: Optional[str] = None,
        **kwargs: Any
    ) -> "DualMCPClient":
        """Create a client from settings, deriving missing URLs from ``host_url``."""
        primary_url, scoped_url = settings.primary_url, settings.scoped_url
        if not (primary_url and scoped_url):
            if not host_url:
                raise ValueError("host_url is required when MCP endpoint URLs are not configured")
            derived_primary, derived_scoped = derive_endpoint_urls(host_url)
            primary_url = primary_url or derived_primary
            scoped_url = scoped_url or derived_scoped

        kwargs.setdefault("transport", JSONRPCTransport(
            timeout=settings.timeout,
            retry_attempts=settings.retry_attempts,
            retry_delay=settings.retry_delay
        ))
        return cls(primary_url, scoped_url, auth_recovery, **kwargs)

    async def __aenter__(self) -> "DualMCPClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def tools(self) -> list[Tool]:
        """Tools offered to the model, one per name."""
        return self._registry.tools()

    def state(self, endpoint: EndpointName) -> EndpointState:
        return self.endpoints[endpoint].state

    def is_ready(self) -> bool:
        """True if at least one endpoint is ready."""
        return any(ep.state == EndpointState.READY for ep in self.endpoints.values())

    def connection_status(self) -> dict[str, Any]:
        """Summary of endpoint states and tool counts."""
        status: dict[str, Any] = {
            name.value: endpoint.state.value for name, endpoint in self.endpoints.items()
        }
        status.update({
            "total_tools": sum(len(tools) for tools in self._listings.values()),
            "primary_tools": len(self._listings[EndpointName.PRIMARY]),
            "scoped_tools": len(self._listings[EndpointName.SCOPED]),
            "is_ready": self.is_ready(),
        })
        return status

    def _snapshot(self) -> dict[EndpointName, EndpointState]:
        return {name: endpoint.state for name, endpoint in self.endpoints.items()}

    def _set_state(self, endpoint: EndpointName, state: EndpointState) -> None:
        previous = self._snapshot()
        self.endpoints[endpoint].state = state

        logger.debug("MCP connection state changed", endpoint=endpoint.value, state=state.value)
        self.events.publish(
            ClientEventType.CONNECTION_STATE_CHANGE,
            ConnectionStateChange(
                endpoint=endpoint,
                state=state,
                previous_state=previous,
                current_state=self._snapshot()
            )
        )

    def _set_listing(self, endpoint: EndpointName, tools: list[Tool]) -> None:
        self._listings[endpoint] = tools
        self._registry = ToolRegistry.merge(self._listings)

    def _publish_error(
        self,
        operation: str,
        error: Exception,
        endpoint: Optional[EndpointName] = None,
        tool_name: Optional[str] = None
    ) -> None:
        self.events.publish(
            ClientEventType.ERROR,
            ClientError(
                operation=operation,
                message=str(error),
                endpoint=endpoint,
                tool_name=tool_name
            )
        )

    async def _resolve_token(self) -> Optional[str]:
        """Return the cached customer token, consulting the token store once."""
        if self._access_token:
            return self._access_token

        if self.token_store is not None and self.conversation_id:
            token = await self.token_store.get_token(self.conversation_id)
            if token:
                self._access_token = token
            else:
                logger.info(
                    "No customer token for conversation",
                    conversation_id=self.conversation_id
                )
        return self._access_token

    async def _headers_for(self, endpoint: EndpointName) -> dict[str, str]:
        if not self.endpoints[endpoint].requires_auth:
            return {}
        # Raw token, no "Bearer" scheme
        return {"Authorization": await self._resolve_token() or ""}

    def _format_tools(self, endpoint: EndpointName, result: Any) -> list[Tool]:
        """Convert a ``tools/list`` result into tools, skipping invalid entries."""
        raw_tools = result.get("tools", []) if isinstance(result, dict) else []
        tools = []

        for raw in raw_tools:
            if not isinstance(raw, dict) or not raw.get("name"):
                logger.warning("Skipping malformed tool listing", endpoint=endpoint.value)
                continue

            tool = Tool.from_listing(raw)
            is_valid, errors = validate_schema(tool.input_schema)
            if not is_valid:
                logger.warning(
                    "Skipping tool with invalid input schema",
                    endpoint=endpoint.value,
                    tool=tool.name,
                    errors=errors
                )
                continue
            tools.append(tool)

        return tools

    async def connect(self, endpoint: EndpointName) -> list[Tool]:
        """
        Connect to one endpoint and fetch its tool listing.

        Never raises. On failure the endpoint is marked ``failed`` (or
        ``requires-auth`` for authorization failures), its tools are
        removed from the registry and an empty list is returned.

        Args:
            endpoint: Endpoint to connect

        Returns:
            Tools listed by the endpoint
        """
        target = self.endpoints[endpoint]
        if target.state != EndpointState.DISCONNECTED:
            # Reconnects restart from disconnected
            self._set_state(endpoint, EndpointState.DISCONNECTED)
        self._set_state(endpoint, EndpointState.CONNECTING)
        logger.debug("Connecting to MCP server", endpoint=endpoint.value, url=target.url)

        try:
            if target.requires_auth and not await self._resolve_token():
                self._set_listing(endpoint, [])
                self._set_state(endpoint, EndpointState.REQUIRES_AUTH)
                return []

            result = await self.transport.call(
                target.url,
                "tools/list",
                {},
                await self._headers_for(endpoint)
            )
            tools = self._format_tools(endpoint, result)
        except Exception as e:
            auth_failure = isinstance(e, MCPHTTPError) and e.is_auth_error
            self._set_listing(endpoint, [])
            self._set_state(
                endpoint,
                EndpointState.REQUIRES_AUTH if auth_failure else EndpointState.FAILED
            )
            self._publish_error("connect", e, endpoint=endpoint)
            logger.error(
                "Failed to connect to MCP server",
                endpoint=endpoint.value,
                url=target.url,
                error=str(e)
            )
            return []

        self._set_listing(endpoint, tools)
        self._set_state(endpoint, EndpointState.READY)
        self.events.publish(
            ClientEventType.TOOLS_UPDATED,
            ToolsUpdated(endpoint=endpoint, tools=self.tools)
        )

        logger.info("Connected to MCP server", endpoint=endpoint.value, tool_count=len(tools))
        return tools

    async def connect_all(self) -> ConnectionResults:
        """
        Connect to both endpoints concurrently.

        Each outcome is independent: a failing endpoint contributes no
        tools but does not affect the other.
        """
        names = list(EndpointName)
        outcomes = await asyncio.gather(
            *(self.connect(name) for name in names),
            return_exceptions=True
        )

        per_endpoint: dict[EndpointName, list[Tool]] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("MCP connection task failed", endpoint=name.value, error=str(outcome))
                per_endpoint[name] = []
            else:
                per_endpoint[name] = outcome

        return ConnectionResults(
            per_endpoint_tools=per_endpoint,
            total_tool_count=sum(len(tools) for tools in per_endpoint.values())
        )

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """
        Call a tool on the endpoint that owns it.

        Routing: a tool listed by the scoped endpoint is always called
        there, even when the primary endpoint lists the same name. Unknown
        names produce a ``tool_not_found`` result.

        Args:
            name: Tool name
            arguments: Tool arguments

        Returns:
            Tool payload or structured error; never raises
        """
        endpoint = self._registry.endpoint_for(name)
        if endpoint is None:
            return ToolResult.failure(
                name,
                ToolErrorType.TOOL_NOT_FOUND,
                f"Tool {name} not found in any connected MCP server"
            )

        target = self.endpoints[endpoint]
        logger.debug("Calling tool", tool=name, endpoint=endpoint.value)

        try:
            result = await self.transport.call(
                target.url,
                "tools/call",
                {"name": name, "arguments": arguments},
                await self._headers_for(endpoint)
            )
        except MCPHTTPError as e:
            if e.status_code == 401 and endpoint == EndpointName.SCOPED:
                return await self._recover_authorization(name, e)
            return self._internal_error(endpoint, name, e)
        except MCPClientError as e:
            return self._internal_error(endpoint, name, e)

        return ToolResult.success(name, result)

    async def _recover_authorization(self, name: str, error: MCPHTTPError) -> ToolResult:
        logger.info("Customer tool unauthorized", tool=name, status=error.status_code)
        return await self.auth_recovery.recover(self.conversation_id, self.subject_id, name)

    def _internal_error(
        self,
        endpoint: EndpointName,
        name: str,
        error: Exception
    ) -> ToolResult:
        logger.error("Tool call failed", tool=name, endpoint=endpoint.value, error=str(error))
        self._publish_error("tool-call", error, endpoint=endpoint, tool_name=name)
        return ToolResult.failure(
            name,
            ToolErrorType.INTERNAL_ERROR,
            f"Error calling tool {name}: {error}"
        )

    async def disconnect(self) -> None:
        """
        Reset every endpoint, clear tools and listeners, close the transport.

        Safe to call more than once.
        """
        for name in EndpointName:
            if self.endpoints[name].state != EndpointState.DISCONNECTED:
                self._set_state(name, EndpointState.DISCONNECTED)
            self._listings[name] = []
        self._registry = ToolRegistry()
        self.events.clear()
        await self.transport.aclose()
