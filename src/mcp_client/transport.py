"""JSON-RPC over HTTP transport for MCP servers.

Builds the JSON-RPC 2.0 envelope, applies a per-call timeout and retries
transport-level failures with a linearly increasing backoff.
"""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from shared.logging import get_logger
from mcp_client.errors import (
    MCPClientError,
    MCPHTTPError,
    MCPRPCError,
    MCPTimeoutError,
    MCPTransportError,
)

logger = get_logger(__name__)

JSONRPC_VERSION = "2.0"


class JSONRPCTransport:
    """
    Request executor for JSON-RPC calls to MCP endpoints.

    Only transport failures (``MCPTransportError``) are retried. An HTTP
    error status or a JSON-RPC error object is raised on the first attempt.
    The transport keeps no state between calls besides its HTTP client.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ) -> None:
        """
        Initialize the transport.

        Args:
            timeout: Default per-call timeout in seconds
            retry_attempts: Total attempts for transport failures
            retry_delay: Backoff base; the n-th retry waits ``retry_delay * n``
            http_client: Optional shared client (not closed by ``aclose``)
            sleep: Coroutine used to wait between attempts
        """
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep or asyncio.sleep

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            # The per-call timeout is enforced by asyncio.wait_for
            self._client = httpx.AsyncClient(timeout=None)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
        if self._owns_client:
            self._client = None

    async def call(
        self,
        endpoint_url: str,
        method: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None
    ) -> Any:
        """
        Execute a JSON-RPC call, retrying transport failures.

        Args:
            endpoint_url: MCP endpoint URL
            method: JSON-RPC method, e.g. ``tools/list``
            params: Method parameters
            headers: Extra request headers
            timeout: Override of the default per-call timeout

        Returns:
            The ``result`` member of the response (the whole body if absent)

        Raises:
            MCPTransportError: Transport failure after all attempts
            MCPHTTPError: Non-2xx response
            MCPRPCError: JSON-RPC error object in the response
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            retry=retry_if_exception_type(MCPTransportError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        result: Any = None
        async for attempt in retrying:
            with attempt:
                result = await self._send(
                    endpoint_url,
                    method,
                    params or {},
                    headers or {},
                    timeout if timeout is not None else self.timeout
                )
        return result

    async def _send(
        self,
        endpoint_url: str,
        method: str,
        params: dict[str, Any],
        headers: dict[str, str],
        timeout: float
    ) -> Any:
        """Send a single request and classify the outcome."""
        envelope = {
            "jsonrpc": JSONRPC_VERSION,
            "method": method,
            "id": str(uuid.uuid4()),
            "params": params,
        }
        request_headers = {**headers, "Content-Type": "application/json"}

        client = self._get_client()
        try:
            response = await asyncio.wait_for(
                client.post(endpoint_url, json=envelope, headers=request_headers),
                timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise MCPTimeoutError(timeout) from e
        except httpx.TransportError as e:
            raise MCPTransportError(f"Cannot reach {endpoint_url}: {e}") from e

        if response.is_error:
            raise MCPHTTPError(response.status_code, response.text)

        try:
            body = response.json()
        except ValueError as e:
            raise MCPClientError(f"Invalid JSON-RPC response from {endpoint_url}: {e}") from e

        if not isinstance(body, dict):
            return body

        error = body.get("error")
        if error:
            if isinstance(error, dict):
                raise MCPRPCError(
                    error.get("message") or "Unknown error",
                    code=error.get("code"),
                    data=error.get("data")
                )
            raise MCPRPCError(str(error))

        return body["result"] if "result" in body else body

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retrying MCP request",
            attempt=retry_state.attempt_number + 1,
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(exc)
        )
