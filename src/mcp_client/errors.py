"""MCP Client exceptions.

Transport-level failures are retried by the transport; HTTP status and
JSON-RPC errors propagate immediately with the original status or code so
callers can special-case them (e.g. 401 on the scoped endpoint).
"""

from typing import Any, Optional


class MCPClientError(Exception):
    """Base exception for MCP Client errors."""
    pass


class MCPTransportError(MCPClientError):
    """Network-level failure: connection refused, DNS, reset, timeout."""
    pass


class MCPTimeoutError(MCPTransportError):
    """No response within the per-call timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Request timeout after {timeout}s")
        self.timeout = timeout


class MCPHTTPError(MCPClientError):
    """The server answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"Request failed: {status_code} {body}".rstrip())
        self.status_code = status_code
        self.body = body

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


class MCPRPCError(MCPClientError):
    """The server returned a well-formed JSON-RPC error object."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        data: Optional[Any] = None
    ) -> None:
        super().__init__(f"JSON-RPC Error: {message}")
        self.code = code
        self.data = data
