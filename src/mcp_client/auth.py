"""Authorization collaborators for the scoped (customer) MCP endpoint.

The scoped endpoint accepts a raw customer access token. When it rejects
a call with 401, the client does not raise: ``AuthorizationRecovery``
turns the failure into an ``auth_required`` tool result that carries the
authorization link the customer has to follow.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel

from shared.logging import get_logger
from shared.models import ToolErrorType, ToolResult, utc_now

logger = get_logger(__name__)


class AuthLink(BaseModel):
    """An authorization URL for a conversation."""
    url: str


@runtime_checkable
class AuthLinkGenerator(Protocol):
    """Produces authorization links (e.g. an OAuth/PKCE start URL)."""

    async def generate(self, conversation_id: str, subject_id: Optional[str]) -> AuthLink:
        ...


@runtime_checkable
class TokenStore(Protocol):
    """Looks up the customer access token stored for a conversation."""

    async def get_token(self, conversation_id: str) -> Optional[str]:
        ...


class InMemoryTokenStore:
    """Process-local token store with expiry."""

    def __init__(self) -> None:
        self._tokens: dict[str, tuple[str, Optional[datetime]]] = {}
        self._lock = asyncio.Lock()

    async def store_token(
        self,
        conversation_id: str,
        access_token: str,
        expires_in_seconds: Optional[int] = None
    ) -> None:
        expires_at = None
        if expires_in_seconds is not None:
            expires_at = utc_now() + timedelta(seconds=expires_in_seconds)
        async with self._lock:
            self._tokens[conversation_id] = (access_token, expires_at)

    async def get_token(self, conversation_id: str) -> Optional[str]:
        async with self._lock:
            entry = self._tokens.get(conversation_id)
            if entry is None:
                return None

            token, expires_at = entry
            if expires_at is not None and utc_now() >= expires_at:
                del self._tokens[conversation_id]
                return None
            return token


class AuthorizationRecovery:
    """Converts a scoped-endpoint 401 into a recoverable tool result."""

    def __init__(self, link_generator: AuthLinkGenerator) -> None:
        self.link_generator = link_generator

    async def recover(
        self,
        conversation_id: Optional[str],
        subject_id: Optional[str],
        tool_name: str
    ) -> ToolResult:
        """
        Build an ``auth_required`` result carrying the authorization URL.

        Never raises: if no link can be produced the result is an
        ``internal_error`` instead.
        """
        if not conversation_id:
            return ToolResult.failure(
                tool_name,
                ToolErrorType.INTERNAL_ERROR,
                f"Error calling tool {tool_name}: authorization required but no conversation to authorize"
            )

        try:
            link = await self.link_generator.generate(conversation_id, subject_id)
        except Exception as e:
            logger.error(
                "Authorization link generation failed",
                tool=tool_name,
                conversation_id=conversation_id,
                error=str(e)
            )
            return ToolResult.failure(
                tool_name,
                ToolErrorType.INTERNAL_ERROR,
                f"Error calling tool {tool_name}: {e}"
            )

        logger.info(
            "Customer authorization required",
            tool=tool_name,
            conversation_id=conversation_id
        )
        return ToolResult.failure(tool_name, ToolErrorType.AUTH_REQUIRED, link.url)
