"""LLM provider base class and the streaming event contract.

Every backend, whatever its native streaming style, is consumed through
``LLMProvider.stream_response``: an async generator of ``StreamEvent``
objects that always ends with exactly one ``done`` or ``error`` event.
Each call returns a fresh generator; generators are not restartable.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel, Field

from shared.logging import get_logger
from shared.models import (
    ConversationMessage,
    DoneEvent,
    ErrorEvent,
    LLMResponse,
    StatusEvent,
    StreamEvent,
    Tool,
)

logger = get_logger(__name__)


DEFAULT_SYSTEM_PROMPT = """You are a helpful shopping assistant for an online store.

Use the available tools to search the catalog, answer questions about store policies, and look up the customer's orders and cart.

Guidelines:
- Never make up product details, prices or order information - use tools to get accurate data
- If a tool returns an error, explain the issue to the customer
- If the customer must authorize access to their account, share the authorization link you were given
- Keep answers short and friendly
"""


class ProviderError(Exception):
    """An AI backend failed to produce a response."""
    pass


class ProviderConfigError(ProviderError):
    """The selected provider is unknown or not configured."""
    pass


class GenerationParams(BaseModel):
    """Backend-neutral request for one model turn."""
    messages: list[ConversationMessage] = Field(default_factory=list)
    tools: list[Tool] = Field(default_factory=list)
    system_prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


def arguments_json(value: Any) -> str:
    """
    Normalize backend tool arguments to JSON object text.

    Missing or unparseable arguments become ``"{}"`` so a malformed tool
    call never fails the turn.
    """
    if value is None:
        return "{}"
    if isinstance(value, str):
        try:
            parsed = json.loads(value) if value.strip() else {}
        except json.JSONDecodeError:
            return "{}"
        return json.dumps(parsed) if isinstance(parsed, dict) else "{}"
    if isinstance(value, dict):
        return json.dumps(value)
    try:
        return json.dumps(dict(value))
    except (TypeError, ValueError):
        return "{}"


def content_blocks(message: ConversationMessage) -> list[dict[str, Any]]:
    """Content of a message as a block list (plain text becomes one text block)."""
    if isinstance(message.content, str):
        return [{"type": "text", "text": message.content}] if message.content else []
    return message.content


class LLMProvider(ABC):
    """
    Abstract base class for AI backends.

    Subclasses implement ``_stream`` in the backend's own streaming style
    and ``generate_response`` for non-streaming use. The base class adds
    the status events and converts any backend exception into a single
    terminal ``error`` event.
    """

    name: str = "base"
    display_name: str = "LLM"

    def __init__(self, model: str) -> None:
        self.model = model

    async def stream_response(self, params: GenerationParams) -> AsyncIterator[StreamEvent]:
        """
        Stream one model turn as ``StreamEvent`` objects.

        Args:
            params: Messages, tools and generation settings

        Yields:
            ``status``, ``content`` and ``tool_calls`` events, then one
            ``done`` or ``error`` event
        """
        logger.info(
            "Streaming model turn",
            provider=self.name,
            model=self.model,
            message_count=len(params.messages),
            tool_count=len(params.tools)
        )
        yield StatusEvent(status=f"Connecting to {self.display_name}...")

        try:
            async for event in self._stream(params):
                if isinstance(event, DoneEvent):
                    yield StatusEvent(status="Response completed")
                    yield event
                    return

                yield event
                if isinstance(event, ErrorEvent):
                    return
        except Exception as e:
            logger.error(f"{self.display_name} API error", provider=self.name, error=str(e))
            yield ErrorEvent(error=str(e) or f"Unknown {self.display_name} API error")
            return

        # A backend stream that ended without a terminal event
        yield ErrorEvent(error=f"{self.display_name} stream ended without a response")

    @abstractmethod
    def _stream(self, params: GenerationParams) -> AsyncIterator[StreamEvent]:
        """Backend-specific async generator ending with a ``DoneEvent``."""
        ...

    @abstractmethod
    async def generate_response(self, params: GenerationParams) -> LLMResponse:
        """
        Generate a complete, non-streaming response.

        Raises:
            ProviderError: If the backend call fails
        """
        ...
