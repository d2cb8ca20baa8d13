"""Anthropic Claude backend.

The SDK's message stream is callback-style; text deltas are buffered and
surfaced as a single ``content`` event once the final message is known.
"""

from typing import Any, AsyncIterator, Optional

from shared.config import ClaudeSettings
from shared.logging import get_logger
from shared.models import (
    ContentEvent,
    ConversationMessage,
    DoneEvent,
    LLMResponse,
    StreamEvent,
    ToolCallRequest,
    ToolCallsEvent,
    Usage,
)

from orchestrator.llm.base import (
    DEFAULT_SYSTEM_PROMPT,
    GenerationParams,
    LLMProvider,
    ProviderError,
    arguments_json,
    content_blocks,
)

logger = get_logger(__name__)


class ClaudeProvider(LLMProvider):
    """Claude provider using the Anthropic Messages API."""

    name = "claude"
    display_name = "Claude"

    def __init__(
        self,
        settings: ClaudeSettings,
        model: Optional[str] = None,
        client: Any = None
    ) -> None:
        super().__init__(model or settings.model)
        self.settings = settings
        self._client = client

    def _get_client(self):
        """Lazy initialization of the Anthropic client."""
        if self._client is None:
            from anthropic import AsyncAnthropic

            self._client = AsyncAnthropic(api_key=self.settings.api_key)
        return self._client

    @staticmethod
    def _convert_messages(messages: list[ConversationMessage]) -> list[dict[str, Any]]:
        """Convert history to Messages API format, merging same-role runs."""
        result: list[dict[str, Any]] = []
        for msg in messages:
            blocks = content_blocks(msg)
            if not blocks:
                continue

            if result and result[-1]["role"] == msg.role:
                result[-1]["content"].extend(blocks)
            else:
                result.append({"role": msg.role, "content": list(blocks)})
        return result

    def _build_request(self, params: GenerationParams) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self.model,
            "max_tokens": params.max_tokens or self.settings.max_tokens,
            "system": params.system_prompt or DEFAULT_SYSTEM_PROMPT,
            "messages": self._convert_messages(params.messages),
        }
        if params.temperature is not None:
            request["temperature"] = params.temperature
        if params.tools:
            request["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.input_schema or {"type": "object", "properties": {}},
                }
                for tool in params.tools
            ]
        return request

    @staticmethod
    def _parse_content(content: list[Any]) -> tuple[str, list[ToolCallRequest]]:
        text_parts: list[str] = []
        tool_calls: list[ToolCallRequest] = []
        for block in content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCallRequest(
                    id=block.id,
                    name=block.name,
                    arguments=arguments_json(block.input)
                ))
        return "".join(text_parts), tool_calls

    @staticmethod
    def _usage(usage: Any) -> Usage:
        if usage is None:
            return Usage()
        prompt = getattr(usage, "input_tokens", 0) or 0
        completion = getattr(usage, "output_tokens", 0) or 0
        return Usage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion
        )

    async def _stream(self, params: GenerationParams) -> AsyncIterator[StreamEvent]:
        request = self._build_request(params)
        buffered: list[str] = []

        async with self._get_client().messages.stream(**request) as stream:
            async for text in stream.text_stream:
                buffered.append(text)
            final = await stream.get_final_message()

        text, tool_calls = self._parse_content(final.content)
        text = text or "".join(buffered)

        if text:
            yield ContentEvent(content=text)
        if tool_calls:
            yield ToolCallsEvent(tool_calls=tool_calls)

        yield DoneEvent(content=text, usage=self._usage(final.usage))

    async def generate_response(self, params: GenerationParams) -> LLMResponse:
        """Generate a complete response with ``messages.create``."""
        try:
            message = await self._get_client().messages.create(**self._build_request(params))
        except Exception as e:
            logger.error("Claude completion failed", error=str(e))
            raise ProviderError(f"Claude API error: {e}") from e

        text, tool_calls = self._parse_content(message.content)
        return LLMResponse(content=text, tool_calls=tool_calls, usage=self._usage(message.usage))
