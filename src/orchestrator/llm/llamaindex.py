"""OpenAI and Azure OpenAI backends using LlamaIndex.

LlamaIndex streams ``ChatResponse`` objects whose ``delta`` holds the
new text; tool calls accumulate in ``message.additional_kwargs`` and are
complete on the last response.
"""

from typing import Any, AsyncIterator, Optional

from shared.config import OpenAISettings
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
    GenerationParams,
    LLMProvider,
    ProviderError,
    arguments_json,
    content_blocks,
)

logger = get_logger(__name__)


def _field(obj: Any, key: str) -> Any:
    """Read ``key`` from an SDK object or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


class OpenAIProvider(LLMProvider):
    """OpenAI LLM provider using LlamaIndex."""

    name = "openai"
    display_name = "OpenAI"

    def __init__(
        self,
        settings: OpenAISettings,
        model: Optional[str] = None,
        llm: Any = None
    ) -> None:
        super().__init__(model or settings.model)
        self.settings = settings
        self._llm = llm

    def _create_llm(self):
        from llama_index.llms.openai import OpenAI

        return OpenAI(
            model=self.model,
            api_key=self.settings.api_key,
            api_base=self.settings.api_base,
        )

    def _get_llm(self):
        """Lazy initialization of LlamaIndex LLM."""
        if self._llm is None:
            self._llm = self._create_llm()
        return self._llm

    @staticmethod
    def _convert_messages(params: GenerationParams) -> list:
        """Convert history to LlamaIndex ``ChatMessage`` objects."""
        from llama_index.core.llms import ChatMessage, MessageRole

        result = []
        if params.system_prompt:
            result.append(ChatMessage(role=MessageRole.SYSTEM, content=params.system_prompt))

        for msg in params.messages:
            if isinstance(msg.content, str):
                role = MessageRole.ASSISTANT if msg.role == "assistant" else MessageRole.USER
                result.append(ChatMessage(role=role, content=msg.content))
                continue

            text = msg.text()
            tool_calls = [
                {
                    "id": block["id"],
                    "type": "function",
                    "function": {
                        "name": block["name"],
                        "arguments": arguments_json(block.get("input")),
                    },
                }
                for block in content_blocks(msg) if block.get("type") == "tool_use"
            ]
            tool_results = [
                block for block in content_blocks(msg) if block.get("type") == "tool_result"
            ]

            if msg.role == "assistant":
                chat_msg = ChatMessage(role=MessageRole.ASSISTANT, content=text or None)
                if tool_calls:
                    chat_msg.additional_kwargs = {"tool_calls": tool_calls}
                result.append(chat_msg)
                continue

            for block in tool_results:
                result.append(ChatMessage(
                    role=MessageRole.TOOL,
                    content=str(block.get("content", "")),
                    additional_kwargs={"tool_call_id": block.get("tool_use_id")}
                ))
            if text:
                result.append(ChatMessage(role=MessageRole.USER, content=text))

        return result

    def _call_kwargs(self, params: GenerationParams) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "max_tokens": params.max_tokens or self.settings.max_tokens,
        }
        if params.temperature is not None:
            kwargs["temperature"] = params.temperature
        if params.tools:
            kwargs["tools"] = [tool.to_openai() for tool in params.tools]
        return kwargs

    @staticmethod
    def _tool_calls(message: Any) -> list[ToolCallRequest]:
        raw_calls = (_field(message, "additional_kwargs") or {}).get("tool_calls") or []
        calls = []
        for raw in raw_calls:
            function = _field(raw, "function")
            if function is None or not _field(function, "name"):
                continue
            kwargs = {"name": _field(function, "name"),
                      "arguments": arguments_json(_field(function, "arguments"))}
            if _field(raw, "id"):
                kwargs["id"] = _field(raw, "id")
            calls.append(ToolCallRequest(**kwargs))
        return calls

    @staticmethod
    def _usage(raw: Any) -> Usage:
        usage = _field(raw, "usage") if raw is not None else None
        if usage is None:
            return Usage()
        return Usage(
            prompt_tokens=_field(usage, "prompt_tokens") or 0,
            completion_tokens=_field(usage, "completion_tokens") or 0,
            total_tokens=_field(usage, "total_tokens") or 0
        )

    async def _stream(self, params: GenerationParams) -> AsyncIterator[StreamEvent]:
        llm = self._get_llm()
        stream = await llm.astream_chat(self._convert_messages(params), **self._call_kwargs(params))

        text_parts: list[str] = []
        last = None
        async for response in stream:
            last = response
            if response.delta:
                text_parts.append(response.delta)
                yield ContentEvent(content=response.delta)

        tool_calls = self._tool_calls(last.message) if last is not None else []
        if tool_calls:
            yield ToolCallsEvent(tool_calls=tool_calls)

        usage = self._usage(last.raw) if last is not None else Usage()
        yield DoneEvent(content="".join(text_parts), usage=usage)

    async def generate_response(self, params: GenerationParams) -> LLMResponse:
        """Generate completion using ``achat``."""
        llm = self._get_llm()
        try:
            response = await llm.achat(self._convert_messages(params), **self._call_kwargs(params))
        except Exception as e:
            logger.error("LLM completion failed", provider=self.name, error=str(e))
            raise ProviderError(f"{self.display_name} API error: {e}") from e

        return LLMResponse(
            content=response.message.content or "",
            tool_calls=self._tool_calls(response.message),
            usage=self._usage(response.raw)
        )


class AzureOpenAIProvider(OpenAIProvider):
    """Azure OpenAI LLM provider using LlamaIndex."""

    name = "azure_openai"
    display_name = "Azure OpenAI"

    def _create_llm(self):
        from llama_index.llms.azure_openai import AzureOpenAI

        return AzureOpenAI(
            model=self.model,
            engine=self.settings.deployment_name or self.model,
            api_key=self.settings.api_key,
            azure_endpoint=self.settings.api_base,
            api_version=self.settings.api_version,
        )
