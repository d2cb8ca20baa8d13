"""Google Gemini backend (google-genai SDK).

Gemini streams natively: each chunk may carry a text delta and/or
function calls. Tool schemas are reduced to the keyword subset Gemini
accepts before they are declared.
"""

import uuid
from typing import Any, AsyncIterator, Optional

from shared.config import GeminiSettings
from shared.logging import get_logger
from shared.models import (
    ContentEvent,
    ConversationMessage,
    DoneEvent,
    ErrorEvent,
    LLMResponse,
    StreamEvent,
    ToolCallRequest,
    ToolCallsEvent,
    Usage,
)
from shared.schema import clean_schema

from orchestrator.llm.base import (
    GenerationParams,
    LLMProvider,
    ProviderError,
    arguments_json,
    content_blocks,
)

logger = get_logger(__name__)


class GeminiProvider(LLMProvider):
    """Gemini provider using ``client.aio.models``."""

    name = "gemini"
    display_name = "Gemini"

    def __init__(
        self,
        settings: GeminiSettings,
        model: Optional[str] = None,
        client: Any = None
    ) -> None:
        super().__init__(model or settings.model)
        self.settings = settings
        self._client = client

    def _get_client(self):
        """Lazy initialization of the google-genai client."""
        if self._client is None:
            from google import genai

            self._client = genai.Client(api_key=self.settings.api_key)
        return self._client

    @staticmethod
    def _convert_messages(messages: list[ConversationMessage]) -> list[Any]:
        """
        Convert history to Gemini ``Content`` objects.

        Assistant turns use the ``model`` role. Tool results become
        ``function_response`` parts, named after the tool_use they answer.
        """
        from google.genai import types

        tool_names: dict[str, str] = {}
        contents = []
        for msg in messages:
            parts = []
            for block in content_blocks(msg):
                block_type = block.get("type")
                if block_type == "text" and block.get("text"):
                    parts.append(types.Part(text=block["text"]))
                elif block_type == "tool_use":
                    tool_names[block["id"]] = block["name"]
                    parts.append(types.Part(function_call=types.FunctionCall(
                        name=block["name"],
                        args=block.get("input") or {}
                    )))
                elif block_type == "tool_result":
                    name = tool_names.get(block.get("tool_use_id", ""), "tool")
                    parts.append(types.Part(function_response=types.FunctionResponse(
                        name=name,
                        response={"result": block.get("content", "")}
                    )))

            if parts:
                role = "model" if msg.role == "assistant" else "user"
                contents.append(types.Content(role=role, parts=parts))
        return contents

    def _build_config(self, params: GenerationParams) -> Any:
        from google.genai import types

        config: dict[str, Any] = {
            "temperature": (
                params.temperature if params.temperature is not None
                else self.settings.temperature
            ),
            "max_output_tokens": params.max_tokens or self.settings.max_tokens,
            "top_p": self.settings.top_p,
            "top_k": self.settings.top_k,
        }
        if params.system_prompt:
            config["system_instruction"] = params.system_prompt
        if params.tools:
            config["tools"] = [types.Tool(function_declarations=[
                types.FunctionDeclaration(
                    name=tool.name,
                    description=tool.description,
                    parameters_json_schema=clean_schema(tool.input_schema)
                )
                for tool in params.tools
            ])]
        return types.GenerateContentConfig(**config)

    @staticmethod
    def _tool_call(call: Any) -> ToolCallRequest:
        return ToolCallRequest(
            id=getattr(call, "id", None) or f"call_{uuid.uuid4().hex[:24]}",
            name=call.name,
            arguments=arguments_json(call.args)
        )

    @staticmethod
    def _usage(metadata: Any) -> Usage:
        if metadata is None:
            return Usage()
        return Usage(
            prompt_tokens=getattr(metadata, "prompt_token_count", 0) or 0,
            completion_tokens=getattr(metadata, "candidates_token_count", 0) or 0,
            total_tokens=getattr(metadata, "total_token_count", 0) or 0
        )

    async def _stream(self, params: GenerationParams) -> AsyncIterator[StreamEvent]:
        response = await self._get_client().aio.models.generate_content_stream(
            model=self.model,
            contents=self._convert_messages(params.messages),
            config=self._build_config(params)
        )

        text_parts: list[str] = []
        tool_calls: list[ToolCallRequest] = []
        usage = Usage()

        try:
            async for chunk in response:
                text = chunk.text
                if text:
                    text_parts.append(text)
                    yield ContentEvent(content=text)
                for call in chunk.function_calls or []:
                    tool_calls.append(self._tool_call(call))
                if chunk.usage_metadata is not None:
                    usage = self._usage(chunk.usage_metadata)
        except Exception as e:
            logger.warning("Gemini stream iteration failed", error=str(e))
            fallback = getattr(response, "text", None)
            if not fallback:
                yield ErrorEvent(error=f"Gemini stream failed: {e}")
                return
            text_parts = [fallback]
            yield ContentEvent(content=fallback)

        if tool_calls:
            yield ToolCallsEvent(tool_calls=tool_calls)

        yield DoneEvent(content="".join(text_parts), usage=usage)

    async def generate_response(self, params: GenerationParams) -> LLMResponse:
        """Generate a complete response with ``generate_content``."""
        try:
            response = await self._get_client().aio.models.generate_content(
                model=self.model,
                contents=self._convert_messages(params.messages),
                config=self._build_config(params)
            )
        except Exception as e:
            logger.error("Gemini completion failed", error=str(e))
            raise ProviderError(f"Gemini API error: {e}") from e

        return LLMResponse(
            content=response.text or "",
            tool_calls=[self._tool_call(call) for call in response.function_calls or []],
            usage=self._usage(response.usage_metadata)
        )
