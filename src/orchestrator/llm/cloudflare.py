"""Cloudflare Workers AI backend (REST API over httpx).

Workers AI text models do not support function calling, so tools are
never declared and tool blocks in history are flattened to text.
"""

import json
from typing import Any, AsyncIterator, Optional

import httpx

from shared.config import CloudflareSettings
from shared.logging import get_logger
from shared.models import (
    ContentEvent,
    ConversationMessage,
    DoneEvent,
    LLMResponse,
    StreamEvent,
    Usage,
)

from orchestrator.llm.base import (
    GenerationParams,
    LLMProvider,
    ProviderConfigError,
    ProviderError,
    content_blocks,
)

logger = get_logger(__name__)


AVAILABLE_MODELS = [
    {"id": "@cf/google/gemma-7b-it", "name": "Gemma 7B Instruct"},
    {"id": "@cf/google/gemma-2b-it", "name": "Gemma 2B Instruct"},
    {"id": "@cf/meta/llama-2-7b-chat-int8", "name": "Llama 2 7B Chat"},
    {"id": "@cf/meta/llama-3-8b-instruct", "name": "Llama 3 8B Instruct"},
    {"id": "@cf/meta/llama-3.1-8b-instruct", "name": "Llama 3.1 8B Instruct"},
    {"id": "@cf/microsoft/phi-2", "name": "Phi-2"},
    {"id": "@cf/mistral/mistral-7b-instruct-v0.1", "name": "Mistral 7B Instruct"},
    {"id": "@cf/openchat/openchat-3.5-0106", "name": "OpenChat 3.5"},
    {"id": "@cf/tinyllama/tinyllama-1.1b-chat-v1.0", "name": "TinyLlama 1.1B Chat"},
]


class CloudflareProvider(LLMProvider):
    """Workers AI provider using ``POST /accounts/{id}/ai/run/{model}``."""

    name = "cloudflare"
    display_name = "Cloudflare Workers AI"

    def __init__(
        self,
        settings: CloudflareSettings,
        model: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        super().__init__(model or settings.model)
        self.settings = settings
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=60.0)
        return self._client

    def _endpoint(self) -> str:
        if not self.settings.account_id or not self.settings.api_token:
            raise ProviderConfigError(
                "Cloudflare account_id and api_token must be configured"
            )
        base = self.settings.api_base.rstrip("/")
        return f"{base}/accounts/{self.settings.account_id}/ai/run/{self.model}"

    @staticmethod
    def _flatten(msg: ConversationMessage) -> str:
        parts = []
        for block in content_blocks(msg):
            block_type = block.get("type")
            if block_type == "text":
                parts.append(block.get("text", ""))
            elif block_type == "tool_use":
                parts.append(
                    f"[Called tool {block.get('name')} with arguments "
                    f"{json.dumps(block.get('input') or {})}]"
                )
            elif block_type == "tool_result":
                parts.append(f"Tool result: {block.get('content', '')}")
        return "\n".join(part for part in parts if part)

    def _build_payload(self, params: GenerationParams, stream: bool) -> dict[str, Any]:
        messages = []
        if params.system_prompt:
            messages.append({"role": "system", "content": params.system_prompt})
        for msg in params.messages:
            content = self._flatten(msg)
            if content:
                messages.append({"role": msg.role, "content": content})

        return {
            "messages": messages,
            "max_tokens": params.max_tokens or self.settings.max_tokens,
            "temperature": (
                params.temperature if params.temperature is not None
                else self.settings.temperature
            ),
            "stream": stream,
        }

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.settings.api_token}"}

    @staticmethod
    def _usage(data: Optional[dict[str, Any]]) -> Usage:
        if not data:
            return Usage()
        return Usage(
            prompt_tokens=data.get("prompt_tokens", 0) or 0,
            completion_tokens=data.get("completion_tokens", 0) or 0,
            total_tokens=data.get("total_tokens", 0) or 0
        )

    @staticmethod
    def _result_text(body: dict[str, Any]) -> str:
        result = body.get("result", body)
        if isinstance(result, dict):
            return result.get("response") or ""
        return result or ""

    async def _stream(self, params: GenerationParams) -> AsyncIterator[StreamEvent]:
        if params.tools:
            logger.debug("Tools ignored by Workers AI", tool_count=len(params.tools))

        url = self._endpoint()
        payload = self._build_payload(params, stream=True)
        text_parts: list[str] = []
        usage = Usage()

        async with self._get_client().stream(
            "POST", url, json=payload, headers=self._headers()
        ) as response:
            if response.is_error:
                body = (await response.aread()).decode(errors="replace")
                raise ProviderError(
                    f"Cloudflare AI error: HTTP {response.status_code}: {body}"
                )

            if "text/event-stream" in response.headers.get("content-type", ""):
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed SSE line", line=data[:100])
                        continue

                    if chunk.get("usage"):
                        usage = self._usage(chunk["usage"])
                    piece = chunk.get("response")
                    if piece:
                        text_parts.append(piece)
                        yield ContentEvent(content=piece)
            else:
                # Non-streaming body
                body = json.loads(await response.aread())
                content = self._result_text(body)
                text_parts.append(content)
                yield ContentEvent(content=content)

        yield DoneEvent(content="".join(text_parts), usage=usage)

    async def generate_response(self, params: GenerationParams) -> LLMResponse:
        """Generate a complete response (``stream: false``)."""
        try:
            response = await self._get_client().post(
                self._endpoint(),
                json=self._build_payload(params, stream=False),
                headers=self._headers()
            )
            response.raise_for_status()
            body = response.json()
        except ProviderConfigError:
            raise
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Cloudflare completion failed", error=str(e))
            raise ProviderError(f"Cloudflare AI error: {e}") from e

        result = body.get("result") if isinstance(body.get("result"), dict) else {}
        return LLMResponse(
            content=self._result_text(body),
            tool_calls=[],
            usage=self._usage(result.get("usage"))
        )

    async def list_models(self) -> list[dict[str, str]]:
        """Text-generation models known to work with this backend."""
        return list(AVAILABLE_MODELS)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
