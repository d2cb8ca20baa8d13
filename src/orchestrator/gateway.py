"""Chat orchestrator - core turn logic.

The orchestrator coordinates, for one user message:
- MCP connection and tool discovery
- Conversation persistence
- The streamed model turn, tool execution and one continuation
- Outbound chat events for the caller

Each request owns its MCP client, history and product list; nothing
mutable is shared between requests.
"""

import json
import uuid
from contextlib import aclosing
from enum import Enum
from typing import Any, AsyncIterator, Optional

from shared.config import ChatSettings, Settings
from shared.logging import bind_context, get_logger, unbind_context
from shared.models import (
    ChatEvent,
    ChatEventType,
    ContentEvent,
    ConversationMessage,
    DoneEvent,
    ErrorEvent,
    Product,
    StatusEvent,
    ToolCallRequest,
    ToolCallsEvent,
    ToolErrorType,
)
from mcp_client.client import DualMCPClient
from orchestrator.conversation import ConversationManager, MessageStore
from orchestrator.llm import (
    GenerationParams,
    LLMProvider,
    ProviderSelection,
    create_llm_provider,
)
from orchestrator.tools import ToolResultHandler

logger = get_logger(__name__)


class ChatRequestError(ValueError):
    """The chat request itself is invalid (e.g. an empty message)."""
    pass


class TurnState(str, Enum):
    """Progress of a single chat turn."""
    AWAITING_MODEL = "awaiting_model"
    PROCESSING_TOOL_CALLS = "processing_tool_calls"
    DONE = "done"
    ERROR = "error"


def _event(event_type: ChatEventType, **data: Any) -> ChatEvent:
    return ChatEvent(type=event_type, data=data)


class ChatOrchestrator:
    """
    Runs chat turns against an LLM backend and the dual MCP client.

    A turn streams one model pass. If the model requests tools, they are
    executed strictly in order, their results appended to history, and
    exactly one continuation pass is streamed. Tool calls requested by
    the continuation are not executed.

    The MCP client belongs to the caller: turns connect it but never
    disconnect it, so it can serve several turns. Close it with
    ``DualMCPClient.disconnect`` (or ``async with``) when done.
    """

    def __init__(
        self,
        mcp_client: DualMCPClient,
        llm_provider: LLMProvider,
        store: Optional[MessageStore] = None,
        selection: Optional[ProviderSelection] = None,
        settings: Optional[ChatSettings] = None
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            mcp_client: Client for the primary and scoped MCP endpoints
            llm_provider: Backend that streams model turns
            store: Message store (defaults to an in-memory one)
            selection: Provider selection this orchestrator was built for
            settings: Chat settings (token limits, tool defaults)
        """
        self.settings = settings or ChatSettings()
        self.mcp_client = mcp_client
        self.llm = llm_provider
        self.store = store or ConversationManager(
            max_conversation_length=self.settings.max_conversation_length,
            conversation_ttl_minutes=self.settings.conversation_ttl_minutes
        )
        self.selection = selection or ProviderSelection(
            provider=llm_provider.name, model=llm_provider.model
        )
        self.tool_handler = ToolResultHandler(
            self.store,
            product_search_tool=self.settings.product_search_tool,
            max_products=self.settings.max_products_to_display
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        mcp_client: DualMCPClient,
        store: Optional[MessageStore] = None,
        selection: Optional[ProviderSelection] = None
    ) -> "ChatOrchestrator":
        """Build an orchestrator whose backend comes from the provider factory."""
        selection = selection or ProviderSelection.from_settings(settings.llm)
        return cls(
            mcp_client=mcp_client,
            llm_provider=create_llm_provider(selection, settings.llm),
            store=store,
            selection=selection,
            settings=settings.chat
        )

    def _params(self, history: list[ConversationMessage]) -> GenerationParams:
        return GenerationParams(
            messages=list(history),
            tools=self.mcp_client.tools,
            system_prompt=self.settings.system_prompt,
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature
        )

    def _prepare_arguments(self, call: ToolCallRequest) -> dict[str, Any]:
        """Decode arguments and fill defaults the model commonly omits."""
        arguments = call.parsed_arguments()
        if call.name == self.settings.product_search_tool and not arguments.get("context"):
            arguments["context"] = self.settings.default_search_context
        return arguments

    async def process_message(
        self,
        message: str,
        conversation_id: Optional[str] = None
    ) -> AsyncIterator[ChatEvent]:
        """
        Process a user message, yielding chat events.

        Args:
            message: User's input message
            conversation_id: Existing conversation ID (generated when absent)

        Yields:
            ``id``, ``mcp_status``, turn events, ``end_turn`` and, when
            products were found, ``product_results``

        Raises:
            ChatRequestError: If the message is empty (before any event)

        The MCP client is left connected; closing it is up to the caller.
        """
        if not message or not message.strip():
            raise ChatRequestError("Message is required")

        conversation_id = conversation_id or str(uuid.uuid4())
        bind_context(conversation_id=conversation_id)
        logger.info(
            "Processing message",
            provider=self.selection.provider,
            model=self.selection.model
        )

        try:
            yield _event(ChatEventType.ID, conversation_id=conversation_id)

            results = await self.mcp_client.connect_all()
            logger.info("MCP tools available", total_tools=results.total_tool_count)
            yield _event(
                ChatEventType.MCP_STATUS,
                status=self.mcp_client.connection_status(),
                tools_count=results.total_tool_count
            )

            products: list[Product] = []
            try:
                await self.store.save(conversation_id, "user", message)
                history = await self.store.history(conversation_id)

                async for event in self._run_turn(conversation_id, history, products):
                    yield event
            except Exception as e:
                logger.error("Conversation error", error=str(e), exc_info=True)
                yield _event(ChatEventType.ERROR, error=f"Conversation error: {e}")

            yield _event(ChatEventType.END_TURN)

            if products:
                yield _event(
                    ChatEventType.PRODUCT_RESULTS,
                    products=[product.model_dump() for product in products]
                )
        finally:
            unbind_context("conversation_id")

    async def _run_turn(
        self,
        conversation_id: str,
        history: list[ConversationMessage],
        products: list[Product]
    ) -> AsyncIterator[ChatEvent]:
        state = TurnState.AWAITING_MODEL
        is_continuation = False

        while state == TurnState.AWAITING_MODEL:
            text_parts: list[str] = []
            pending: Optional[list[ToolCallRequest]] = None

            async with aclosing(self.llm.stream_response(self._params(history))) as stream:
                async for event in stream:
                    if isinstance(event, ContentEvent):
                        text_parts.append(event.content)
                        yield _event(ChatEventType.CHUNK, chunk=event.content)

                    elif isinstance(event, StatusEvent):
                        yield _event(ChatEventType.STATUS, status=event.status)

                    elif isinstance(event, ToolCallsEvent):
                        if is_continuation:
                            logger.warning(
                                "Ignoring tool calls from continuation",
                                tools=[call.name for call in event.tool_calls]
                            )
                            continue
                        pending = event.tool_calls
                        break

                    elif isinstance(event, DoneEvent):
                        final_text = event.content or "".join(text_parts)
                        if final_text:
                            await self.store.save(conversation_id, "assistant", final_text)
                            history.append(ConversationMessage(role="assistant", content=final_text))
                        logger.info("Token usage", **event.usage.model_dump())
                        state = TurnState.DONE
                        break

                    elif isinstance(event, ErrorEvent):
                        logger.error("AI service error", error=event.error)
                        yield _event(ChatEventType.ERROR, error=event.error)
                        state = TurnState.ERROR
                        break

            if pending is not None:
                state = TurnState.PROCESSING_TOOL_CALLS
                async for out in self._process_tool_calls(
                    pending, "".join(text_parts), history, products, conversation_id
                ):
                    yield out
                is_continuation = True
                state = TurnState.AWAITING_MODEL
            elif state == TurnState.AWAITING_MODEL:
                # Stream closed without done/error
                state = TurnState.ERROR

        logger.info("Turn finished", state=state.value)

    async def _process_tool_calls(
        self,
        calls: list[ToolCallRequest],
        preamble: str,
        history: list[ConversationMessage],
        products: list[Product],
        conversation_id: str
    ) -> AsyncIterator[ChatEvent]:
        for index, call in enumerate(calls):
            arguments = self._prepare_arguments(call)
            yield _event(
                ChatEventType.TOOL_USE,
                tool_use_message=f"Calling tool: {call.name} with arguments: {json.dumps(arguments)}"
            )

            result = await self.mcp_client.call_tool(call.name, arguments)
            # The model's text before the calls belongs to the first tool_use entry
            text = preamble if index == 0 else None

            if result.is_error:
                await self.tool_handler.handle_error(
                    call, arguments, result, history, conversation_id, preamble=text
                )
                if result.error.type == ToolErrorType.AUTH_REQUIRED:
                    yield _event(ChatEventType.AUTH_REQUIRED, auth_url=result.error.data)
            else:
                await self.tool_handler.handle_success(
                    call, arguments, result, history, products, conversation_id, preamble=text
                )

            yield _event(ChatEventType.NEW_MESSAGE)
