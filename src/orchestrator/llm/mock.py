"""Mock LLM provider for testing without API calls."""

from typing import AsyncIterator, Optional

from shared.models import (
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    LLMResponse,
    StreamEvent,
    ToolCallsEvent,
    Usage,
)

from orchestrator.llm.base import GenerationParams, LLMProvider


class MockLLMProvider(LLMProvider):
    """
    Scripted provider.

    Each queued response is consumed by one call; once the queue is empty
    a default text reply is returned. Every call is recorded in
    ``call_history``.
    """

    name = "mock"
    display_name = "Mock"

    def __init__(self, model: str = "mock-model") -> None:
        super().__init__(model)
        self.call_history: list[GenerationParams] = []
        self._queue: list[list[StreamEvent]] = []

    def set_next_response(self, response: LLMResponse) -> None:
        """Queue a response; it is streamed as content, tool_calls and done."""
        events: list[StreamEvent] = []
        if response.content:
            events.append(ContentEvent(content=response.content))
        if response.tool_calls:
            events.append(ToolCallsEvent(tool_calls=response.tool_calls))
        events.append(DoneEvent(content=response.content, usage=response.usage))
        self._queue.append(events)

    def queue_events(self, events: list[StreamEvent]) -> None:
        """Queue a raw event script (e.g. several content chunks, or an error)."""
        self._queue.append(list(events))

    def set_next_error(self, message: str) -> None:
        self._queue.append([ErrorEvent(error=message)])

    def _next_script(self) -> list[StreamEvent]:
        if self._queue:
            return self._queue.pop(0)
        return [
            ContentEvent(content="This is a mock response."),
            DoneEvent(
                content="This is a mock response.",
                usage=Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15)
            ),
        ]

    async def _stream(self, params: GenerationParams) -> AsyncIterator[StreamEvent]:
        self.call_history.append(params)
        for event in self._next_script():
            yield event

    async def generate_response(self, params: GenerationParams) -> LLMResponse:
        """Collapse the next script into a single response."""
        self.call_history.append(params)
        response = LLMResponse()
        for event in self._next_script():
            if isinstance(event, ContentEvent):
                response.content += event.content
            elif isinstance(event, ToolCallsEvent):
                response.tool_calls.extend(event.tool_calls)
            elif isinstance(event, DoneEvent):
                response.usage = event.usage
        return response

    def reset(self) -> None:
        self.call_history.clear()
        self._queue.clear()
