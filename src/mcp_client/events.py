"""Typed publish/subscribe for MCP client lifecycle events.

Each ``DualMCPClient`` owns one ``ClientEvents`` instance; listeners never
leak across clients or requests.
"""

from collections import defaultdict
from enum import Enum
from typing import Callable, Optional, Union

from pydantic import BaseModel, Field

from shared.logging import get_logger
from shared.models import EndpointName, EndpointState, Tool

logger = get_logger(__name__)


class ClientEventType(str, Enum):
    CONNECTION_STATE_CHANGE = "connection-state-change"
    TOOLS_UPDATED = "tools-updated"
    ERROR = "error"


class ConnectionStateChange(BaseModel):
    endpoint: EndpointName
    state: EndpointState
    previous_state: dict[EndpointName, EndpointState]
    current_state: dict[EndpointName, EndpointState]


class ToolsUpdated(BaseModel):
    endpoint: EndpointName
    tools: list[Tool] = Field(default_factory=list)


class ClientError(BaseModel):
    operation: str
    message: str
    endpoint: Optional[EndpointName] = None
    tool_name: Optional[str] = None


ClientEvent = Union[ConnectionStateChange, ToolsUpdated, ClientError]
Listener = Callable[[ClientEvent], None]

_PAYLOAD_TYPES: dict[ClientEventType, type[BaseModel]] = {
    ClientEventType.CONNECTION_STATE_CHANGE: ConnectionStateChange,
    ClientEventType.TOOLS_UPDATED: ToolsUpdated,
    ClientEventType.ERROR: ClientError,
}


class ClientEvents:
    """
    Synchronous listener registry keyed by ``ClientEventType``.

    A failing listener is logged and skipped; it never affects the client
    operation that published the event or the other listeners.
    """

    def __init__(self) -> None:
        self._listeners: dict[ClientEventType, list[Listener]] = defaultdict(list)

    def subscribe(self, event_type: ClientEventType, listener: Listener) -> None:
        self._listeners[event_type].append(listener)

    def unsubscribe(self, event_type: ClientEventType, listener: Listener) -> bool:
        """Remove a listener. Returns False if it was not subscribed."""
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def publish(self, event_type: ClientEventType, event: ClientEvent) -> int:
        """
        Deliver an event to the listeners of its type.

        Returns:
            Number of listeners that handled the event without raising
        """
        expected = _PAYLOAD_TYPES[event_type]
        if not isinstance(event, expected):
            raise TypeError(
                f"{event_type.value} expects {expected.__name__}, "
                f"got {type(event).__name__}"
            )

        delivered = 0
        for listener in list(self._listeners.get(event_type, [])):
            try:
                listener(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    "Client event listener failed",
                    event_type=event_type.value,
                    error=str(e)
                )
        return delivered

    def listener_count(self, event_type: Optional[ClientEventType] = None) -> int:
        if event_type is not None:
            return len(self._listeners.get(event_type, []))
        return sum(len(listeners) for listeners in self._listeners.values())

    def clear(self) -> None:
        self._listeners.clear()
