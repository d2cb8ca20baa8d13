"""Shared models, configuration and logging for the Shop Chat Gateway."""

from shared.models import (
    ChatEvent,
    ConversationMessage,
    Endpoint,
    EndpointName,
    EndpointState,
    StreamEvent,
    Tool,
    ToolCallRequest,
    ToolResult,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "ChatEvent",
    "ConversationMessage",
    "Endpoint",
    "EndpointName",
    "EndpointState",
    "StreamEvent",
    "Tool",
    "ToolCallRequest",
    "ToolResult",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
