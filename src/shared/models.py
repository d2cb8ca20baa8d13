"""Core data models for the Shop Chat Gateway.

This module defines the shared data structures passed between the MCP
client, the LLM backends and the conversation orchestrator.
"""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EndpointName(str, Enum):
    """The two capability servers a client talks to."""
    PRIMARY = "primary"
    SCOPED = "scoped"


class EndpointState(str, Enum):
    """Connection state of a single endpoint."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    REQUIRES_AUTH = "requires-auth"
    FAILED = "failed"


class Endpoint(BaseModel):
    """A configured capability server URL and its connection state."""
    name: EndpointName
    url: str
    requires_auth: bool = False
    state: EndpointState = EndpointState.DISCONNECTED


class Tool(BaseModel):
    """
    A named, schema-described capability exposed by an MCP server.

    Tools are immutable once registered for a session.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Tool name, unique within a registry")
    description: str = Field(default="")
    input_schema: dict[str, Any] = Field(
        default_factory=dict,
        description="JSON Schema for the tool arguments"
    )

    @classmethod
    def from_listing(cls, data: dict[str, Any]) -> "Tool":
        """Build a tool from a raw ``tools/list`` entry."""
        schema = data.get("inputSchema") or data.get("input_schema") or {}
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            input_schema=schema
        )

    def to_declaration(self) -> dict[str, Any]:
        """Return the ``{name, description, parameters}`` function shape."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.input_schema,
        }

    def to_openai(self) -> dict[str, Any]:
        """Return the OpenAI ``{"type": "function", ...}`` tool shape."""
        return {"type": "function", "function": self.to_declaration()}


class ToolErrorType(str, Enum):
    """Structured tool-call failure kinds."""
    TOOL_NOT_FOUND = "tool_not_found"
    AUTH_REQUIRED = "auth_required"
    INTERNAL_ERROR = "internal_error"


class ToolError(BaseModel):
    """Structured error returned in place of a tool payload."""
    type: ToolErrorType
    data: str


class ToolResult(BaseModel):
    """
    Result of a tool call.

    Either ``content`` holds the opaque JSON-RPC result payload, or
    ``error`` describes why the call did not produce one.
    """
    tool_name: str
    content: Optional[Any] = None
    error: Optional[ToolError] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def success(cls, tool_name: str, content: Any) -> "ToolResult":
        return cls(tool_name=tool_name, content=content)

    @classmethod
    def failure(
        cls,
        tool_name: str,
        error_type: ToolErrorType,
        data: str
    ) -> "ToolResult":
        return cls(tool_name=tool_name, error=ToolError(type=error_type, data=data))


class ToolCallRequest(BaseModel):
    """A tool invocation requested by the model."""
    id: str = Field(default_factory=lambda: f"toolu_{uuid.uuid4().hex[:24]}")
    name: str
    arguments: str = Field(default="{}", description="Arguments as JSON text")

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the arguments, falling back to an empty object."""
        try:
            value = json.loads(self.arguments) if self.arguments else {}
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}


class Usage(BaseModel):
    """Token usage reported by a backend (zeros when unavailable)."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ContentEvent(BaseModel):
    type: Literal["content"] = "content"
    content: str


class ToolCallsEvent(BaseModel):
    type: Literal["tool_calls"] = "tool_calls"
    tool_calls: list[ToolCallRequest]


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    content: str = ""
    usage: Usage = Field(default_factory=Usage)


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str


class StatusEvent(BaseModel):
    type: Literal["status"] = "status"
    status: str


StreamEvent = Annotated[
    Union[ContentEvent, ToolCallsEvent, DoneEvent, ErrorEvent, StatusEvent],
    Field(discriminator="type")
]


class ConversationMessage(BaseModel):
    """
    A single message in a conversation.

    ``content`` is either plain text or a list of content blocks
    (``text``, ``tool_use``, ``tool_result``). Block lists are stored as
    JSON text by the message store (see ``StoredMessage``).
    """
    role: Literal["user", "assistant"]
    content: Union[str, list[dict[str, Any]]]
    timestamp: datetime = Field(default_factory=utc_now)

    def text(self) -> str:
        """Concatenated text of the message, ignoring tool blocks."""
        if isinstance(self.content, str):
            return self.content
        return "".join(
            block.get("text", "") for block in self.content
            if block.get("type") == "text"
        )


class StoredMessage(BaseModel):
    """
    A message as persisted by the message store.

    ``content`` is always text; ``content_type`` records whether it is
    plain text or a JSON-encoded block list. Only messages saved as
    blocks are decoded on read.
    """
    role: Literal["user", "assistant"]
    content: str
    content_type: Literal["text", "blocks"] = "text"
    timestamp: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_message(cls, message: ConversationMessage) -> "StoredMessage":
        if isinstance(message.content, str):
            return cls(role=message.role, content=message.content, timestamp=message.timestamp)
        return cls(
            role=message.role,
            content=json.dumps(message.content),
            content_type="blocks",
            timestamp=message.timestamp
        )

    def to_message(self) -> ConversationMessage:
        content = json.loads(self.content) if self.content_type == "blocks" else self.content
        return ConversationMessage(role=self.role, content=content, timestamp=self.timestamp)

    def has_tool_result(self) -> bool:
        if self.content_type != "blocks":
            return False
        return any(block.get("type") == "tool_result" for block in json.loads(self.content))


class Conversation(BaseModel):
    """Conversation state kept by the in-memory message store."""
    id: str
    messages: list[StoredMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class LLMResponse(BaseModel):
    """Non-streaming response from an LLM backend."""
    content: str = ""
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)


class ConnectionResults(BaseModel):
    """Aggregate outcome of connecting to both endpoints."""
    per_endpoint_tools: dict[EndpointName, list[Tool]] = Field(default_factory=dict)
    total_tool_count: int = 0


class ChatEventType(str, Enum):
    """Outbound events emitted by the orchestrator to its caller."""
    ID = "id"
    MCP_STATUS = "mcp_status"
    CHUNK = "chunk"
    STATUS = "status"
    TOOL_USE = "tool_use"
    NEW_MESSAGE = "new_message"
    AUTH_REQUIRED = "auth_required"
    ERROR = "error"
    END_TURN = "end_turn"
    PRODUCT_RESULTS = "product_results"


class ChatEvent(BaseModel):
    """One outbound event; ``data`` carries the type-specific fields."""
    type: ChatEventType
    data: dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Flatten to the wire shape, e.g. ``{"type": "chunk", "chunk": "..."}``."""
        return {"type": self.type.value, **self.data}


class Product(BaseModel):
    """Product card extracted from a catalog search result."""
    id: str
    title: str
    price: str
    image_url: str = ""
    description: str = ""
    url: str = ""
