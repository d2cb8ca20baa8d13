"""Conversation store for the Orchestrator.

Messages are persisted with their content as text: plain text as-is,
block lists (tool_use / tool_result) as JSON, each tagged with its
content type. ``history`` decodes only what was saved as blocks, so user
text that happens to look like JSON comes back exactly as typed.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, Union, runtime_checkable

from shared.logging import get_logger
from shared.models import Conversation, ConversationMessage, StoredMessage, utc_now

logger = get_logger(__name__)

MessageContent = Union[str, list[dict[str, Any]]]


@runtime_checkable
class MessageStore(Protocol):
    """Persistence collaborator used by the orchestrator."""

    async def save(
        self,
        conversation_id: str,
        role: str,
        content: MessageContent
    ) -> StoredMessage:
        ...

    async def history(self, conversation_id: str) -> list[ConversationMessage]:
        ...


class ConversationManager:
    """
    In-memory message store.

    Conversations are created on first save, pruned to
    ``max_conversation_length`` messages and expire after
    ``conversation_ttl_minutes`` without activity.
    """

    def __init__(self, max_conversation_length: int = 50, conversation_ttl_minutes: int = 60) -> None:
        self.max_length = max_conversation_length
        self.ttl = timedelta(minutes=conversation_ttl_minutes)
        self._conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()

    def _is_expired(self, conversation: Conversation, now: datetime) -> bool:
        return now - conversation.updated_at > self.ttl

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        """The live conversation, or None when unknown or expired."""
        conversation = self._conversations.get(conversation_id)
        if conversation is not None and self._is_expired(conversation, utc_now()):
            await self.delete(conversation_id)
            conversation = None
        return conversation

    async def save(
        self,
        conversation_id: str,
        role: str,
        content: MessageContent
    ) -> StoredMessage:
        """
        Append a message, creating the conversation if needed.

        Block content is stored as JSON text tagged ``blocks``.
        """
        conversation = await self.get(conversation_id)
        message = StoredMessage.from_message(ConversationMessage(role=role, content=content))

        async with self._lock:
            if conversation is None:
                conversation = self._conversations.setdefault(
                    conversation_id, Conversation(id=conversation_id)
                )
                logger.info("Conversation created", conversation_id=conversation_id)

            conversation.messages.append(message)
            conversation.updated_at = utc_now()

            if len(conversation.messages) > self.max_length:
                kept = conversation.messages[-self.max_length:]
                # A tool result must not outlive the tool_use it answers
                while kept and kept[0].has_tool_result():
                    kept.pop(0)
                conversation.messages = kept

        return message

    async def history(self, conversation_id: str) -> list[ConversationMessage]:
        """All messages of a conversation, oldest first, with content decoded."""
        conversation = await self.get(conversation_id)
        if conversation is None:
            return []

        return [message.to_message() for message in conversation.messages]

    async def delete(self, conversation_id: str) -> bool:
        """Drop a conversation; False when it was not stored."""
        async with self._lock:
            removed = self._conversations.pop(conversation_id, None)
        if removed is not None:
            logger.info(
                "Conversation deleted",
                conversation_id=conversation_id,
                messages=len(removed.messages)
            )
        return removed is not None

    async def cleanup_expired(self) -> int:
        """Drop every idle conversation and return how many went."""
        now = utc_now()

        async with self._lock:
            live = {
                key: conversation for key, conversation in self._conversations.items()
                if not self._is_expired(conversation, now)
            }
            removed = len(self._conversations) - len(live)
            self._conversations = live

        if removed:
            logger.info("Expired conversations cleaned up", count=removed)
        return removed

    async def list_conversations(self) -> list[dict[str, Any]]:
        """Summaries of the stored conversations, most recently active first."""
        ordered = sorted(
            self._conversations.values(),
            key=lambda conversation: conversation.updated_at,
            reverse=True
        )
        return [
            {
                "id": conversation.id,
                "message_count": len(conversation.messages),
                "tool_messages": sum(1 for m in conversation.messages if m.has_tool_result()),
                "updated_at": conversation.updated_at.isoformat()
            }
            for conversation in ordered
        ]

    def get_stats(self) -> dict[str, Any]:
        conversations = self._conversations.values()
        return {
            "total_conversations": len(self._conversations),
            "total_messages": sum(len(c.messages) for c in conversations),
            "max_length": self.max_length,
            "ttl_minutes": int(self.ttl.total_seconds() // 60)
        }
