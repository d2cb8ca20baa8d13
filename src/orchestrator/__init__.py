"""Orchestrator.

Runs chat turns: streams model output from the selected AI backend,
executes requested tools through the MCP client and persists the
conversation.
"""

from orchestrator.conversation import ConversationManager, MessageStore
from orchestrator.gateway import ChatOrchestrator, ChatRequestError, TurnState
from orchestrator.llm import LLMProvider, ProviderSelection, create_llm_provider
from orchestrator.tools import ToolResultHandler

__all__ = [
    "ConversationManager",
    "MessageStore",
    "ChatOrchestrator",
    "ChatRequestError",
    "TurnState",
    "LLMProvider",
    "ProviderSelection",
    "create_llm_provider",
    "ToolResultHandler",
]
