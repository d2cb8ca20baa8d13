"""LLM Integration Layer.

Supports multiple AI backends behind one streaming contract:
- Claude (Anthropic)
- Gemini (Google)
- Cloudflare Workers AI
- OpenAI / Azure OpenAI via LlamaIndex

The LLM has no direct MCP or application access.
"""

from orchestrator.llm.base import (
    DEFAULT_SYSTEM_PROMPT,
    GenerationParams,
    LLMProvider,
    ProviderConfigError,
    ProviderError,
)
from orchestrator.llm.claude import ClaudeProvider
from orchestrator.llm.cloudflare import CloudflareProvider
from orchestrator.llm.factory import (
    PROVIDER_FEATURES,
    ProviderSelection,
    check_provider,
    create_llm_provider,
    get_provider_info,
    get_recommended_provider,
    list_providers,
    validate_provider_config,
)
from orchestrator.llm.gemini import GeminiProvider
from orchestrator.llm.llamaindex import AzureOpenAIProvider, OpenAIProvider
from orchestrator.llm.mock import MockLLMProvider

__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "GenerationParams",
    "LLMProvider",
    "ProviderConfigError",
    "ProviderError",
    "ClaudeProvider",
    "CloudflareProvider",
    "GeminiProvider",
    "OpenAIProvider",
    "AzureOpenAIProvider",
    "MockLLMProvider",
    "PROVIDER_FEATURES",
    "ProviderSelection",
    "check_provider",
    "create_llm_provider",
    "get_provider_info",
    "get_recommended_provider",
    "list_providers",
    "validate_provider_config",
]
