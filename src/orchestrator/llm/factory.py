"""Provider selection and construction.

The selection is an immutable value object passed per request, so one
process can serve different backends concurrently without mutating
shared configuration.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from shared.config import LLMSettings
from shared.logging import get_logger
from shared.models import ConversationMessage

from orchestrator.llm.base import GenerationParams, LLMProvider, ProviderConfigError
from orchestrator.llm.claude import ClaudeProvider
from orchestrator.llm.cloudflare import CloudflareProvider
from orchestrator.llm.gemini import GeminiProvider
from orchestrator.llm.llamaindex import AzureOpenAIProvider, OpenAIProvider
from orchestrator.llm.mock import MockLLMProvider

logger = get_logger(__name__)


PROVIDER_FEATURES: dict[str, dict[str, Any]] = {
    "claude": {
        "display_name": "Claude (Anthropic)",
        "supports_streaming": True,
        "supports_tools": True,
        "supports_system_prompts": True,
        "supports_vision": True,
        "max_context_length": 200000,
        "models": ["claude-3-haiku-20240307", "claude-3-sonnet-20240229", "claude-3-opus-20240229"],
    },
    "gemini": {
        "display_name": "Gemini (Google)",
        "supports_streaming": True,
        "supports_tools": True,
        "supports_system_prompts": True,
        "supports_vision": True,
        "max_context_length": 1048576,
        "models": ["gemini-2.0-flash", "gemini-2.5-flash", "gemini-2.5-pro", "gemini-1.5-pro", "gemini-1.5-flash"],
    },
    "cloudflare": {
        "display_name": "Cloudflare Workers AI",
        "supports_streaming": True,
        "supports_tools": False,
        "supports_system_prompts": True,
        "supports_vision": False,
        "max_context_length": 8192,
        "models": [
            "@cf/google/gemma-7b-it",
            "@cf/google/gemma-2b-it",
            "@cf/meta/llama-3.1-8b-instruct",
            "@cf/meta/llama-3-8b-instruct",
            "@cf/mistral/mistral-7b-instruct-v0.1",
        ],
    },
    "openai": {
        "display_name": "OpenAI",
        "supports_streaming": True,
        "supports_tools": True,
        "supports_system_prompts": True,
        "supports_vision": True,
        "max_context_length": 128000,
        "models": ["gpt-4o-mini", "gpt-4o"],
    },
    "azure_openai": {
        "display_name": "Azure OpenAI",
        "supports_streaming": True,
        "supports_tools": True,
        "supports_system_prompts": True,
        "supports_vision": True,
        "max_context_length": 128000,
        "models": ["gpt-4o-mini", "gpt-4o"],
    },
    "mock": {
        "display_name": "Mock",
        "supports_streaming": True,
        "supports_tools": True,
        "supports_system_prompts": True,
        "supports_vision": False,
        "max_context_length": 0,
        "models": ["mock-model"],
    },
}

PROVIDER_TEST_MESSAGE = 'Hello, this is a test message. Please respond with "Test successful".'


class ProviderSelection(BaseModel):
    """Which backend (and optionally which model) serves a request."""
    model_config = ConfigDict(frozen=True)

    provider: str
    model: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: LLMSettings) -> "ProviderSelection":
        return cls(provider=settings.provider)


def _backend_settings(provider: str, settings: LLMSettings) -> Any:
    if provider == "mock":
        return None
    return getattr(settings, "openai" if provider == "azure_openai" else provider)


def validate_provider_config(selection: ProviderSelection, settings: LLMSettings) -> None:
    """
    Check that the selected provider can be constructed.

    Raises:
        ProviderConfigError: Unknown provider, or a missing API key for a
            provider that needs one
    """
    if selection.provider not in PROVIDER_FEATURES:
        raise ProviderConfigError(f"Unsupported AI provider: {selection.provider}")

    if selection.provider in ("cloudflare", "mock"):
        return

    if not _backend_settings(selection.provider, settings).api_key:
        raise ProviderConfigError(f"API key required for {selection.provider} provider")


def create_llm_provider(
    selection: ProviderSelection,
    settings: LLMSettings,
    **kwargs: Any
) -> LLMProvider:
    """
    Factory function to create the LLM provider for a selection.

    Supports:
    - claude: Anthropic Messages API
    - gemini: Google Gemini (google-genai)
    - cloudflare: Cloudflare Workers AI REST API
    - openai / azure_openai: via LlamaIndex
    - mock: Mock provider for testing

    Args:
        selection: Provider and optional model override
        settings: LLM configuration settings
        **kwargs: Passed to the provider (e.g. an injected client)

    Returns:
        Configured LLM provider instance

    Raises:
        ProviderConfigError: If the provider is unknown or not configured
    """
    validate_provider_config(selection, settings)
    logger.info("Creating LLM provider", provider=selection.provider, model=selection.model)

    if selection.provider == "mock":
        return MockLLMProvider(model=selection.model or "mock-model")

    providers = {
        "claude": lambda: ClaudeProvider(settings.claude, model=selection.model, **kwargs),
        "gemini": lambda: GeminiProvider(settings.gemini, model=selection.model, **kwargs),
        "cloudflare": lambda: CloudflareProvider(settings.cloudflare, model=selection.model, **kwargs),
        "openai": lambda: OpenAIProvider(settings.openai, model=selection.model, **kwargs),
        "azure_openai": lambda: AzureOpenAIProvider(settings.openai, model=selection.model, **kwargs),
    }
    return providers[selection.provider]()


def get_provider_info(selection: ProviderSelection, settings: LLMSettings) -> dict[str, Any]:
    """Describe the selected provider: model, limits and feature flags."""
    features = PROVIDER_FEATURES.get(selection.provider)
    if features is None:
        raise ProviderConfigError(f"Unsupported AI provider: {selection.provider}")

    backend = _backend_settings(selection.provider, settings)
    return {
        "provider": selection.provider,
        "model": selection.model or (backend.model if backend else "mock-model"),
        "max_tokens": backend.max_tokens if backend else 0,
        "supports_streaming": features["supports_streaming"],
        "supports_tools": features["supports_tools"],
        "supports_vision": features["supports_vision"],
        "max_context_length": features["max_context_length"],
    }


def list_providers(settings: LLMSettings) -> list[dict[str, Any]]:
    """All known providers with availability and feature flags."""
    providers = []
    for name, features in PROVIDER_FEATURES.items():
        if name == "mock":
            continue
        try:
            validate_provider_config(ProviderSelection(provider=name), settings)
            available = True
        except ProviderConfigError:
            available = False

        providers.append({
            "name": name,
            "display_name": features["display_name"],
            "available": available,
            "models": list(features["models"]),
            "features": {
                "streaming": features["supports_streaming"],
                "tools": features["supports_tools"],
                "vision": features["supports_vision"],
                "system_prompts": features["supports_system_prompts"],
            },
        })
    return providers


def get_recommended_provider(settings: LLMSettings, use_case: str = "chat") -> str:
    """
    Pick an available provider for a use case.

    Raises:
        ProviderConfigError: If no provider is available
    """
    available = [p["name"] for p in list_providers(settings) if p["available"]]
    if not available:
        raise ProviderConfigError(
            "No AI providers are available. Please configure at least one provider."
        )

    if use_case in ("analysis", "reasoning", "creative"):
        preference = ["claude", "gemini"]
    elif use_case == "coding":
        preference = ["gemini", "claude"]
    else:
        preference = []

    for name in preference:
        if name in available:
            return name
    return available[0]


async def check_provider(selection: ProviderSelection, settings: LLMSettings) -> dict[str, Any]:
    """
    Send a short test message through a provider.

    Never raises; failures are reported in the result.
    """
    try:
        provider = create_llm_provider(selection, settings)
        response = await provider.generate_response(GenerationParams(
            messages=[ConversationMessage(role="user", content=PROVIDER_TEST_MESSAGE)]
        ))
    except Exception as e:
        logger.warning("Provider check failed", provider=selection.provider, error=str(e))
        return {"success": False, "provider": selection.provider, "error": str(e)}

    return {
        "success": True,
        "provider": selection.provider,
        "response": response.content,
        "usage": response.usage.model_dump(),
    }
