"""Configuration management for the Shop Chat Gateway.

Supports a YAML configuration file and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClaudeSettings(BaseSettings):
    """Anthropic Claude backend."""
    api_key: Optional[str] = Field(default=None)
    model: str = Field(default="claude-3-haiku-20240307")
    max_tokens: int = Field(default=2000, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="CLAUDE_",
        env_file=".env",
        extra="ignore"
    )


class GeminiSettings(BaseSettings):
    """Google Gemini backend."""
    api_key: Optional[str] = Field(default=None)
    model: str = Field(default="gemini-2.0-flash")
    max_tokens: int = Field(default=2000, gt=0)
    temperature: float = Field(default=0.7, ge=0, le=2)
    top_p: float = Field(default=0.9, ge=0, le=1)
    top_k: int = Field(default=40, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        env_file=".env",
        extra="ignore"
    )


class CloudflareSettings(BaseSettings):
    """Cloudflare Workers AI backend (REST API)."""
    account_id: Optional[str] = Field(default=None)
    api_token: Optional[str] = Field(default=None)
    api_base: str = Field(default="https://api.cloudflare.com/client/v4")
    model: str = Field(default="@cf/google/gemma-7b-it")
    max_tokens: int = Field(default=2000, gt=0)
    temperature: float = Field(default=0.7, ge=0, le=2)

    model_config = SettingsConfigDict(
        env_prefix="CLOUDFLARE_",
        env_file=".env",
        extra="ignore"
    )


class OpenAISettings(BaseSettings):
    """OpenAI / Azure OpenAI backends (via LlamaIndex)."""
    api_key: Optional[str] = Field(default=None)
    api_base: Optional[str] = Field(default=None)
    api_version: Optional[str] = Field(default="2024-02-15-preview")
    deployment_name: Optional[str] = Field(default=None, description="Azure deployment name")
    model: str = Field(default="gpt-4o-mini")
    max_tokens: int = Field(default=2000, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="OPENAI_",
        env_file=".env",
        extra="ignore"
    )


class LLMSettings(BaseSettings):
    """LLM provider configuration."""
    provider: str = Field(
        default="claude",
        description="Default provider: claude, gemini, cloudflare, openai, azure_openai, mock"
    )
    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)
    gemini: GeminiSettings = Field(default_factory=GeminiSettings)
    cloudflare: CloudflareSettings = Field(default_factory=CloudflareSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore"
    )


class MCPSettings(BaseSettings):
    """MCP capability client configuration."""
    primary_url: Optional[str] = Field(default=None, description="Storefront MCP endpoint")
    scoped_url: Optional[str] = Field(default=None, description="Customer MCP endpoint")
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0, description="Backoff base in seconds")
    timeout: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        extra="ignore"
    )


class ChatSettings(BaseSettings):
    """Conversation orchestration configuration."""
    max_tokens: int = Field(default=2000, gt=0)
    temperature: float = Field(default=0.7, ge=0, le=2)
    system_prompt: Optional[str] = Field(default=None)
    product_search_tool: str = Field(default="search_shop_catalog")
    default_search_context: str = Field(default="User is looking for products")
    max_products_to_display: int = Field(default=3, ge=0)

    # Conversation store
    max_conversation_length: int = Field(default=50)
    conversation_ttl_minutes: int = Field(default=60)

    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    llm: LLMSettings = Field(default_factory=LLMSettings)
    mcp: MCPSettings = Field(default_factory=MCPSettings)
    chat: ChatSettings = Field(default_factory=ChatSettings)

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file, falling back to defaults."""
        data = load_yaml_config(path)
        return cls(**data)


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("GATEWAY_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
