"""Application configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ANTHROPIC_BASE_URL = "https://api.anthropic.com"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"
DEFAULT_OPENAI_MODEL = "gpt-4.1"
DEFAULT_SYSTEM_PROMPT = "You are OpenFang, a helpful personal AI assistant."


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ai_provider: Literal["anthropic", "openai"] = Field(default="anthropic", alias="AI_PROVIDER")
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    anthropic_base_url: str = Field(default=DEFAULT_ANTHROPIC_BASE_URL, alias="ANTHROPIC_BASE_URL")
    anthropic_max_tokens: int = Field(default=4096, alias="ANTHROPIC_MAX_TOKENS")
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    # Any OpenAI-compatible endpoint works here, e.g. https://openrouter.ai/api/v1
    openai_base_url: str = Field(default=DEFAULT_OPENAI_BASE_URL, alias="OPENAI_BASE_URL")
    model: str = Field(default="", alias="MODEL")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, alias="SYSTEM_PROMPT")
    request_timeout_seconds: float = Field(default=120.0, alias="REQUEST_TIMEOUT_SECONDS")
    database_path: Path = Field(default=Path("data/openfang.db"), alias="DATABASE_PATH")
    max_context_messages: int = Field(default=50, alias="MAX_CONTEXT_MESSAGES")
    max_tool_iterations: int = Field(default=10, alias="MAX_TOOL_ITERATIONS")
    scheduler_poll_interval_seconds: float = Field(default=30.0, alias="SCHEDULER_POLL_INTERVAL_SECONDS")
    default_timezone: str = Field(default="America/Los_Angeles", alias="DEFAULT_TIMEZONE")
    delivery_max_length: int = Field(default=1900, alias="DELIVERY_MAX_LENGTH")
    default_recipient: str | None = Field(default=None, alias="DEFAULT_RECIPIENT")
    # Comma-separated tool names hidden from the model.
    disabled_tools: str = Field(default="", alias="DISABLED_TOOLS")

    @model_validator(mode="after")
    def _check_anthropic_key(self) -> Settings:
        # Custom gateways may not need a key; the official endpoint does.
        official = self.anthropic_base_url.rstrip("/") == DEFAULT_ANTHROPIC_BASE_URL
        if self.ai_provider == "anthropic" and official and not self.anthropic_api_key.strip():
            raise ValueError("ANTHROPIC_API_KEY is required when using the official Anthropic endpoint.")
        return self


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def model_for_provider(settings: Settings) -> str:
    """Return the configured model, falling back to the provider default."""

    if settings.model.strip():
        return settings.model
    return DEFAULT_OPENAI_MODEL if settings.ai_provider == "openai" else DEFAULT_ANTHROPIC_MODEL


def disabled_tool_names(settings: Settings) -> frozenset[str]:
    """Return the set of tool names disabled via DISABLED_TOOLS."""

    return frozenset(n.strip() for n in settings.disabled_tools.split(",") if n.strip())
