"""Provider selection."""

from __future__ import annotations

import httpx

from openfang.config import Settings
from openfang.llm.anthropic import AnthropicProvider
from openfang.llm.base import LLMProvider
from openfang.llm.openai_compat import OpenAICompatibleProvider


def build_provider(settings: Settings, client: httpx.AsyncClient | None = None) -> LLMProvider:
    """Construct the adapter for the configured backend."""

    if settings.ai_provider == "openai":
        if not settings.openai_api_key.strip():
            raise ValueError("OPENAI_API_KEY is empty. Set it or switch AI_PROVIDER to anthropic.")
        return OpenAICompatibleProvider(settings, client=client)
    return AnthropicProvider(settings, client=client)
