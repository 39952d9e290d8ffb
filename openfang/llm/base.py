"""LLM provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx

from openfang.errors import ProviderAdapterError
from openfang.models import ChatMessage, ProviderResponse, ToolSpec, Usage


class LLMProvider(ABC):
    """Abstract model provider used by the agent runtime.

    Implementations own one ``httpx.AsyncClient``. Callers may inject a client
    (tests use ``httpx.MockTransport``); ``reset`` rebuilds it and ``aclose``
    releases it.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or self._build_client()

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    @abstractmethod
    def _build_client(self) -> httpx.AsyncClient:
        """Create the HTTP client for this backend."""

    @abstractmethod
    async def complete(
        self,
        model: str,
        system_prompt: str,
        messages: list[ChatMessage],
        tools: list[ToolSpec] | None = None,
    ) -> ProviderResponse:
        """Run one chat completion and normalize the result."""

    async def reset(self, client: httpx.AsyncClient | None = None) -> None:
        """Close the current client and start over with a fresh one."""

        await self.aclose()
        self._client = client or self._build_client()

    async def aclose(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()


def parse_usage(raw: Any, input_key: str, output_key: str) -> Usage:
    """Read token counts from a provider ``usage`` object.

    A missing or null object counts as zero usage; anything else that is not
    an object with integer-like counts is a malformed payload.
    """

    if raw is None:
        return Usage()
    if not isinstance(raw, dict):
        raise ProviderAdapterError(f"Provider usage is not an object: {raw!r}")
    try:
        return Usage(input_tokens=int(raw.get(input_key) or 0), output_tokens=int(raw.get(output_key) or 0))
    except (TypeError, ValueError) as exc:
        raise ProviderAdapterError(f"Provider usage has non-numeric token counts: {raw!r}") from exc
