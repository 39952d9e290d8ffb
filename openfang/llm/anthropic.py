"""Anthropic Messages API implementation of LLMProvider."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from openfang.config import Settings
from openfang.errors import ProviderAdapterError
from openfang.llm.base import LLMProvider, parse_usage
from openfang.models import (
    ROLE_ASSISTANT,
    ROLE_TOOL_RESULT,
    ChatMessage,
    Continuation,
    ProviderResponse,
    Segment,
    TextSegment,
    ToolInvocation,
    ToolResultSegment,
    ToolSpec,
)

_LOGGER = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(LLMProvider):
    """LLM provider using Anthropic's typed content-block protocol."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        super().__init__(client)

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._settings.anthropic_base_url,
            timeout=httpx.Timeout(self._settings.request_timeout_seconds),
        )

    async def complete(
        self,
        model: str,
        system_prompt: str,
        messages: list[ChatMessage],
        tools: list[ToolSpec] | None = None,
    ) -> ProviderResponse:
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": self._settings.anthropic_max_tokens,
            "system": system_prompt,
            "messages": to_anthropic_messages(messages),
        }
        if tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema} for t in tools
            ]

        try:
            response = await self._client.post(
                "/v1/messages",
                headers={
                    "x-api-key": self._settings.anthropic_api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "content-type": "application/json",
                },
                json=payload,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderAdapterError(
                f"Anthropic API returned {exc.response.status_code}: {exc.response.text[:300]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderAdapterError(f"Anthropic API request failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderAdapterError(f"Anthropic API returned invalid JSON: {exc}") from exc

        return parse_anthropic_response(data)


def parse_anthropic_response(data: dict[str, Any]) -> ProviderResponse:
    """Normalize a Messages API payload into segments, usage and continuation."""

    if not isinstance(data, dict) or not isinstance(data.get("content"), list):
        raise ProviderAdapterError("Anthropic API response is missing a content list")

    segments: list[Segment] = []
    for block in data["content"]:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            segments.append(TextSegment(text=str(block.get("text") or "")))
        elif block_type == "tool_use":
            tool_input = block.get("input")
            segments.append(
                ToolInvocation(
                    id=str(block.get("id", "")),
                    name=str(block.get("name", "")),
                    input=tool_input if isinstance(tool_input, dict) else {"value": tool_input},
                )
            )

    usage = parse_usage(data.get("usage"), "input_tokens", "output_tokens")
    stop_reason = data.get("stop_reason")
    _LOGGER.info(
        "LLM response: stop_reason=%r blocks=%d tool_uses=%d",
        stop_reason,
        len(segments),
        sum(1 for s in segments if isinstance(s, ToolInvocation)),
    )
    return ProviderResponse(
        segments=segments,
        usage=usage,
        continuation=Continuation.STOP if stop_reason == "end_turn" else Continuation.MORE,
    )


def to_anthropic_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Render provider-neutral history as Messages API turns."""

    rendered: list[dict[str, Any]] = []
    for message in messages:
        if message.role == ROLE_TOOL_RESULT:
            blocks = [
                {
                    "type": "tool_result",
                    "tool_use_id": part.tool_id,
                    "content": part.content,
                    "is_error": part.is_error,
                }
                for part in message.content
                if isinstance(part, ToolResultSegment)
            ]
            if blocks:
                rendered.append({"role": "user", "content": blocks})
        elif message.role == ROLE_ASSISTANT:
            if isinstance(message.content, str):
                if message.content:
                    rendered.append({"role": "assistant", "content": message.content})
                continue
            blocks = []
            for part in message.content:
                if isinstance(part, TextSegment) and part.text:
                    blocks.append({"type": "text", "text": part.text})
                elif isinstance(part, ToolInvocation):
                    blocks.append({"type": "tool_use", "id": part.id, "name": part.name, "input": part.input})
            if blocks:
                rendered.append({"role": "assistant", "content": blocks})
        else:
            rendered.append({"role": "user", "content": _plain_text(message.content)})
    return rendered


def _plain_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return "\n".join(part.text for part in content if isinstance(part, TextSegment))
