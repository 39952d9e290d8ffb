"""OpenAI-compatible chat-completions implementation of LLMProvider."""

from __future__ import annotations

import json
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

RAW_ARGUMENTS_KEY = "_raw_arguments"


class OpenAICompatibleProvider(LLMProvider):
    """LLM provider using the OpenAI chat endpoint (also served by OpenRouter)."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        super().__init__(client)

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._settings.openai_base_url,
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
            "messages": [{"role": "system", "content": system_prompt}, *to_openai_messages(messages)],
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
                }
                for t in tools
            ]
            payload["tool_choice"] = "auto"
            payload["parallel_tool_calls"] = False

        try:
            response = await self._client.post(
                "/chat/completions",
                headers={
                    "Authorization": f"Bearer {self._settings.openai_api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderAdapterError(
                f"Chat completions API returned {exc.response.status_code}: {exc.response.text[:300]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderAdapterError(f"Chat completions request failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderAdapterError(f"Chat completions API returned invalid JSON: {exc}") from exc

        return parse_openai_response(data)


def parse_openai_response(data: dict[str, Any]) -> ProviderResponse:
    """Normalize a chat-completions payload into segments, usage and continuation."""

    if not isinstance(data, dict):
        raise ProviderAdapterError("Chat completions API returned a non-object payload")

    usage = parse_usage(data.get("usage"), "prompt_tokens", "completion_tokens")

    choices = data.get("choices") or []
    if not isinstance(choices, list):
        raise ProviderAdapterError("Chat completions API returned a non-list choices field")
    choice = choices[0].get("message") if choices and isinstance(choices[0], dict) else None
    if not choice:
        _LOGGER.warning("LLM response had no message choice; treating as end of turn")
        return ProviderResponse(segments=[], usage=usage, continuation=Continuation.STOP)
    if not isinstance(choice, dict):
        raise ProviderAdapterError("Chat completions API returned a non-object message")

    content = choice.get("content") or ""
    if not isinstance(content, str):
        raise ProviderAdapterError("Chat completions API returned non-text message content")
    segments: list[Segment] = []
    if content:
        segments.append(TextSegment(text=content))

    tool_calls = choice.get("tool_calls") or []
    if not isinstance(tool_calls, list):
        raise ProviderAdapterError("Chat completions API returned a non-list tool_calls field")
    for tool_call in tool_calls:
        if not isinstance(tool_call, dict) or tool_call.get("type", "function") != "function":
            continue
        function_data = tool_call.get("function")
        if not isinstance(function_data, dict):
            raise ProviderAdapterError(f"Tool call {tool_call.get('id')!r} has no function object")
        segments.append(
            ToolInvocation(
                id=str(tool_call.get("id", "")),
                name=str(function_data.get("name", "")),
                input=parse_tool_arguments(function_data.get("arguments", "{}")),
            )
        )

    has_tools = any(isinstance(s, ToolInvocation) for s in segments)
    _LOGGER.info(
        "LLM response: finish_reason=%r content=%r tool_calls=%d",
        choices[0].get("finish_reason"),
        content[:200],
        sum(1 for s in segments if isinstance(s, ToolInvocation)),
    )
    return ProviderResponse(
        segments=segments,
        usage=usage,
        continuation=Continuation.MORE if has_tools else Continuation.STOP,
    )


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    """Decode a tool-call argument string without ever failing the turn."""

    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {RAW_ARGUMENTS_KEY: raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def to_openai_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Render provider-neutral history as chat-completions messages."""

    rendered: list[dict[str, Any]] = []
    for message in messages:
        if message.role == ROLE_TOOL_RESULT:
            rendered.extend(
                {"role": "tool", "tool_call_id": part.tool_id, "content": part.content}
                for part in message.content
                if isinstance(part, ToolResultSegment)
            )
        elif message.role == ROLE_ASSISTANT:
            if isinstance(message.content, str):
                rendered.append({"role": "assistant", "content": message.content})
                continue
            text = "".join(p.text for p in message.content if isinstance(p, TextSegment))
            tool_calls = [
                {
                    "id": p.id,
                    "type": "function",
                    "function": {"name": p.name, "arguments": json.dumps(p.input)},
                }
                for p in message.content
                if isinstance(p, ToolInvocation)
            ]
            assistant: dict[str, Any] = {"role": "assistant", "content": text or None}
            if tool_calls:
                assistant["tool_calls"] = tool_calls
            elif not text:
                assistant["content"] = ""
            rendered.append(assistant)
        else:
            content = message.content
            if not isinstance(content, str):
                content = "\n".join(p.text for p in content if isinstance(p, TextSegment))
            rendered.append({"role": "user", "content": content})
    return rendered
