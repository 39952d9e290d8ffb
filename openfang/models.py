"""Core domain models used across layers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL_RESULT = "tool_result"

ORIGIN_CHAT = "chat"
ORIGIN_BOT_DM = "bot-dm"

KIND_RECURRING = "recurring"
KIND_ONE_SHOT = "one_shot"


class Continuation(str, Enum):
    """Whether the model wants to keep acting after a response."""

    STOP = "stop"
    MORE = "more"


@dataclass(slots=True)
class TextSegment:
    """Plain text produced by the model."""

    text: str


@dataclass(slots=True)
class ToolInvocation:
    """Tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass(slots=True)
class ToolResultSegment:
    """Outcome of one tool invocation, keyed by invocation id."""

    tool_id: str
    content: str
    is_error: bool = False


Segment = Union[TextSegment, ToolInvocation]
MessageContent = Union[str, list[Any]]


@dataclass(slots=True)
class Usage:
    """Token counts reported by a provider."""

    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: Usage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


@dataclass(slots=True)
class ProviderResponse:
    """Provider-neutral result of one chat-completion call."""

    segments: list[Segment] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    continuation: Continuation = Continuation.STOP

    @property
    def text(self) -> str:
        return "".join(s.text for s in self.segments if isinstance(s, TextSegment))

    @property
    def tool_invocations(self) -> list[ToolInvocation]:
        return [s for s in self.segments if isinstance(s, ToolInvocation)]


@dataclass(slots=True)
class ChatMessage:
    """One message of a conversation in provider-neutral form."""

    role: str
    content: MessageContent
    model: str | None = None


@dataclass(slots=True)
class ToolSpec:
    """Tool definition offered to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(slots=True)
class Conversation:
    """Persisted conversation metadata."""

    id: str
    origin: str
    created_at: datetime
    updated_at: datetime
    external_user_id: str | None = None
    title: str | None = None


@dataclass(slots=True)
class Schedule:
    """Represents a persisted schedule (recurring task or one-shot reminder)."""

    id: int
    kind: str
    prompt: str
    next_run_at: datetime
    enabled: bool = True
    cron_expr: str | None = None
    timezone: str = "UTC"
    run_at: datetime | None = None
    last_run_at: datetime | None = None
    tools_enabled: bool = True
    recipient: str | None = None
    created_at: datetime | None = None

    @property
    def is_recurring(self) -> bool:
        return self.kind == KIND_RECURRING


def segment_to_dict(segment: Any) -> dict[str, Any]:
    """Serialize a content segment to its stored JSON shape."""

    if isinstance(segment, TextSegment):
        return {"type": "text", "text": segment.text}
    if isinstance(segment, ToolInvocation):
        return {"type": "tool_use", "id": segment.id, "name": segment.name, "input": segment.input}
    if isinstance(segment, ToolResultSegment):
        return {
            "type": "tool_result",
            "tool_use_id": segment.tool_id,
            "content": segment.content,
            "is_error": segment.is_error,
        }
    raise TypeError(f"Unsupported segment type: {type(segment).__name__}")


def segment_from_dict(data: dict[str, Any]) -> Any:
    kind = data.get("type")
    if kind == "text":
        return TextSegment(text=str(data.get("text", "")))
    if kind == "tool_use":
        return ToolInvocation(id=str(data["id"]), name=str(data["name"]), input=dict(data.get("input") or {}))
    if kind == "tool_result":
        return ToolResultSegment(
            tool_id=str(data["tool_use_id"]),
            content=str(data.get("content", "")),
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"Unknown segment type: {kind!r}")


def content_to_json(content: MessageContent) -> str:
    if isinstance(content, str):
        return json.dumps(content)
    return json.dumps([segment_to_dict(segment) for segment in content])


def content_from_json(raw: str) -> MessageContent:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return raw
    if isinstance(parsed, list):
        return [segment_from_dict(item) for item in parsed if isinstance(item, dict)]
    if isinstance(parsed, str):
        return parsed
    return raw
