"""Turn stream events and the bounded channel that carries them."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol, Union


@dataclass(slots=True)
class TextDelta:
    type: ClassVar[str] = "text_delta"

    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(slots=True)
class ToolStarted:
    type: ClassVar[str] = "tool_started"

    tool_id: str
    tool_name: str
    input: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "toolId": self.tool_id, "toolName": self.tool_name, "input": self.input}


@dataclass(slots=True)
class ToolCompleted:
    type: ClassVar[str] = "tool_completed"

    tool_id: str
    result: str
    duration_ms: int
    is_error: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "toolId": self.tool_id,
            "result": self.result,
            "durationMs": self.duration_ms,
            "isError": self.is_error,
        }


@dataclass(slots=True)
class TurnComplete:
    type: ClassVar[str] = "turn_complete"

    text: str
    input_tokens: int
    output_tokens: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "text": self.text,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
        }


@dataclass(slots=True)
class TurnError:
    type: ClassVar[str] = "error"

    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message}


StreamEvent = Union[TextDelta, ToolStarted, ToolCompleted, TurnComplete, TurnError]


class EventSink(Protocol):
    """Consumer side of a turn as seen by the loop engine."""

    @property
    def aborted(self) -> bool: ...

    async def send(self, event: StreamEvent) -> None: ...


class DiscardingSink:
    """Sink for unattended runs where only the final text matters."""

    aborted = False

    async def send(self, event: StreamEvent) -> None:
        return None


_CLOSED = object()


class EventChannel:
    """Bounded, ordered event channel from one turn to one consumer.

    ``send`` suspends while the queue is full, so a slow consumer throttles
    the producer. ``abort`` is called by the consumer side: pending and
    future events are dropped and iteration ends. Used as an async context
    manager, the channel is aborted when the consumer leaves before the end.
    """

    def __init__(self, maxsize: int = 32) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._aborted = False
        self._closed = False
        self.producer: asyncio.Task[Any] | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: StreamEvent) -> None:
        if self._aborted:
            return
        if self._closed:
            raise RuntimeError("Cannot send on a closed event channel")
        await self._queue.put(event)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._aborted:
            self._drain()
            self._queue.put_nowait(_CLOSED)
        else:
            await self._queue.put(_CLOSED)

    def abort(self) -> None:
        self._aborted = True
        # Frees a producer blocked on a full queue; a pending close() then
        # lands its sentinel in the emptied slot.
        self._drain()

    def _drain(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()

    async def __aenter__(self) -> EventChannel:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        # Leaving early must not strand the producer on a full queue.
        if not self._closed or not self._queue.empty():
            self.abort()

    def __aiter__(self) -> EventChannel:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._aborted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self._aborted:
            raise StopAsyncIteration
        return item
