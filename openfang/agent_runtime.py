"""Core agent runtime: the tool-use loop shared by chat turns and schedules."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from openfang.db import Database
from openfang.errors import ProviderAdapterError, ToolExecutionError
from openfang.events import (
    EventChannel,
    EventSink,
    TextDelta,
    ToolCompleted,
    ToolStarted,
    TurnComplete,
    TurnError,
)
from openfang.llm.base import LLMProvider
from openfang.models import (
    ROLE_ASSISTANT,
    ROLE_TOOL_RESULT,
    ROLE_USER,
    ChatMessage,
    Continuation,
    TextSegment,
    ToolInvocation,
    ToolResultSegment,
    ToolSpec,
    Usage,
)
from openfang.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
EMPTY_REPLY = "I processed your request but have no text response."


@dataclass(slots=True)
class LoopResult:
    """Outcome of one run of the tool-use loop."""

    text: str = ""
    usage: Usage = field(default_factory=Usage)
    iterations: int = 0
    truncated: bool = False
    error: str | None = None
    aborted: bool = False


class AgentRuntime:
    """Drives model calls, tool execution and persistence for one turn at a time.

    The runtime itself holds no per-turn state, so any number of turns for
    different conversations may run concurrently on the same instance.
    """

    def __init__(
        self,
        db: Database,
        llm: LLMProvider,
        tool_registry: ToolRegistry,
        model: str,
        system_prompt: str,
        max_context_messages: int = 50,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        self._db = db
        self._llm = llm
        self._tool_registry = tool_registry
        self._model = model
        self._system_prompt = system_prompt
        self._max_context_messages = max_context_messages
        self._max_iterations = max_iterations

    @property
    def model(self) -> str:
        return self._model

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    @property
    def tool_registry(self) -> ToolRegistry:
        return self._tool_registry

    async def run_loop(
        self,
        messages: list[ChatMessage],
        sink: EventSink,
        system_prompt: str | None = None,
        tools: list[ToolSpec] | None = None,
        conversation_id: str | None = None,
    ) -> LoopResult:
        """Call the model until it stops asking for tools or the cap is hit.

        When ``conversation_id`` is given, each assistant message and its paired
        tool results are persisted before the next model call.
        """

        working = list(messages)
        result = LoopResult()
        system_prompt = system_prompt if system_prompt is not None else self._system_prompt

        while True:
            if result.iterations >= self._max_iterations:
                result.truncated = True
                LOGGER.warning(
                    "Tool loop hit the %d-iteration cap; returning accumulated text", self._max_iterations
                )
                break

            try:
                response = await self._llm.complete(self._model, system_prompt, working, tools)
            except ProviderAdapterError as exc:
                LOGGER.error("Model call failed on iteration %d: %s", result.iterations + 1, exc)
                result.error = str(exc)
                await sink.send(TurnError(message=str(exc)))
                return result

            result.iterations += 1
            result.usage.add(response.usage)

            tool_results: list[ToolResultSegment] = []
            for segment in response.segments:
                if isinstance(segment, TextSegment):
                    if segment.text:
                        result.text += segment.text
                        await sink.send(TextDelta(text=segment.text))
                elif isinstance(segment, ToolInvocation):
                    tool_results.append(await self._invoke_tool(segment, sink))

            assistant_message = ChatMessage(role=ROLE_ASSISTANT, content=list(response.segments), model=self._model)
            working.append(assistant_message)
            if conversation_id is not None:
                self._db.append_message(conversation_id, ROLE_ASSISTANT, assistant_message.content, self._model)

            if tool_results:
                tool_message = ChatMessage(role=ROLE_TOOL_RESULT, content=tool_results)
                working.append(tool_message)
                if conversation_id is not None:
                    self._db.append_message(conversation_id, ROLE_TOOL_RESULT, tool_results)

            if sink.aborted:
                LOGGER.info("Turn aborted by consumer after iteration %d", result.iterations)
                result.aborted = True
                return result

            if not tool_results or response.continuation is Continuation.STOP:
                break

        await sink.send(
            TurnComplete(
                text=result.text,
                input_tokens=result.usage.input_tokens,
                output_tokens=result.usage.output_tokens,
            )
        )
        return result

    async def _invoke_tool(self, invocation: ToolInvocation, sink: EventSink) -> ToolResultSegment:
        await sink.send(ToolStarted(tool_id=invocation.id, tool_name=invocation.name, input=invocation.input))

        started = time.monotonic()
        is_error = False
        try:
            output = await self._tool_registry.execute(invocation.name, invocation.input)
        except ToolExecutionError as exc:
            output = f"Error: {exc}"
            is_error = True
        duration_ms = int((time.monotonic() - started) * 1000)

        await sink.send(
            ToolCompleted(tool_id=invocation.id, result=output, duration_ms=duration_ms, is_error=is_error)
        )
        return ToolResultSegment(tool_id=invocation.id, content=output, is_error=is_error)

    async def run_turn(self, conversation_id: str, user_text: str, sink: EventSink) -> LoopResult:
        """Run one interactive turn against a persisted conversation."""

        self._db.append_message(conversation_id, ROLE_USER, user_text)
        history = _trim_to_user_start(self._db.load_recent_history(conversation_id, self._max_context_messages))

        result = await self.run_loop(
            history,
            sink,
            tools=self._tool_registry.list_enabled(),
            conversation_id=conversation_id,
        )

        if result.error is None and not result.aborted:
            self._db.set_title_if_missing(conversation_id, user_text)
        return result

    def stream_turn(self, conversation_id: str, user_text: str, maxsize: int = 32) -> EventChannel:
        """Start a turn in the background and return its event channel.

        Consumers that may stop reading early should use the channel as an
        async context manager (or call ``abort()``) so the producer is released.
        """

        channel = EventChannel(maxsize=maxsize)
        channel.producer = asyncio.create_task(
            self._produce(conversation_id, user_text, channel),
            name=f"turn-{conversation_id}",
        )
        return channel

    async def _produce(self, conversation_id: str, user_text: str, channel: EventChannel) -> None:
        try:
            await self.run_turn(conversation_id, user_text, channel)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Turn failed for conversation %s", conversation_id)
            await channel.send(TurnError(message=str(exc) or "Unknown error"))
        finally:
            await channel.close()

    async def respond(self, conversation_id: str, user_text: str) -> str:
        """Run a turn and return the reply as a single string."""

        reply = ""
        async with self.stream_turn(conversation_id, user_text) as channel:
            async for event in channel:
                if isinstance(event, TextDelta):
                    reply += event.text
                elif isinstance(event, TurnError):
                    notice = f"Sorry, something went wrong: {event.message}"
                    reply = f"{reply}\n\n{notice}" if reply else notice
        return reply or EMPTY_REPLY


def _trim_to_user_start(history: list[ChatMessage]) -> list[ChatMessage]:
    # A truncated window must not open with an assistant or tool-result message.
    for index, message in enumerate(history):
        if message.role == ROLE_USER:
            return history[index:]
    return []
