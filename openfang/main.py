"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging

from openfang.agent_runtime import EMPTY_REPLY, AgentRuntime
from openfang.config import Settings, disabled_tool_names, load_settings, model_for_provider
from openfang.db import Database
from openfang.delivery import ConsoleDelivery
from openfang.events import TextDelta, ToolCompleted, ToolStarted, TurnComplete, TurnError
from openfang.executor import ScheduleExecutor
from openfang.llm.factory import build_provider
from openfang.models import ORIGIN_CHAT
from openfang.scheduler import TaskScheduler
from openfang.tools.registry import ToolRegistry
from openfang.tools.schedule_tool import (
    CreateScheduleTool,
    DeleteScheduleTool,
    ListSchedulesTool,
    SetReminderTool,
)
from openfang.tools.time_tool import GetCurrentTimeTool

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)

EXIT_COMMANDS = frozenset({"/quit", "/exit"})


def build_registry(settings: Settings, db: Database) -> ToolRegistry:
    """Register the built-in tools."""

    tools = ToolRegistry(db, disabled=disabled_tool_names(settings))
    tools.register(GetCurrentTimeTool())
    tools.register(
        CreateScheduleTool(
            db,
            default_timezone=settings.default_timezone,
            default_recipient=settings.default_recipient,
        )
    )
    tools.register(SetReminderTool(db, default_recipient=settings.default_recipient))
    tools.register(ListSchedulesTool(db))
    tools.register(DeleteScheduleTool(db))
    return tools


async def _chat_turn(runtime: AgentRuntime, conversation_id: str, text: str) -> None:
    streamed = False
    async with runtime.stream_turn(conversation_id, text) as channel:
        async for event in channel:
            if isinstance(event, TextDelta):
                print(event.text, end="", flush=True)
                streamed = True
            elif isinstance(event, ToolStarted):
                print(f"\n[tool] {event.tool_name} {event.input}", flush=True)
            elif isinstance(event, ToolCompleted):
                status = "error" if event.is_error else "ok"
                print(f"[tool] {status} in {event.duration_ms}ms", flush=True)
            elif isinstance(event, TurnComplete):
                if not streamed:
                    print(EMPTY_REPLY, end="")
                print(f"\n[{event.input_tokens} in / {event.output_tokens} out tokens]", flush=True)
            elif isinstance(event, TurnError):
                print(f"\nSorry, something went wrong: {event.message}", flush=True)


async def run() -> None:
    """Initialize app layers, start the scheduler, and chat on the console."""

    settings = load_settings()

    db = Database(settings.database_path)
    db.initialize()

    provider = build_provider(settings)
    tools = build_registry(settings, db)

    runtime = AgentRuntime(
        db=db,
        llm=provider,
        tool_registry=tools,
        model=model_for_provider(settings),
        system_prompt=settings.system_prompt,
        max_context_messages=settings.max_context_messages,
        max_iterations=settings.max_tool_iterations,
    )
    executor = ScheduleExecutor(runtime)
    scheduler = TaskScheduler(
        db=db,
        executor=executor,
        delivery=ConsoleDelivery(max_len=settings.delivery_max_length),
        poll_interval_seconds=settings.scheduler_poll_interval_seconds,
    )

    scheduler_task = asyncio.create_task(scheduler.run_forever(), name="task-scheduler")
    conversation_id = db.find_or_create_conversation(ORIGIN_CHAT)
    LOGGER.info("Chatting in conversation %s using %s", conversation_id, runtime.model)

    try:
        while True:
            line = (await asyncio.to_thread(input, "> ")).strip()
            if not line:
                continue
            if line in EXIT_COMMANDS:
                break
            await _chat_turn(runtime, conversation_id, line)
    except EOFError:
        pass
    finally:
        scheduler.stop()
        await scheduler_task
        await provider.aclose()
        LOGGER.info("Assistant shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
