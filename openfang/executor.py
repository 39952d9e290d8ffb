"""Runs a scheduled prompt through the tool-use loop without a conversation."""

from __future__ import annotations

import logging

from openfang.agent_runtime import AgentRuntime
from openfang.events import DiscardingSink
from openfang.models import ROLE_USER, ChatMessage

LOGGER = logging.getLogger(__name__)

UNATTENDED_NOTE = "This is a scheduled task running automatically. Provide a concise, useful response."


class ScheduleExecutor:
    """Adapts a single prompt into one ephemeral loop run."""

    def __init__(self, runtime: AgentRuntime, system_prompt: str | None = None) -> None:
        self._runtime = runtime
        base = system_prompt if system_prompt is not None else runtime.system_prompt
        self._system_prompt = f"{base}\n\n{UNATTENDED_NOTE}"

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    async def execute(self, prompt: str, tools_enabled: bool) -> str:
        """Return the final text for ``prompt``; usage and events are dropped."""

        tools = self._runtime.tool_registry.list_enabled() if tools_enabled else []
        result = await self._runtime.run_loop(
            [ChatMessage(role=ROLE_USER, content=prompt)],
            DiscardingSink(),
            system_prompt=self._system_prompt,
            tools=tools,
        )
        LOGGER.info(
            "Scheduled prompt finished: iterations=%d tokens_in=%d tokens_out=%d truncated=%s",
            result.iterations,
            result.usage.input_tokens,
            result.usage.output_tokens,
            result.truncated,
        )
        if result.error is not None:
            notice = f"[Scheduled task failed: {result.error}]"
            return f"{result.text}\n\n{notice}" if result.text else notice
        return result.text
