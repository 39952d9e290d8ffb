from typing import Any

import pytest

from openfang.agent_runtime import AgentRuntime
from openfang.db import Database
from openfang.errors import ProviderAdapterError
from openfang.executor import UNATTENDED_NOTE, ScheduleExecutor
from openfang.models import Continuation, ProviderResponse, TextSegment, ToolInvocation, Usage
from openfang.tools.registry import ToolRegistry
from openfang.tools.time_tool import GetCurrentTimeTool


class ScriptedProvider:
    def __init__(self, *responses: Any) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def complete(self, model, system_prompt, messages, tools=None):  # noqa: ANN001, ANN201
        self.calls.append({"system_prompt": system_prompt, "messages": list(messages), "tools": tools})
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _text(value: str) -> ProviderResponse:
    return ProviderResponse(segments=[TextSegment(value)], usage=Usage(5, 5), continuation=Continuation.STOP)


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "openfang.db")
    database.initialize()
    return database


def _executor(db: Database, llm: ScriptedProvider) -> ScheduleExecutor:
    registry = ToolRegistry(db)
    registry.register(GetCurrentTimeTool())
    runtime = AgentRuntime(db=db, llm=llm, tool_registry=registry, model="m", system_prompt="Base prompt.")
    return ScheduleExecutor(runtime)


@pytest.mark.asyncio
async def test_prompt_runs_with_unattended_system_prompt_and_tools(db):
    llm = ScriptedProvider(_text("Here is your briefing."))
    executor = _executor(db, llm)

    text = await executor.execute("Summarize my day", tools_enabled=True)

    assert text == "Here is your briefing."
    assert llm.calls[0]["system_prompt"] == f"Base prompt.\n\n{UNATTENDED_NOTE}"
    assert [t.name for t in llm.calls[0]["tools"]] == ["get_current_time"]
    assert llm.calls[0]["messages"][0].content == "Summarize my day"


@pytest.mark.asyncio
async def test_tools_withheld_when_disabled(db):
    llm = ScriptedProvider(_text("ok"))

    await _executor(db, llm).execute("No tools please", tools_enabled=False)

    assert llm.calls[0]["tools"] == []


@pytest.mark.asyncio
async def test_tool_round_is_completed_before_returning(db):
    call = ProviderResponse(
        segments=[ToolInvocation(id="t1", name="get_current_time", input={})],
        usage=Usage(1, 1),
        continuation=Continuation.MORE,
    )
    llm = ScriptedProvider(call, _text("It is morning."))

    text = await _executor(db, llm).execute("What time is it?", tools_enabled=True)

    assert text == "It is morning."
    assert len(llm.calls) == 2
    assert db.list_tool_executions(limit=5)[0]["tool_name"] == "get_current_time"


@pytest.mark.asyncio
async def test_model_failure_is_reported_in_returned_text(db):
    llm = ScriptedProvider(ProviderAdapterError("rate limited", status_code=429))

    text = await _executor(db, llm).execute("brief me", tools_enabled=True)

    assert text == "[Scheduled task failed: rate limited]"


@pytest.mark.asyncio
async def test_nothing_is_persisted_to_conversations(db):
    llm = ScriptedProvider(_text("done"))

    await _executor(db, llm).execute("brief me", tools_enabled=False)

    with db._connect() as conn:
        assert conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0] == 0
