"""Tools that let the model manage recurring tasks and reminders."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from openfang.db import Database
from openfang.errors import InvalidScheduleDefinition
from openfang.models import KIND_ONE_SHOT, KIND_RECURRING
from openfang.scheduler import next_occurrence
from openfang.tools.base import Tool

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _ScheduleTool(Tool):
    def __init__(self, db: Database, default_recipient: str | None = None, clock: Clock = _utc_now) -> None:
        self._db = db
        self._default_recipient = default_recipient
        self._clock = clock


class CreateScheduleTool(_ScheduleTool):
    """Create a recurring task driven by a cron expression."""

    name = "create_schedule"
    description = (
        "Create a recurring scheduled task. The task will run on the cron schedule and "
        "send the result to the user. Use for daily briefings, periodic checks, etc."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "prompt": {
                "type": "string",
                "description": "What to do when the schedule fires (sent to the AI as a prompt).",
            },
            "cron_expr": {
                "type": "string",
                "description": 'Cron expression (5-field). E.g. "0 9 * * 1-5" for weekdays at 9am.',
            },
            "timezone": {
                "type": "string",
                "description": 'IANA timezone, e.g. "America/New_York" or "UTC".',
            },
            "tools_enabled": {
                "type": "boolean",
                "description": "Whether the AI may use tools when running this task (default: true).",
            },
        },
        "required": ["prompt", "cron_expr"],
        "additionalProperties": False,
    }

    def __init__(
        self,
        db: Database,
        default_timezone: str = "UTC",
        default_recipient: str | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        super().__init__(db, default_recipient=default_recipient, clock=clock)
        self._default_timezone = default_timezone

    async def run(self, **kwargs: Any) -> str:
        prompt = kwargs["prompt"]
        cron_expr = kwargs["cron_expr"]
        timezone_name = kwargs.get("timezone") or self._default_timezone
        tools_enabled = kwargs.get("tools_enabled") is not False

        try:
            next_run_at = next_occurrence(cron_expr, timezone_name, self._clock())
        except InvalidScheduleDefinition as exc:
            return json.dumps({"success": False, "error": str(exc)})

        schedule_id = self._db.create_schedule(
            kind=KIND_RECURRING,
            prompt=prompt,
            next_run_at=next_run_at,
            cron_expr=cron_expr,
            timezone_name=timezone_name,
            tools_enabled=tools_enabled,
            recipient=self._default_recipient,
        )
        return json.dumps(
            {
                "success": True,
                "id": schedule_id,
                "prompt": prompt,
                "cronExpr": cron_expr,
                "timezone": timezone_name,
                "nextRunAt": next_run_at.isoformat(),
                "toolsEnabled": tools_enabled,
            }
        )


class SetReminderTool(_ScheduleTool):
    """Create a one-shot reminder delivered verbatim at a given time."""

    name = "set_reminder"
    description = "Set a one-time reminder. The message will be sent to the user at the specified time."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "message": {"type": "string", "description": "The reminder message."},
            "delay_minutes": {
                "type": "number",
                "description": "Minutes from now to send the reminder. Use this OR absolute_time.",
            },
            "absolute_time": {
                "type": "string",
                "description": 'ISO 8601 datetime, e.g. "2026-02-17T14:00:00-08:00". Use this OR delay_minutes.',
            },
        },
        "required": ["message"],
        "additionalProperties": False,
    }

    async def run(self, **kwargs: Any) -> str:
        message = kwargs["message"]
        delay_minutes = kwargs.get("delay_minutes")
        absolute_time = kwargs.get("absolute_time")
        now = self._clock()

        if delay_minutes:
            run_at = now + timedelta(minutes=float(delay_minutes))
        elif absolute_time:
            try:
                run_at = datetime.fromisoformat(absolute_time.replace("Z", "+00:00"))
            except ValueError:
                return json.dumps({"success": False, "error": "Invalid datetime format"})
            if run_at.tzinfo is None:
                run_at = run_at.replace(tzinfo=timezone.utc)
        else:
            return json.dumps({"success": False, "error": "Provide either delay_minutes or absolute_time"})

        if run_at <= now:
            return json.dumps({"success": False, "error": "Reminder time must be in the future"})

        schedule_id = self._db.create_schedule(
            kind=KIND_ONE_SHOT,
            prompt=message,
            next_run_at=run_at,
            run_at=run_at,
            tools_enabled=False,
            recipient=self._default_recipient,
        )
        return json.dumps(
            {
                "success": True,
                "id": schedule_id,
                "message": message,
                "runAt": run_at.astimezone(timezone.utc).isoformat(),
            }
        )


class ListSchedulesTool(_ScheduleTool):
    """List active schedules."""

    name = "list_schedules"
    description = "List all active scheduled tasks and reminders."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {},
        "additionalProperties": False,
    }

    async def run(self, **kwargs: Any) -> str:
        schedules = self._db.list_schedules(enabled_only=True)
        formatted = [
            {
                "id": s.id,
                "kind": s.kind,
                "prompt": s.prompt,
                "cronExpr": s.cron_expr,
                "timezone": s.timezone,
                "nextRunAt": s.next_run_at.isoformat(),
                "toolsEnabled": s.tools_enabled,
            }
            for s in schedules
        ]
        return json.dumps({"count": len(formatted), "schedules": formatted})


class DeleteScheduleTool(_ScheduleTool):
    """Delete a schedule by id."""

    name = "delete_schedule"
    description = "Cancel/delete a scheduled task or reminder by ID."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "id": {"type": "integer", "description": "The schedule ID to delete."},
        },
        "required": ["id"],
        "additionalProperties": False,
    }

    async def run(self, **kwargs: Any) -> str:
        schedule_id = int(kwargs["id"])
        existing = self._db.get_schedule(schedule_id)
        if existing is None:
            return json.dumps({"success": False, "error": "Schedule not found"})
        self._db.delete_schedule(schedule_id)
        return json.dumps(
            {"success": True, "deleted": {"id": schedule_id, "kind": existing.kind, "prompt": existing.prompt}}
        )
