"""Time utility tool."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from openfang.tools.base import Tool


class GetCurrentTimeTool(Tool):
    """Returns the current time, in UTC and optionally a named timezone."""

    name = "get_current_time"
    description = (
        "Get the current date/time in ISO-8601 format. "
        "Pass an IANA timezone (e.g. America/New_York) to also get local time."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "timezone": {"type": "string", "description": "Optional IANA timezone name."},
        },
        "additionalProperties": False,
    }

    async def run(self, **kwargs: Any) -> dict[str, str]:
        now = datetime.now(timezone.utc)
        result = {"utc_time": now.isoformat()}
        tz_name = kwargs.get("timezone")
        if tz_name:
            try:
                result["local_time"] = now.astimezone(ZoneInfo(tz_name)).isoformat()
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError(f"Unknown timezone: {tz_name}") from exc
            result["timezone"] = tz_name
        return result
