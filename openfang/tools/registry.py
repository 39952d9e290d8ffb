"""Registry for safe tool registration and execution."""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from pydantic import ValidationError, create_model

from openfang.db import Database
from openfang.errors import ToolExecutionError
from openfang.models import ToolSpec
from openfang.tools.base import Tool

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Explicit registry of safe tools."""

    def __init__(self, db: Database | None = None, disabled: Iterable[str] = ()) -> None:
        self._db = db
        self._tools: dict[str, Tool] = {}
        self._disabled: set[str] = set(disabled)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def set_enabled(self, tool_name: str, enabled: bool) -> None:
        if enabled:
            self._disabled.discard(tool_name)
        else:
            self._disabled.add(tool_name)

    def is_enabled(self, tool_name: str) -> bool:
        return tool_name in self._tools and tool_name not in self._disabled

    def list_enabled(self) -> list[ToolSpec]:
        return [
            ToolSpec(name=tool.name, description=tool.description, input_schema=tool.parameters_schema)
            for tool in self._tools.values()
            if tool.name not in self._disabled
        ]

    async def execute(self, tool_name: str, arguments: dict[str, Any]) -> str:
        """Run a tool and return its result as text.

        Every failure mode (unknown, disabled, invalid input, tool crash) is
        raised as ToolExecutionError so the caller can hand it back to the model.
        """

        tool = self._tools.get(tool_name)
        if tool is None:
            raise ToolExecutionError(f"Unknown tool: {tool_name}")
        if tool_name in self._disabled:
            raise ToolExecutionError(f"Tool {tool_name} is disabled")

        try:
            validated = _validate_json_schema(tool.parameters_schema, arguments)
        except ValueError as exc:
            self._log(tool_name, arguments, {"error": str(exc)}, succeeded=False)
            raise ToolExecutionError(str(exc)) from exc

        try:
            result = await tool.run(**validated)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Tool %s failed: %s", tool_name, exc)
            self._log(tool_name, validated, {"error": str(exc)}, succeeded=False)
            raise ToolExecutionError(str(exc) or type(exc).__name__) from exc

        self._log(tool_name, validated, result, succeeded=True)
        return result if isinstance(result, str) else json.dumps(result, default=str)

    def _log(self, tool_name: str, tool_input: dict[str, Any], output: Any, succeeded: bool) -> None:
        if self._db is not None:
            self._db.log_tool_execution(tool_name, tool_input, output, succeeded=succeeded)


def _validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    props = schema.get("properties", {})
    required = set(schema.get("required", []))
    fields: dict[str, tuple[type[Any], Any]] = {}
    for name, config in props.items():
        typ = _python_type(config.get("type", "string"))
        default = ... if name in required else None
        fields[name] = (typ | None if default is None else typ, default)

    model = create_model("ToolInputModel", **fields)
    try:
        value = model(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid input for tool: {exc}") from exc
    return value.model_dump(exclude_none=True)


def _python_type(schema_type: str) -> type[Any]:
    mapping: dict[str, type[Any]] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    return mapping.get(schema_type, str)
