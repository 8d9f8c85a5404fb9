"""Local tools every run gets regardless of the catalog."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agent_run_engine.tools.registry import ToolRegistry

DATETIME_TOOL_ID = "utility_get_current_datetime"
CALCULATOR_TOOL_ID = "calculator"

DATETIME_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "timezone": {
            "type": "string",
            "description": "IANA timezone name, e.g. 'Europe/Paris'. Defaults to UTC.",
        },
    },
    "additionalProperties": False,
}

CALCULATOR_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "op": {
            "type": "string",
            "enum": ["add", "subtract", "multiply", "divide"],
            "description": "Arithmetic operation",
        },
        "a": {"type": "number", "description": "Left operand"},
        "b": {"type": "number", "description": "Right operand"},
    },
    "required": ["op", "a", "b"],
    "additionalProperties": False,
}


def get_current_datetime(arguments: dict[str, Any]) -> dict[str, Any]:
    name = arguments.get("timezone") or "UTC"
    try:
        tz = timezone.utc if name == "UTC" else ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name}") from exc
    now = datetime.now(tz)
    return {"datetime": now.isoformat(), "timezone": name}


def calculate(arguments: dict[str, Any]) -> dict[str, Any]:
    op, a, b = arguments["op"], arguments["a"], arguments["b"]
    if op == "add":
        result = a + b
    elif op == "subtract":
        result = a - b
    elif op == "multiply":
        result = a * b
    else:
        if b == 0:
            raise ZeroDivisionError("Division by zero")
        result = a / b
    return {"result": result}


def register_builtin_tools(registry: ToolRegistry) -> None:
    """Register the built-in tools on ``registry``."""
    registry.register_function(
        DATETIME_TOOL_ID,
        "Get the current date and time in ISO-8601 format.",
        DATETIME_SCHEMA,
        get_current_datetime,
    )
    registry.register_function(
        CALCULATOR_TOOL_ID,
        "Perform basic arithmetic on two numbers.",
        CALCULATOR_SCHEMA,
        calculate,
    )
