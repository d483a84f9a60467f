"""
agent/response_schema.py — Assistant response contract

The JSON schema every assistant response must satisfy, and the
"open-agent" tool the model is forced to call to deliver it.
"""

from __future__ import annotations

import copy
from typing import Any

from agentpass.agent.plan import PLAN_STATUSES
from agentpass.brain.types import ToolSchema

RESPONSE_TOOL_NAME = "open-agent"

COMMAND_SCHEMA: dict[str, Any] = {
    "type": ["object", "null"],
    "additionalProperties": False,
    "properties": {
        "reason": {"type": "string"},
        "shell": {"type": "string"},
        "run": {"type": "string"},
        "cwd": {"type": "string"},
        "timeout_sec": {"type": "number", "exclusiveMinimum": 0},
        "filter_regex": {"type": "string"},
        "tail_lines": {"type": "integer", "minimum": 0},
        "max_bytes": {"type": "integer", "minimum": 1},
    },
}

PLAN_STEP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["id", "title", "status"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "title": {"type": "string"},
        "status": {"type": "string", "enum": list(PLAN_STATUSES)},
        "priority": {"type": ["number", "null"]},
        "age": {"type": "integer", "minimum": 0},
        "waitingForId": {"type": "array", "items": {"type": "string"}},
        "command": COMMAND_SCHEMA,
        "observation": {"type": ["object", "null"]},
    },
}

RESPONSE_JSON_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "AssistantResponse",
    "type": "object",
    "additionalProperties": False,
    "required": ["message", "plan"],
    "properties": {
        "message": {"type": "string"},
        "plan": {"type": "array", "items": PLAN_STEP_SCHEMA},
    },
}


def build_response_tool() -> ToolSchema:
    parameters = copy.deepcopy(RESPONSE_JSON_SCHEMA)
    parameters.pop("$schema", None)
    parameters.pop("title", None)
    return ToolSchema(
        name=RESPONSE_TOOL_NAME,
        description=(
            "Deliver your reply: a markdown `message` for the human and the full "
            "`plan` of steps. Steps with a `command` are executed by the runtime."
        ),
        parameters=parameters,
    )
