"""
agent/response_validator.py — Assistant response validation

Two layers:
  - validate_against_schema(): structural check with jsonschema, errors
    reformatted into "response.plan[0].id"-style paths the model can act on
  - validate_response(): protocol rules the schema cannot express (open
    steps need a runnable command, ids must be non-empty, and so on)

Neither layer raises on bad input. Both return every problem found.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

import jsonschema

from agentpass.agent.plan import PLAN_STATUSES, TERMINAL_STATUSES, normalize_status
from agentpass.agent.response_schema import RESPONSE_JSON_SCHEMA

_validator = jsonschema.Draft7Validator(RESPONSE_JSON_SCHEMA)
_REQUIRED_RE = re.compile(r"^'(.+)' is a required property$")


# ─────────────────────────────────────────────────────────────────────────────
# Schema layer
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class SchemaError:
    path: str
    message: str
    keyword: str
    instance_path: str

    def to_dict(self) -> dict[str, str]:
        return {
            "path": self.path,
            "message": self.message,
            "keyword": self.keyword,
            "instancePath": self.instance_path,
        }


@dataclass
class SchemaValidationResult:
    valid: bool
    errors: list[SchemaError] = field(default_factory=list)


def format_instance_path(parts) -> str:
    """["plan", 0, "id"] -> "response.plan[0].id"."""
    path = "response"
    for part in parts:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}"
    return path


def _json_pointer(parts) -> str:
    return "".join(f"/{part}" for part in parts)


def _describe(error: jsonschema.ValidationError) -> list[tuple[list, str]]:
    """Return (path parts, message) pairs for one jsonschema error."""
    parts = list(error.absolute_path)

    if error.validator == "required":
        match = _REQUIRED_RE.match(error.message)
        name = match.group(1) if match else error.message
        return [(parts, f'Missing required property "{name}".')]

    if error.validator == "additionalProperties" and isinstance(error.instance, dict):
        allowed = set((error.schema or {}).get("properties", {}))
        extras = sorted(k for k in error.instance if k not in allowed)
        return [(parts, f'Unexpected property "{extra}".') for extra in extras] or [(parts, error.message)]

    if error.validator == "enum":
        options = ", ".join(str(v) for v in error.validator_value)
        return [(parts, f"Must be one of: {options}.")]

    if error.validator == "type":
        expected = error.validator_value
        if isinstance(expected, list):
            expected = " or ".join(expected)
        return [(parts, f"Must be of type {expected}.")]

    return [(parts, error.message)]


def validate_against_schema(value: Any) -> SchemaValidationResult:
    errors: list[SchemaError] = []
    for error in sorted(_validator.iter_errors(value), key=lambda e: list(map(str, e.absolute_path))):
        for parts, message in _describe(error):
            errors.append(SchemaError(
                path=format_instance_path(parts),
                message=message,
                keyword=str(error.validator),
                instance_path=_json_pointer(parts),
            ))
    return SchemaValidationResult(valid=not errors, errors=errors)


# ─────────────────────────────────────────────────────────────────────────────
# Protocol layer
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    first_open_status: Optional[str] = None
    has_open_steps: bool = False


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _validate_step(step: Any, path: str) -> tuple[list[str], Optional[str]]:
    errors: list[str] = []
    if not isinstance(step, dict):
        return [f"{path} must be an object."], None

    if not _has_text(step.get("id")):
        hint = ' Provide an "id" value instead of "step" to satisfy the schema.' if "step" in step else ""
        errors.append(f'{path} is missing a non-empty "id" label.{hint}')

    if not _has_text(step.get("title")):
        errors.append(f'{path} is missing a non-empty "title".')

    status = normalize_status(step.get("status"))
    if not status:
        errors.append(f'{path} is missing a valid "status".')
    elif status not in PLAN_STATUSES:
        errors.append(f"{path}.status must be one of: {', '.join(PLAN_STATUSES)}.")

    open_status = status if status and status not in TERMINAL_STATUSES else None
    command = step.get("command")

    if command is not None and not isinstance(command, dict):
        errors.append(f"{path}.command must be an object when present.")
        return errors, open_status

    if open_status is not None or not status:
        if not isinstance(command, dict) or not command:
            errors.append(
                f"{path} requires a non-empty command while the step is {status or 'active'}."
            )
            return errors, open_status

    if isinstance(command, dict) and command:
        if not (_has_text(command.get("run")) or _has_text(command.get("shell"))):
            errors.append(f"{path}.command must include execution details when provided.")

    return errors, open_status


def validate_response(value: Any) -> ValidationResult:
    if not isinstance(value, dict):
        return ValidationResult(valid=False, errors=["Assistant response must be a JSON object."])

    errors: list[str] = []
    if "message" in value and not isinstance(value["message"], str):
        errors.append('"message" must be a string when provided.')

    plan = value.get("plan", [])
    first_open: Optional[str] = None
    has_open = False

    if not isinstance(plan, list):
        errors.append('"plan" must be an array.')
    else:
        for index, step in enumerate(plan):
            step_errors, open_status = _validate_step(step, f"plan[{index}]")
            errors.extend(step_errors)
            if open_status is not None:
                has_open = True
                first_open = first_open or open_status

    return ValidationResult(
        valid=not errors,
        errors=errors,
        first_open_status=first_open,
        has_open_steps=has_open,
    )
