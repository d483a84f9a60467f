"""
agent/response_parser.py — Tolerant assistant JSON parser

Models occasionally wrap their JSON in code fences, double-escape
newlines, or add chatter around the object. parse_assistant_response()
tries a short list of recovery strategies in order and records every
failed attempt so the model can be told exactly what went wrong.

Successful parses are normalised: command shorthands are expanded into
the object form, step labels are mapped onto `id`, and `age` defaults
to 0.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

DIRECT = "direct"
ESCAPED_NEWLINES = "escaped_newlines"
CODE_FENCE = "code_fence"
BALANCED_SLICE = "balanced_slice"

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_CAMEL_COMMAND_KEYS = {
    "timeoutSec": "timeout_sec",
    "filterRegex": "filter_regex",
    "tailLines": "tail_lines",
    "maxBytes": "max_bytes",
}


@dataclass
class ParseAttempt:
    strategy: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"strategy": self.strategy, "error": self.error}


@dataclass
class ParseResult:
    ok: bool
    value: Optional[dict[str, Any]] = None
    normalized_text: Optional[str] = None
    strategy: Optional[str] = None
    error: Optional[str] = None
    attempts: list[ParseAttempt] = field(default_factory=list)

    @property
    def recovered(self) -> bool:
        return self.ok and self.strategy != DIRECT


# ─────────────────────────────────────────────────────────────────────────────
# Candidate extraction
# ─────────────────────────────────────────────────────────────────────────────


def _escaped_newlines(text: str) -> Optional[str]:
    if "\\n" not in text:
        return None
    return text.replace("\\r\\n", "\n").replace("\\n", "\n")


def _code_fence(text: str) -> Optional[str]:
    match = _CODE_FENCE_RE.search(text)
    if not match:
        return None
    return match.group(1).strip()


def _balanced_slice(text: str) -> Optional[str]:
    """Slice out the first balanced {...} block, respecting strings."""
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


_STRATEGIES: list[tuple[str, Callable[[str], Optional[str]]]] = [
    (DIRECT, lambda text: text),
    (ESCAPED_NEWLINES, _escaped_newlines),
    (CODE_FENCE, _code_fence),
    (BALANCED_SLICE, _balanced_slice),
]


# ─────────────────────────────────────────────────────────────────────────────
# Normalisation
# ─────────────────────────────────────────────────────────────────────────────


def _normalize_command(command: Any) -> Any:
    if command is None:
        return None
    if isinstance(command, str):
        return {"run": command}
    if isinstance(command, list):
        return {"run": " ".join(str(part) for part in command)}
    if not isinstance(command, dict):
        return command

    normalized = dict(command)
    for camel, snake in _CAMEL_COMMAND_KEYS.items():
        if camel in normalized:
            value = normalized.pop(camel)
            normalized.setdefault(snake, value)
    for alias in ("cmd", "command_line"):
        if "run" not in normalized and isinstance(normalized.get(alias), str):
            normalized["run"] = normalized.pop(alias)
        elif alias in normalized and "run" in normalized:
            normalized.pop(alias)

    run = normalized.get("run")
    if isinstance(run, list):
        normalized["run"] = " ".join(str(part) for part in run)
    elif isinstance(run, dict):
        nested = run
        normalized["run"] = nested.get("command") or nested.get("run") or ""
        for key in ("shell", "cwd", "timeout_sec"):
            if key in nested and key not in normalized:
                normalized[key] = nested[key]

    shell = normalized.get("shell")
    if isinstance(shell, dict):
        nested = shell
        normalized["shell"] = nested.get("name") or nested.get("shell")
        if "run" not in normalized and isinstance(nested.get("run"), str):
            normalized["run"] = nested["run"]
    return normalized


def _normalize_step(step: Any) -> Any:
    if not isinstance(step, dict):
        return step
    normalized = dict(step)
    if not normalized.get("id") and isinstance(normalized.get("step"), (str, int)):
        normalized["id"] = str(normalized["step"])
    normalized.pop("step", None)
    if isinstance(normalized.get("id"), int) and not isinstance(normalized.get("id"), bool):
        normalized["id"] = str(normalized["id"])
    if "command" in normalized:
        normalized["command"] = _normalize_command(normalized["command"])
    if "age" not in normalized:
        normalized["age"] = 0
    return normalized


def normalize_response(value: dict[str, Any]) -> dict[str, Any]:
    normalized = dict(value)
    plan = normalized.get("plan")
    if isinstance(plan, list):
        normalized["plan"] = [_normalize_step(step) for step in plan]
    return normalized


# ─────────────────────────────────────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────────────────────────────────────


def parse_assistant_response(raw: Optional[str]) -> ParseResult:
    if raw is None or not str(raw).strip():
        return ParseResult(
            ok=False,
            error="Assistant response was empty or missing.",
            attempts=[],
        )

    text = str(raw).strip()
    attempts: list[ParseAttempt] = []
    seen: set[str] = set()

    for strategy, extract in _STRATEGIES:
        candidate = extract(text)
        if candidate is None or candidate in seen:
            continue
        seen.add(candidate)
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError as e:
            attempts.append(ParseAttempt(strategy=strategy, error=str(e)))
            continue
        if not isinstance(value, dict):
            attempts.append(ParseAttempt(
                strategy=strategy,
                error=f"Expected a JSON object but received {type(value).__name__}.",
            ))
            continue
        return ParseResult(
            ok=True,
            value=normalize_response(value),
            normalized_text=candidate,
            strategy=strategy,
            attempts=attempts,
        )

    first_error = attempts[0].error if attempts else "no JSON object found"
    return ParseResult(
        ok=False,
        error=f"Failed to parse assistant JSON response. {first_error}",
        attempts=attempts,
    )
