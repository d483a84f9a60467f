"""
agent/types.py — Shared agent runtime types

Command results, runtime events and the collaborator callables the engine
consumes. Events are plain dicts with a "type" key so any UI can render
them without importing engine classes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

# ─────────────────────────────────────────────────────────────────────────────
# Events
# ─────────────────────────────────────────────────────────────────────────────

Event = dict[str, Any]
EmitEvent = Callable[[Event], None]


def status_event(level: str, message: str, details: Any = None) -> Event:
    return {"type": "status", "level": level, "message": message, "details": details}


def error_event(message: str, details: Any = None, **extra: Any) -> Event:
    event: Event = {"type": "error", "message": message, "details": details}
    event.update(extra)
    return event


def debug_event(event_id: str, payload: Any) -> Event:
    return {"type": "debug", "id": event_id, "payload": payload}


def noop_emit(event: Event) -> None:
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Command results
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class CommandResult:
    """Outcome of running one command through the shell runner or a sub-agent."""
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    killed: bool = False
    runtime_ms: int = 0

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "CommandResult":
        exit_code = data.get("exit_code", data.get("exitCode"))
        return cls(
            stdout=str(data.get("stdout") or ""),
            stderr=str(data.get("stderr") or ""),
            exit_code=exit_code if isinstance(exit_code, int) and not isinstance(exit_code, bool) else None,
            killed=bool(data.get("killed", False)),
            runtime_ms=int(data.get("runtime_ms") or 0),
        )

    @classmethod
    def failure(cls, message: str, runtime_ms: int = 0) -> "CommandResult":
        return cls(stdout="", stderr=message, exit_code=1, killed=False, runtime_ms=runtime_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "killed": self.killed,
            "runtime_ms": self.runtime_ms,
        }


@dataclass
class CommandOutcome:
    """A command result plus how it was executed (for debug/UI)."""
    result: CommandResult
    execution_details: dict[str, Any] = field(default_factory=dict)


# run_command(run, cwd, timeout_sec, shell) -> CommandResult | dict
RunCommandFn = Callable[
    [str, str, float, Optional[str]],
    Awaitable[Union[CommandResult, dict[str, Any]]],
]
ApplyFilterFn = Callable[[str, str], str]
TailLinesFn = Callable[[str, int], str]
AskHumanFn = Callable[[str], Awaitable[Optional[str]]]
