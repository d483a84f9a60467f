"""
agent/plan.py — Plan step and command types

The model proposes its work as a list of plan steps. These dataclasses are
the typed form of one step; from_dict/to_dict translate to and from the
wire shape the model sends (camelCase `waitingForId`, nested `command`).
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Optional

PLAN_STATUSES = ("pending", "running", "completed", "failed", "abandoned")
TERMINAL_STATUSES = frozenset({"completed", "failed", "abandoned"})
VIRTUAL_SHELL = "openagent"

_COMMAND_FIELDS = (
    "reason", "shell", "run", "cwd", "timeout_sec",
    "filter_regex", "tail_lines", "max_bytes",
)


def normalize_status(value: Any) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


@dataclass
class PlanCommand:
    run: str = ""
    shell: Optional[str] = None
    reason: Optional[str] = None
    cwd: Optional[str] = None
    timeout_sec: Optional[float] = None
    filter_regex: Optional[str] = None
    tail_lines: Optional[int] = None
    max_bytes: Optional[int] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_virtual(self) -> bool:
        return isinstance(self.shell, str) and self.shell.strip().lower() == VIRTUAL_SHELL

    @property
    def has_payload(self) -> bool:
        """True when there is something to execute."""
        return any(isinstance(v, str) and v.strip() for v in (self.run, self.shell))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanCommand":
        known = {k: data.get(k) for k in _COMMAND_FIELDS}
        run = known["run"]
        return cls(
            run=run if isinstance(run, str) else "",
            shell=known["shell"],
            reason=known["reason"],
            cwd=known["cwd"],
            timeout_sec=known["timeout_sec"],
            filter_regex=known["filter_regex"],
            tail_lines=known["tail_lines"],
            max_bytes=known["max_bytes"],
            extra={k: v for k, v in data.items() if k not in _COMMAND_FIELDS},
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for name in _COMMAND_FIELDS:
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        data.update(copy.deepcopy(self.extra))
        return data


@dataclass
class PlanStep:
    id: str
    title: str = ""
    status: str = "pending"
    priority: Optional[float] = None
    waiting_for_ids: list[str] = field(default_factory=list)
    command: Optional[PlanCommand] = None
    observation: Optional[dict[str, Any]] = None
    age: int = 0

    # Derived by derive_execution_state(); never sent on the wire.
    can_execute: bool = field(default=False, compare=False)
    blocked: bool = field(default=False, compare=False)
    has_missing_dependencies: bool = field(default=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return normalize_status(self.status) in TERMINAL_STATUSES

    @property
    def has_executable_command(self) -> bool:
        return self.command is not None and self.command.has_payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanStep":
        waiting = data.get("waitingForId")
        if waiting is None:
            waiting = data.get("waiting_for_ids") or []
        if isinstance(waiting, str):
            waiting = [waiting]
        command = data.get("command")
        priority = data.get("priority")
        age = data.get("age")
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            status=normalize_status(data.get("status")) or "pending",
            priority=priority if isinstance(priority, (int, float)) and not isinstance(priority, bool) else None,
            waiting_for_ids=[str(w) for w in waiting if isinstance(w, (str, int))],
            command=PlanCommand.from_dict(command) if isinstance(command, dict) else None,
            observation=copy.deepcopy(data.get("observation")) if isinstance(data.get("observation"), dict) else None,
            age=age if isinstance(age, int) and not isinstance(age, bool) and age >= 0 else 0,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "status": self.status,
        }
        if self.priority is not None:
            data["priority"] = self.priority
        if self.waiting_for_ids:
            data["waitingForId"] = list(self.waiting_for_ids)
        if self.command is not None:
            data["command"] = self.command.to_dict()
        if self.observation is not None:
            data["observation"] = copy.deepcopy(self.observation)
        data["age"] = self.age
        return data

    def clone(self) -> "PlanStep":
        return copy.deepcopy(self)


def plan_from_dicts(items: Any) -> list[PlanStep]:
    if not isinstance(items, list):
        return []
    return [PlanStep.from_dict(item) for item in items if isinstance(item, dict)]


def plan_to_dicts(steps: list[PlanStep]) -> list[dict[str, Any]]:
    return [step.to_dict() for step in steps]


def clone_plan(steps: list[PlanStep]) -> list[PlanStep]:
    return [step.clone() for step in steps]
