"""
agent/plan_manager.py — Plan Manager

Owns the active plan for a session and answers the scheduling questions:
which steps may run now, which one runs next, and whether the plan is
done. The derivations are pure functions; PlanManager adds the stateful
"active plan" plus progress events for the UI.

Scheduling rules:
  - a step may execute when it is not terminal, has a runnable command,
    and every id it waits on refers to an existing completed step
  - a dependency on an unknown id blocks the step permanently
  - next executable = lowest numeric priority first (steps without one
    last), ties broken by title then id
"""

from __future__ import annotations

from typing import Any, Optional

from agentpass.agent.plan import PlanStep, clone_plan, normalize_status, plan_to_dicts
from agentpass.agent.types import EmitEvent, noop_emit
from agentpass.observability.logger import get_logger

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Pure derivations
# ─────────────────────────────────────────────────────────────────────────────


def derive_execution_state(steps: list[PlanStep]) -> list[PlanStep]:
    """Return annotated copies of `steps` with can_execute/blocked flags set."""
    by_id = {step.id: step for step in steps if step.id}
    derived: list[PlanStep] = []
    for step in steps:
        copy = step.clone()
        missing = [dep for dep in copy.waiting_for_ids if dep not in by_id]
        unfinished = [
            dep for dep in copy.waiting_for_ids
            if dep in by_id and normalize_status(by_id[dep].status) != "completed"
        ]
        copy.has_missing_dependencies = bool(missing)
        copy.blocked = bool(missing or unfinished)
        copy.can_execute = (
            not copy.is_terminal
            and copy.has_executable_command
            and not copy.blocked
        )
        derived.append(copy)
    return derived


def is_plan_complete(steps: list[PlanStep]) -> bool:
    """True for an empty plan or one where every step is terminal."""
    return all(step.is_terminal for step in steps)


def has_open_steps(steps: list[PlanStep]) -> bool:
    return any(not step.is_terminal for step in steps)


def _priority_key(step: PlanStep) -> tuple:
    if step.priority is None:
        return (1, 0.0, step.title, step.id)
    return (0, float(step.priority), step.title, step.id)


def pick_next_executable(
    steps: list[PlanStep],
    exclude_ids: Optional[set[str]] = None,
) -> Optional[PlanStep]:
    """Return the step from `steps` that should run next, or None."""
    exclude_ids = exclude_ids or set()
    derived = derive_execution_state(steps)
    candidates = [
        (index, d) for index, d in enumerate(derived)
        if d.can_execute and d.id not in exclude_ids
    ]
    if not candidates:
        return None
    index, _ = min(candidates, key=lambda pair: _priority_key(pair[1]))
    return steps[index]


def compute_plan_progress(steps: list[PlanStep]) -> dict[str, Any]:
    total = len(steps)
    completed = sum(1 for s in steps if s.is_terminal)
    return {
        "completed_steps": completed,
        "total_steps": total,
        "remaining_steps": total - completed,
        "ratio": (completed / total) if total else 0.0,
    }


def plan_to_markdown(steps: list[PlanStep]) -> str:
    if not steps:
        return "_No active plan._"
    marks = {"completed": "x", "failed": "!", "abandoned": "-", "running": "~"}
    lines = []
    for step in steps:
        mark = marks.get(normalize_status(step.status), " ")
        line = f"- [{mark}] {step.id}. {step.title}"
        if step.waiting_for_ids:
            line += f" (waiting for {', '.join(step.waiting_for_ids)})"
        lines.append(line)
    return "\n".join(lines)


# ─────────────────────────────────────────────────────────────────────────────
# Stateful manager
# ─────────────────────────────────────────────────────────────────────────────


class PlanManager:

    def __init__(self, emit_event: EmitEvent = noop_emit):
        self._plan: list[PlanStep] = []
        self._emit = emit_event

    # Pure helpers exposed for callers that hold a manager.
    derive_execution_state = staticmethod(derive_execution_state)
    is_complete = staticmethod(is_plan_complete)
    pick_next_executable = staticmethod(pick_next_executable)

    @property
    def active(self) -> list[PlanStep]:
        """The live plan. Mutate only through the plan runtime."""
        return self._plan

    def get(self) -> list[PlanStep]:
        return clone_plan(self._plan)

    def update(self, steps: list[PlanStep]) -> list[PlanStep]:
        """Replace the active plan and return the live list."""
        self._plan = list(steps)
        self._emit_progress()
        return self._plan

    def sync(self) -> None:
        """Re-emit progress after in-place step changes."""
        self._emit_progress()

    def reset(self) -> list[PlanStep]:
        self._plan = []
        self._emit_progress()
        return self._plan

    def snapshot(self) -> list[dict[str, Any]]:
        return plan_to_dicts(self._plan)

    def _emit_progress(self) -> None:
        progress = compute_plan_progress(self._plan)
        log.debug("plan.progress", **progress)
        self._emit({
            "type": "plan-progress",
            "completed": progress["completed_steps"],
            "total": progress["total_steps"],
            "progress": progress,
        })
