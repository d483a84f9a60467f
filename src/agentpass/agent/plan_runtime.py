"""
agent/plan_runtime.py — Per-pass plan runtime

Drives the plan side of one pass. Decisions are returned as effects
(emit an event, publish a plan snapshot, append a history entry, flip the
no-human flag, reset the reminder counter) and applied in one place,
which keeps the branching testable without a live history or UI.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from agentpass.agent.history import ChatHistoryEntry, HistoryStore
from agentpass.agent.history_messages import (
    create_plan_observation_entry,
    create_plan_reminder_entry,
    create_refusal_reminder_entry,
)
from agentpass.agent.observations import ObservationBuilder, ObservationRecord
from agentpass.agent.plan import PlanStep, plan_to_dicts
from agentpass.agent.plan_manager import PlanManager, has_open_steps, is_plan_complete
from agentpass.agent.plan_reminder import PlanReminderTracker, is_done_message, is_likely_refusal
from agentpass.agent.types import CommandResult, EmitEvent, Event, status_event
from agentpass.observability.logger import get_logger

log = get_logger(__name__)

REFUSAL_STATUS_MESSAGE = (
    'Assistant declined to help; auto-responding with "continue" to prompt another attempt.'
)
COMMAND_REJECTED_MESSAGE = "Command execution canceled by human request."


# ─────────────────────────────────────────────────────────────────────────────
# Effects
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EmitEffect:
    event: Event


@dataclass(frozen=True)
class PlanSnapshotEffect:
    steps: list[dict[str, Any]]


@dataclass(frozen=True)
class HistoryEntryEffect:
    entry: ChatHistoryEntry


@dataclass(frozen=True)
class SetNoHumanFlagEffect:
    value: bool


@dataclass(frozen=True)
class ResetReminderEffect:
    pass


PlanEffect = Union[EmitEffect, PlanSnapshotEffect, HistoryEntryEffect, SetNoHumanFlagEffect, ResetReminderEffect]


class PlanOutcome(str, Enum):
    CONTINUE = "continue"               # commands ran; observe next pass
    NO_EXECUTABLE = "no-executable"     # nudged the model; keep going
    COMMAND_REJECTED = "command-rejected"
    STOP = "stop"


@dataclass
class NoExecutableResult:
    outcome: PlanOutcome
    effects: list[PlanEffect] = field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Runtime
# ─────────────────────────────────────────────────────────────────────────────


class PlanRuntime:

    def __init__(
        self,
        plan_manager: PlanManager,
        history: HistoryStore,
        pass_index: int,
        emit_event: EmitEvent,
        observation_builder: ObservationBuilder,
        plan_reminder_message: str,
        reminder_tracker: Optional[PlanReminderTracker] = None,
        get_no_human_flag: Callable[[], bool] = lambda: False,
        set_no_human_flag: Callable[[bool], None] = lambda value: None,
    ):
        self._plans = plan_manager
        self._history = history
        self._pass_index = pass_index
        self._emit = emit_event
        self._observations = observation_builder
        self._reminder_message = plan_reminder_message
        self._reminder = reminder_tracker
        self._get_no_human = get_no_human_flag
        self._set_no_human = set_no_human_flag
        self._attempted: set[str] = set()
        self._incoming_empty = True

    @property
    def plan(self) -> list[PlanStep]:
        return self._plans.active

    # ── Plan lifecycle ────────────────────────────────────────────────────────

    def initialize(self, incoming: list[PlanStep]) -> list[PlanEffect]:
        """Adopt the model's plan for this pass and age running steps."""
        self._incoming_empty = not incoming
        for step in incoming:
            if step.status == "running":
                step.age += 1
        self._plans.update(incoming)
        return [self.snapshot()]

    def snapshot(self) -> PlanSnapshotEffect:
        return PlanSnapshotEffect(steps=plan_to_dicts(self._plans.active))

    def select_next_executable(self) -> Optional[PlanStep]:
        return self._plans.pick_next_executable(self._plans.active, exclude_ids=self._attempted)

    def mark_command_running(self, step: PlanStep) -> list[PlanEffect]:
        self._attempted.add(step.id)
        step.status = "running"
        self._plans.sync()
        return [self.snapshot()]

    def apply_command_result(
        self,
        step: PlanStep,
        result: CommandResult,
        observation: ObservationRecord,
    ) -> list[PlanEffect]:
        step.observation = observation.to_dict()
        if result.exit_code == 0:
            step.status = "completed"
        elif result.exit_code is not None:
            step.status = "failed"
        if result.killed:
            step.command = None
        self._plans.sync()
        return [self.snapshot()]

    # ── Branches ──────────────────────────────────────────────────────────────

    def handle_no_executable(self, message: Any) -> NoExecutableResult:
        effects: list[PlanEffect] = []
        active = self._plans.active

        if self._get_no_human() and is_done_message(message):
            effects.append(SetNoHumanFlagEffect(False))

        if not active and self._incoming_empty and is_likely_refusal(message):
            effects.append(EmitEffect(status_event("info", REFUSAL_STATUS_MESSAGE)))
            effects.append(HistoryEntryEffect(create_refusal_reminder_entry(self._pass_index)))
            effects.append(ResetReminderEffect())
            return NoExecutableResult(PlanOutcome.NO_EXECUTABLE, effects)

        if has_open_steps(active):
            attempt = self._reminder.increment() if self._reminder else None
            if attempt is not None and attempt <= self._reminder.limit:
                effects.append(EmitEffect(status_event("warn", self._reminder_message)))
                effects.append(HistoryEntryEffect(
                    create_plan_reminder_entry(self._reminder_message, self._pass_index)
                ))
                return NoExecutableResult(PlanOutcome.NO_EXECUTABLE, effects)
            log.info("plan.reminder_limit_reached", pass_index=self._pass_index)
            return NoExecutableResult(PlanOutcome.STOP, effects)

        if active and is_plan_complete(active):
            self._plans.reset()
            effects.append(EmitEffect(status_event("info", "Plan completed.")))
            effects.append(self.snapshot())

        effects.append(ResetReminderEffect())
        return NoExecutableResult(PlanOutcome.STOP, effects)

    def handle_command_rejection(self, step: PlanStep) -> list[PlanEffect]:
        step.observation = self._observations.build_command_rejection()
        self._plans.sync()
        return [
            EmitEffect(status_event("warn", COMMAND_REJECTED_MESSAGE)),
            HistoryEntryEffect(create_plan_observation_entry(
                plan_to_dicts(self._plans.active), self._pass_index,
            )),
        ]

    def finalize(self) -> list[PlanEffect]:
        """Hand the executed plan (with step observations) back to the model."""
        return [HistoryEntryEffect(create_plan_observation_entry(
            plan_to_dicts(self._plans.active), self._pass_index,
        ))]

    # ── Effect application ────────────────────────────────────────────────────

    def apply_effects(self, effects: list[PlanEffect]) -> None:
        for effect in effects:
            if isinstance(effect, EmitEffect):
                self._emit(effect.event)
            elif isinstance(effect, PlanSnapshotEffect):
                self._emit({"type": "plan", "steps": effect.steps})
            elif isinstance(effect, HistoryEntryEffect):
                self._history.append(effect.entry)
            elif isinstance(effect, SetNoHumanFlagEffect):
                self._set_no_human(effect.value)
            elif isinstance(effect, ResetReminderEffect):
                if self._reminder:
                    self._reminder.reset()
            else:
                raise TypeError(f"Unknown plan effect: {effect!r}")
