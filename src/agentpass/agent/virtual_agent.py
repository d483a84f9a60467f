"""
agent/virtual_agent.py — Virtual sub-agent executor

A plan command with shell "openagent" is not a shell command: it launches
a nested agent on a fresh history and folds the sub-agent's assistant
replies back into the parent observation as stdout.

The `run` field is "<action> <argument>". The argument is either plain
text (used as the prompt) or a JSON object:

    {"prompt": "...", "summary": "...", "maxPasses": 4}

Recursion is bounded twice: passes per sub-agent are clamped to
[1, max_passes_cap] and nesting depth is limited by remaining_depth.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

from agentpass.agent.history import HistoryStore
from agentpass.agent.history_messages import create_system_entry, create_user_entry
from agentpass.agent.plan import PlanCommand
from agentpass.agent.types import CommandOutcome, CommandResult, EmitEvent, noop_emit, status_event
from agentpass.observability.logger import get_logger

if TYPE_CHECKING:
    from agentpass.agent.pass_executor import PassExecutor

log = get_logger(__name__)

DEFAULT_MAX_PASSES = 3
MAX_PASSES_CAP = 10
OUTPUT_SEPARATOR = "\n\n---\n\n"

# (history, remaining_depth) -> PassExecutor bound to that history
SubAgentFactory = Callable[[HistoryStore, int], "PassExecutor"]


@dataclass
class VirtualDescriptor:
    action: str
    argument: str


@dataclass
class VirtualTask:
    prompt: str
    summary: str
    max_passes: int


def parse_descriptor(run: str) -> VirtualDescriptor:
    text = (run or "").strip()
    if not text or text.startswith("{"):
        return VirtualDescriptor(action="", argument=text)
    action, _, argument = text.partition(" ")
    return VirtualDescriptor(action=action.strip(), argument=argument.strip())


def clamp_pass_limit(value: Any, default: int = DEFAULT_MAX_PASSES, cap: int = MAX_PASSES_CAP) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(value) or value < 1:
        return default
    return min(int(value), cap)


def build_task(
    descriptor: VirtualDescriptor,
    default_max_passes: int = DEFAULT_MAX_PASSES,
    max_passes_cap: int = MAX_PASSES_CAP,
) -> VirtualTask:
    default_summary = f"Virtual agent: {descriptor.action}" if descriptor.action else "Virtual agent task"
    argument = descriptor.argument

    if not argument:
        return VirtualTask(
            prompt=f"Carry out the requested action and return a concise summary of results. ({default_summary})",
            summary=default_summary,
            max_passes=default_max_passes,
        )

    if argument.startswith("{"):
        try:
            parsed = json.loads(argument)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            prompt = next((parsed[k] for k in ("prompt", "goal", "task") if isinstance(parsed.get(k), str)), "")
            summary = next((parsed[k] for k in ("summary", "title", "label") if isinstance(parsed.get(k), str)), "")
            max_raw = parsed.get("maxPasses", parsed.get("max_passes"))
            return VirtualTask(
                prompt=prompt.strip() or f"Carry out the requested action and report findings. ({default_summary})",
                summary=summary.strip() or default_summary,
                max_passes=clamp_pass_limit(max_raw, default_max_passes, max_passes_cap),
            )

    return VirtualTask(prompt=argument, summary=default_summary, max_passes=default_max_passes)


_REMINDER_TYPES = {"plan-reminder", "refusal-reminder"}


def collect_assistant_outputs(history: HistoryStore) -> list[str]:
    """Assistant messages in order; structured replies contribute their `message`."""
    outputs = []
    for entry in history:
        if entry.role != "assistant":
            continue
        text = entry.content_text().strip()
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            if data.get("type") in _REMINDER_TYPES:
                continue
            if isinstance(data.get("message"), str):
                text = data["message"].strip()
        if text:
            outputs.append(text)
    return outputs


class VirtualAgentExecutor:

    def __init__(
        self,
        create_sub_agent: SubAgentFactory,
        system_prompt: str,
        emit_event: EmitEvent = noop_emit,
        default_max_passes: int = DEFAULT_MAX_PASSES,
        max_passes_cap: int = MAX_PASSES_CAP,
        remaining_depth: int = 1,
    ):
        self._create_sub_agent = create_sub_agent
        self._system_prompt = system_prompt
        self._emit = emit_event
        self._default_max_passes = default_max_passes
        self._cap = max_passes_cap
        self.remaining_depth = remaining_depth

    async def execute(self, command: PlanCommand) -> CommandOutcome:
        descriptor = parse_descriptor(command.run)
        task = build_task(descriptor, self._default_max_passes, self._cap)
        started = time.monotonic()

        if self.remaining_depth <= 0:
            failure = "Virtual agent nesting limit reached; run the task directly instead."
            log.warning("virtual_agent.depth_exhausted", action=descriptor.action)
            return self._finish(command, descriptor, task, HistoryStore(), 0, failure, started)

        self._emit(status_event("info", f"Launching virtual agent task ({task.summary})."))
        log.info("virtual_agent.start", summary=task.summary, max_passes=task.max_passes)

        history = HistoryStore([
            create_system_entry(self._system_prompt),
            create_user_entry(task.prompt, pass_index=1),
        ])
        executor = self._create_sub_agent(history, self.remaining_depth - 1)

        pass_index = 1
        passes_executed = 0
        keep_going = True
        failure: Optional[str] = None

        while keep_going and passes_executed < task.max_passes:
            try:
                keep_going = await executor.execute(pass_index)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("virtual_agent.pass_failed", pass_index=pass_index, error=str(e))
                failure = str(e) or type(e).__name__
                keep_going = False
            passes_executed += 1
            if keep_going:
                pass_index += 1

        if keep_going:
            failure = f"Virtual agent reached the maximum of {task.max_passes} passes without completing."

        return self._finish(command, descriptor, task, history, passes_executed, failure, started)

    def _finish(
        self,
        command: PlanCommand,
        descriptor: VirtualDescriptor,
        task: VirtualTask,
        history: HistoryStore,
        passes_executed: int,
        failure: Optional[str],
        started: float,
    ) -> CommandOutcome:
        outputs = collect_assistant_outputs(history)
        stdout = OUTPUT_SEPARATOR.join(outputs)
        success = failure is None and bool(stdout)
        error = None if success else (failure or "Virtual agent did not produce a response.")

        result = CommandResult(
            stdout=stdout if success else "",
            stderr=error or "",
            exit_code=0 if success else 1,
            killed=False,
            runtime_ms=int((time.monotonic() - started) * 1000),
        )
        details: dict[str, Any] = {"type": "VIRTUAL", "command": command.to_dict()}
        if error:
            details["error"] = {"message": error}
        details["virtualAgent"] = {
            "passesExecuted": passes_executed,
            "maxPasses": task.max_passes,
            "action": descriptor.action,
            "argument": descriptor.argument,
        }

        if success:
            self._emit(status_event("info", f"Virtual agent task ({task.summary}) completed successfully."))
        else:
            self._emit(status_event("error", f"Virtual agent task ({task.summary}) failed.", {"message": error}))
        log.info("virtual_agent.finish", summary=task.summary, success=success, passes=passes_executed)
        return CommandOutcome(result=result, execution_details=details)
