"""
agent/pass_executor.py — Pass Executor

One pass = one model round-trip plus whatever the reply asks for:

  pre-pass     payload failsafe, history compaction, context usage event
  requesting   ModelRequestGateway (may come back canceled)
  validating   parse -> schema -> protocol rules; any failure becomes an
               observation so the model can correct itself next pass
  planning     adopt the plan, pick the next executable step
  executing    approval -> run -> observation -> next step
  observing    the executed plan (with observations) is appended

execute() returns True when the session should run another pass.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from agentpass.agent.command_execution import CommandExecutionGateway, approval_status_message
from agentpass.agent.context_usage import summarize_context_usage
from agentpass.agent.esc_state import EscState
from agentpass.agent.history import HistoryStore
from agentpass.agent.history_compactor import HistoryCompactor
from agentpass.agent.history_messages import create_assistant_entry, create_observation_entry
from agentpass.agent.model_gateway import ModelRequestGateway
from agentpass.agent.observations import ObservationBuilder
from agentpass.agent.payload_guard import RequestPayloadGuard
from agentpass.agent.plan import plan_from_dicts
from agentpass.agent.plan_manager import PlanManager
from agentpass.agent.plan_reminder import PlanReminderTracker
from agentpass.agent.plan_runtime import PlanOutcome, PlanRuntime
from agentpass.agent.response_parser import parse_assistant_response
from agentpass.agent.response_validator import validate_against_schema, validate_response
from agentpass.agent.types import EmitEvent, error_event, noop_emit, status_event
from agentpass.config.settings import DEFAULT_PLAN_REMINDER
from agentpass.exceptions import PassError
from agentpass.observability.logger import get_logger

log = get_logger(__name__)


class PassExecutor:

    def __init__(
        self,
        *,
        model_gateway: ModelRequestGateway,
        command_gateway: CommandExecutionGateway,
        history: HistoryStore,
        plan_manager: Optional[PlanManager] = None,
        emit_event: EmitEvent = noop_emit,
        observation_builder: Optional[ObservationBuilder] = None,
        plan_reminder_message: str = DEFAULT_PLAN_REMINDER,
        reminder_tracker: Optional[PlanReminderTracker] = None,
        history_compactor: Optional[HistoryCompactor] = None,
        payload_guard: Optional[RequestPayloadGuard] = None,
        esc_state: Optional[EscState] = None,
        get_no_human_flag: Callable[[], bool] = lambda: False,
        set_no_human_flag: Callable[[bool], None] = lambda value: None,
        start_thinking: Optional[Callable[[], None]] = None,
        stop_thinking: Optional[Callable[[], None]] = None,
        context_window: Optional[int] = None,
    ):
        self.history = history
        self._model = model_gateway
        self._commands = command_gateway
        self._emit = emit_event
        self._plans = plan_manager or PlanManager(emit_event)
        self._observations = observation_builder or ObservationBuilder()
        self._reminder_message = plan_reminder_message
        self._reminder = reminder_tracker
        self._compactor = history_compactor
        self._guard = payload_guard
        self._esc = esc_state
        self._get_no_human = get_no_human_flag
        self._set_no_human = set_no_human_flag
        self._start_thinking = start_thinking
        self._stop_thinking = stop_thinking
        self._context_window = context_window

    @property
    def plan_manager(self) -> PlanManager:
        return self._plans

    # ── Entry point ───────────────────────────────────────────────────────────

    async def execute(self, pass_index: int) -> bool:
        if isinstance(pass_index, bool) or not isinstance(pass_index, int):
            raise PassError(f"pass_index must be an integer, got {pass_index!r}")

        log.info("pass.start", pass_index=pass_index, history_entries=len(self.history))
        request_size = await self._prepare(pass_index)

        result = await self._model.request(
            self.history,
            pass_index,
            esc_state=self._esc,
            start_thinking=self._start_thinking,
            stop_thinking=self._stop_thinking,
            set_no_human_flag=self._set_no_human,
        )
        if result.canceled:
            log.info("pass.canceled", pass_index=pass_index, reason=result.reason)
            return False

        if self._guard is not None and request_size is not None:
            self._guard.record_baseline(request_size)

        tool_call = result.completion.find_tool_call(self._model.tool_name)
        raw = tool_call.raw_arguments if tool_call is not None else ""
        if not raw:
            self._emit(error_event(
                "OpenAI response did not include text output.",
                {"finish_reason": result.completion.finish_reason.value},
            ))
            log.warning("pass.no_tool_output", pass_index=pass_index)
            return False

        self.history.append(create_assistant_entry(raw, pass_index))

        parsed = self._resolve_response(raw, pass_index)
        if parsed is None:
            return True

        message = parsed.get("message", "")
        self._emit({"type": "assistant-message", "message": message})

        outcome = await self._run_plan(parsed, message, pass_index)
        log.info("pass.end", pass_index=pass_index, outcome=outcome.value)
        return outcome != PlanOutcome.STOP

    # ── Pre-pass ──────────────────────────────────────────────────────────────

    def _check_payload(self, pass_index: int, stage: str) -> Optional[int]:
        if self._guard is None:
            return None
        try:
            return self._guard.check(self.history, self._model.model, pass_index)
        except (TypeError, ValueError) as e:
            log.warning("pass.failsafe_estimate_failed", stage=stage, error=str(e))
            self._emit(status_event(
                "warn",
                f"[failsafe] Unable to evaluate request payload size {stage}.",
                {"message": str(e)},
            ))
            return None

    async def _prepare(self, pass_index: int) -> Optional[int]:
        """Run the pre-pass governors and return the size of the request about to be sent."""
        size = self._check_payload(pass_index, "before history compaction")

        if self._compactor is not None:
            try:
                compacted = await self._compactor.compact_if_needed(self.history)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("pass.compaction_failed", error=str(e))
                self._emit(status_event(
                    "warn",
                    "[history-compactor] Unexpected error during history compaction.",
                    {"message": str(e)},
                ))
            else:
                # The baseline must track what the model actually receives.
                if compacted:
                    size = self._check_payload(pass_index, "after history compaction")

        try:
            usage = summarize_context_usage(self.history, self._model.model, self._context_window)
            self._emit({"type": "context-usage", "usage": usage.to_dict()})
        except (TypeError, ValueError) as e:
            log.debug("pass.context_usage_failed", error=str(e))
            self._emit(status_event("warn", "Failed to summarize context usage.", {"message": str(e)}))

        return size

    # ── Validation ────────────────────────────────────────────────────────────

    def _resolve_response(self, raw: str, pass_index: int) -> Optional[dict[str, Any]]:
        """Parse and validate. Returns None after recording an observation on failure."""
        parsed = parse_assistant_response(raw)
        if not parsed.ok:
            attempts = [a.to_dict() for a in parsed.attempts]
            self._emit(error_event("LLM returned invalid JSON.", parsed.error, raw=raw, attempts=attempts))
            record = self._observations.build_parse_error(attempts, raw)
            self.history.append(create_observation_entry(record, pass_index))
            log.warning("pass.parse_failed", pass_index=pass_index, error=parsed.error)
            return None

        if parsed.recovered:
            label = parsed.strategy.replace("_", " ")
            self._emit(status_event("info", f"Assistant JSON parsed after applying {label} recovery."))

        schema = validate_against_schema(parsed.value)
        if not schema.valid:
            errors = [e.to_dict() for e in schema.errors]
            self._emit({"type": "schema_validation_failed", "message": "Assistant response failed schema validation.", "errors": errors, "raw": raw})
            self.history.append(create_observation_entry(
                self._observations.build_schema_error(errors, raw), pass_index,
            ))
            log.warning("pass.schema_invalid", pass_index=pass_index, errors=len(errors))
            return None

        validation = validate_response(parsed.value)
        if not validation.valid:
            self._emit(status_event("warn", "Assistant response failed protocol validation.", {"errors": validation.errors}))
            self.history.append(create_observation_entry(
                self._observations.build_validation_error(validation.errors, raw), pass_index,
            ))
            log.warning("pass.response_invalid", pass_index=pass_index, errors=validation.errors)
            return None

        return parsed.value

    # ── Plan execution ────────────────────────────────────────────────────────

    async def _run_plan(self, parsed: dict[str, Any], message: Any, pass_index: int) -> PlanOutcome:
        runtime = PlanRuntime(
            plan_manager=self._plans,
            history=self.history,
            pass_index=pass_index,
            emit_event=self._emit,
            observation_builder=self._observations,
            plan_reminder_message=self._reminder_message,
            reminder_tracker=self._reminder,
            get_no_human_flag=self._get_no_human,
            set_no_human_flag=self._set_no_human,
        )
        runtime.apply_effects(runtime.initialize(plan_from_dicts(parsed.get("plan"))))

        step = runtime.select_next_executable()
        if step is None:
            no_exec = runtime.handle_no_executable(message)
            runtime.apply_effects(no_exec.effects)
            return no_exec.outcome

        if self._reminder is not None:
            self._reminder.reset()

        while step is not None:
            command = step.command
            verdict = await self._commands.authorize(command)
            if verdict.rejected:
                runtime.apply_effects(runtime.handle_command_rejection(step))
                return PlanOutcome.COMMAND_REJECTED

            announcement = approval_status_message(verdict)
            if announcement:
                self._emit(status_event("info", announcement))

            runtime.apply_effects(runtime.mark_command_running(step))
            outcome = await self._commands.execute(command)
            render, observation = self._observations.build(command, outcome.result)
            runtime.apply_effects(runtime.apply_command_result(step, outcome.result, observation))

            self._emit({
                "type": "command-result",
                "command": command.to_dict(),
                "result": outcome.result.to_dict(),
                "preview": render.to_dict(),
                "execution": outcome.execution_details,
            })
            step = runtime.select_next_executable()

        runtime.apply_effects(runtime.finalize())
        return PlanOutcome.CONTINUE
