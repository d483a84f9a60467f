"""
agent/loop.py — Agent session loop

Owns everything that lives for a whole session (history, plan manager,
ESC state, approval policy, failsafe baseline) and runs passes until the
PassExecutor says stop or the pass budget runs out.

Between passes the loop applies the amnesia and dementia policies. In
no-human mode a stopped pass is answered automatically so the agent keeps
working until it replies "done" or the human presses ESC.

Usage:
    loop = AgentLoop.from_settings(settings, emit_event=printer, ask_human=ask)
    result = await loop.run("Find the failing test and fix it")
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from agentpass.agent.amnesia import AmnesiaManager, apply_dementia_policy
from agentpass.agent.approval import ApprovalManager, CommandApprovalPolicy
from agentpass.agent.cancellation import CancellationRegistry
from agentpass.agent.command_execution import CommandExecutionGateway
from agentpass.agent.esc_state import EscState
from agentpass.agent.history import HistoryStore
from agentpass.agent.history_compactor import HistoryCompactor
from agentpass.agent.history_messages import create_system_entry, create_user_entry
from agentpass.agent.model_gateway import ModelRequestGateway
from agentpass.agent.observations import ObservationBuilder
from agentpass.agent.pass_executor import PassExecutor
from agentpass.agent.payload_guard import RequestPayloadGuard
from agentpass.agent.plan_manager import PlanManager
from agentpass.agent.plan_reminder import PlanReminderTracker
from agentpass.agent.prompts import DEFAULT_SYSTEM_PROMPT, SUB_AGENT_SYSTEM_PROMPT
from agentpass.agent.types import AskHumanFn, EmitEvent, RunCommandFn, error_event, noop_emit
from agentpass.agent.virtual_agent import VirtualAgentExecutor
from agentpass.brain.llm_client import BaseLLMClient, LLMError
from agentpass.brain.types import LLMConfig
from agentpass.config.settings import DEFAULT_PLAN_REMINDER
from agentpass.exceptions import AgentPassError
from agentpass.observability.logger import bind_session, clear_session, get_logger
from agentpass.tools.shell import run_command as default_run_command

log = get_logger(__name__)

NO_HUMAN_AUTO_RESPONSE = (
    'Continue working on the task autonomously. Reply with "done" when it is complete.'
)


@dataclass
class LoopResult:
    passes: int
    stop_reason: str                    # "stopped" | "max_passes" | "error"
    error: Optional[str] = None


class AgentLoop:

    def __init__(
        self,
        client: BaseLLMClient,
        llm_config: LLMConfig,
        *,
        run_command: RunCommandFn = default_run_command,
        emit_event: EmitEvent = noop_emit,
        ask_human: Optional[AskHumanFn] = None,
        approval_policy: Optional[CommandApprovalPolicy] = None,
        auto_approve: bool = False,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        plan_reminder_message: str = DEFAULT_PLAN_REMINDER,
        max_passes: int = 50,
        request_timeout_seconds: Optional[float] = None,
        context_window: Optional[int] = None,
        compaction_threshold: Optional[float] = 0.5,
        amnesia_threshold: Optional[int] = 10,
        dementia_limit: int = 0,
        preserve_system_messages: bool = True,
        payload_guard: Optional[RequestPayloadGuard] = None,
        virtual_default_max_passes: int = 3,
        virtual_max_passes_cap: int = 10,
        virtual_max_depth: int = 1,
        no_human: bool = False,
        session_id: Optional[str] = None,
        start_thinking: Optional[Callable[[], None]] = None,
        stop_thinking: Optional[Callable[[], None]] = None,
    ):
        self.session_id = session_id or f"sess_{uuid.uuid4().hex[:12]}"
        self._client = client
        self._llm_config = llm_config
        self._run_command = run_command
        self._emit = emit_event
        self._ask_human = ask_human
        self._auto_approve = auto_approve
        self._system_prompt = system_prompt
        self._reminder_message = plan_reminder_message
        self._max_passes = max_passes
        self._context_window = context_window
        self._dementia_limit = dementia_limit
        self._preserve_system = preserve_system_messages
        self._virtual_defaults = (virtual_default_max_passes, virtual_max_passes_cap)
        self._virtual_depth = virtual_max_depth
        self._start_thinking = start_thinking
        self._stop_thinking = stop_thinking

        self.history = HistoryStore()
        self.esc_state = EscState()
        self.cancellation = CancellationRegistry()
        self.plan_manager = PlanManager(emit_event)
        self.reminder_tracker = PlanReminderTracker()
        self.approval_policy = approval_policy or CommandApprovalPolicy()
        self.no_human = no_human
        self._pass_counter = 0

        self._observations = ObservationBuilder()
        self._model_gateway = ModelRequestGateway(
            client,
            llm_config,
            observation_builder=self._observations,
            emit_event=emit_event,
            cancellation=self.cancellation,
            timeout_seconds=request_timeout_seconds,
        )
        self._compactor = (
            HistoryCompactor(client, llm_config, compaction_threshold, context_window)
            if compaction_threshold is not None else None
        )
        self._amnesia = AmnesiaManager(amnesia_threshold) if amnesia_threshold is not None else None
        self._payload_guard = payload_guard
        self._executor = self.create_pass_executor(self.history, top_level=True, depth=virtual_max_depth)

    # ── Wiring ────────────────────────────────────────────────────────────────

    def _approval_manager(self) -> ApprovalManager:
        return ApprovalManager(
            policy=self.approval_policy,
            ask_human=self._ask_human,
            get_auto_approve_flag=lambda: self._auto_approve,
            emit_event=self._emit,
        )

    def create_pass_executor(self, history: HistoryStore, *, top_level: bool = False, depth: int = 0) -> PassExecutor:
        """
        Build a PassExecutor bound to `history`.

        Sub-agents (top_level=False) share the model gateway, approval policy
        and ESC state, but get a private plan and reminder tracker, and no
        compactor, failsafe or no-human handling.
        """
        default_passes, cap = self._virtual_defaults
        virtual = VirtualAgentExecutor(
            create_sub_agent=lambda sub_history, remaining: self.create_pass_executor(sub_history, depth=remaining),
            system_prompt=SUB_AGENT_SYSTEM_PROMPT,
            emit_event=self._emit,
            default_max_passes=default_passes,
            max_passes_cap=cap,
            remaining_depth=depth,
        )
        command_gateway = CommandExecutionGateway(
            run_command=self._run_command,
            approval_manager=self._approval_manager(),
            virtual_executor=virtual,
            emit_event=self._emit,
        )
        if top_level:
            return PassExecutor(
                model_gateway=self._model_gateway,
                command_gateway=command_gateway,
                history=history,
                plan_manager=self.plan_manager,
                emit_event=self._emit,
                observation_builder=self._observations,
                plan_reminder_message=self._reminder_message,
                reminder_tracker=self.reminder_tracker,
                history_compactor=self._compactor,
                payload_guard=self._payload_guard,
                esc_state=self.esc_state,
                get_no_human_flag=lambda: self.no_human,
                set_no_human_flag=self.set_no_human,
                start_thinking=self._start_thinking,
                stop_thinking=self._stop_thinking,
                context_window=self._context_window,
            )
        return PassExecutor(
            model_gateway=self._model_gateway,
            command_gateway=command_gateway,
            history=history,
            plan_manager=PlanManager(),
            emit_event=self._emit,
            observation_builder=self._observations,
            plan_reminder_message=self._reminder_message,
            reminder_tracker=PlanReminderTracker(),
            esc_state=self.esc_state,
            context_window=self._context_window,
        )

    # ── Controls ──────────────────────────────────────────────────────────────

    def set_no_human(self, value: bool) -> None:
        if self.no_human != value:
            log.info("loop.no_human_changed", value=value)
        self.no_human = value

    def cancel(self, payload: Any = None) -> None:
        """Human interrupt: cancels the in-flight model request."""
        self.esc_state.trigger(payload)

    # ── Run ───────────────────────────────────────────────────────────────────

    async def run(self, prompt: str, max_passes: Optional[int] = None) -> LoopResult:
        budget = max_passes or self._max_passes
        bind_session(self.session_id)
        passes = 0
        log.info("loop.start", session_id=self.session_id, max_passes=budget)

        try:
            if not len(self.history):
                self.history.append(create_system_entry(self._system_prompt))
            self.history.append(create_user_entry(prompt, self._pass_counter + 1))

            while passes < budget:
                self._pass_counter += 1
                passes += 1
                pass_index = self._pass_counter
                self._govern_history(pass_index)

                keep_going = await self._executor.execute(pass_index)
                if keep_going:
                    continue
                if self.no_human and passes < budget:
                    self.history.append(create_user_entry(NO_HUMAN_AUTO_RESPONSE, self._pass_counter + 1))
                    continue
                log.info("loop.stopped", passes=passes)
                return LoopResult(passes=passes, stop_reason="stopped")

            log.warning("loop.max_passes_reached", passes=passes)
            return LoopResult(passes=passes, stop_reason="max_passes")

        except (LLMError, AgentPassError) as e:
            log.error("loop.error", error=str(e), error_type=type(e).__name__, exc_info=True)
            self._emit(error_event(f"{type(e).__name__}: {e}", {"passes": passes}))
            return LoopResult(passes=passes, stop_reason="error", error=str(e))
        finally:
            clear_session()

    def _govern_history(self, pass_index: int) -> None:
        if self._amnesia is not None:
            self._amnesia.apply(self.history, pass_index)
        if self._dementia_limit:
            apply_dementia_policy(self.history, pass_index, self._dementia_limit, self._preserve_system)

    # ── Factory ───────────────────────────────────────────────────────────────

    @classmethod
    def from_settings(
        cls,
        settings,
        client: Optional[BaseLLMClient] = None,
        *,
        emit_event: EmitEvent = noop_emit,
        ask_human: Optional[AskHumanFn] = None,
        run_command: Optional[RunCommandFn] = None,
        no_human: bool = False,
        exit_fn: Optional[Callable[[int], Any]] = None,
        start_thinking: Optional[Callable[[], None]] = None,
        stop_thinking: Optional[Callable[[], None]] = None,
    ) -> "AgentLoop":
        """Create an AgentLoop from the agentpass Settings object."""
        if client is None:
            from agentpass.brain import LLMClientFactory
            client = LLMClientFactory.from_settings(settings)

        llm_config = LLMConfig(
            model=settings.llm.model,
            temperature=settings.llm.temperature,
            max_tokens=settings.llm.max_tokens,
            max_retries=settings.llm.max_retries,
        )
        guard = None
        if settings.failsafe.enabled:
            guard_kwargs = {"exit_fn": exit_fn} if exit_fn is not None else {}
            guard = RequestPayloadGuard(
                history_dir=settings.failsafe_history_dir,
                growth_factor=settings.failsafe.growth_factor,
                min_growth_bytes=settings.failsafe.min_growth_bytes,
                **guard_kwargs,
            )
        history_cfg = settings.history
        return cls(
            client,
            llm_config,
            run_command=run_command or default_run_command,
            emit_event=emit_event,
            ask_human=ask_human,
            approval_policy=CommandApprovalPolicy(settings.approval.allowlist),
            auto_approve=settings.agent.auto_approve,
            system_prompt=settings.agent.system_prompt or DEFAULT_SYSTEM_PROMPT,
            plan_reminder_message=settings.agent.plan_reminder_message,
            max_passes=settings.agent.max_session_passes,
            request_timeout_seconds=settings.llm.request_timeout_seconds,
            context_window=settings.llm.context_window,
            compaction_threshold=history_cfg.compaction_threshold if history_cfg.compaction_enabled else None,
            amnesia_threshold=history_cfg.amnesia_threshold if history_cfg.amnesia_enabled else None,
            dementia_limit=history_cfg.dementia_limit,
            preserve_system_messages=history_cfg.preserve_system_messages,
            payload_guard=guard,
            virtual_default_max_passes=settings.virtual_agent.default_max_passes,
            virtual_max_passes_cap=settings.virtual_agent.max_passes_cap,
            virtual_max_depth=settings.virtual_agent.max_depth,
            no_human=no_human,
            start_thinking=start_thinking,
            stop_thinking=stop_thinking,
        )
