"""
agent/command_execution.py — Command Execution Gateway

Dispatches an approved plan command:
  - ordinary commands go to the injected shell runner with (run, cwd,
    timeout) after the approval gate has cleared them
  - virtual commands (shell "openagent") run a bounded sub-agent

Runner exceptions never escape: they become a failed CommandResult so the
model sees the failure as an observation.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Optional

from agentpass.agent.approval import ApprovalManager, ApprovalOutcome, APPROVE_ONCE
from agentpass.agent.plan import PlanCommand
from agentpass.agent.types import (
    CommandOutcome,
    CommandResult,
    EmitEvent,
    RunCommandFn,
    noop_emit,
    status_event,
)
from agentpass.observability.logger import get_logger

if TYPE_CHECKING:
    from agentpass.agent.virtual_agent import VirtualAgentExecutor

log = get_logger(__name__)

DEFAULT_TIMEOUT_SEC = 60


class ApprovalVerdict:
    """Result of the approval gate for one command."""

    def __init__(self, approved: bool, source: Optional[str] = None, outcome: Optional[ApprovalOutcome] = None):
        self.approved = approved
        self.source = source            # allowlist | session | flag | human | virtual | none
        self.outcome = outcome

    @property
    def rejected(self) -> bool:
        return not self.approved

    def __repr__(self) -> str:
        return f"<ApprovalVerdict approved={self.approved} source={self.source}>"


class CommandExecutionGateway:

    def __init__(
        self,
        run_command: RunCommandFn,
        approval_manager: Optional[ApprovalManager] = None,
        virtual_executor: Optional["VirtualAgentExecutor"] = None,
        emit_event: EmitEvent = noop_emit,
        default_timeout_sec: float = DEFAULT_TIMEOUT_SEC,
    ):
        self._run = run_command
        self.approval_manager = approval_manager
        self.virtual_executor = virtual_executor
        self._emit = emit_event
        self._default_timeout = default_timeout_sec

    # ── Approval gate ─────────────────────────────────────────────────────────

    async def authorize(self, command: PlanCommand) -> ApprovalVerdict:
        if command.is_virtual:
            return ApprovalVerdict(approved=True, source="virtual")
        if self.approval_manager is None:
            return ApprovalVerdict(approved=True, source="none")

        auto = self.approval_manager.should_auto_approve(command)
        if auto.approved:
            return ApprovalVerdict(approved=True, source=auto.source)

        outcome = await self.approval_manager.request_human_decision(command)
        if outcome.rejected:
            return ApprovalVerdict(approved=False, source="human", outcome=outcome)
        return ApprovalVerdict(approved=True, source="human", outcome=outcome)

    # ── Execution ─────────────────────────────────────────────────────────────

    async def execute(self, command: PlanCommand) -> CommandOutcome:
        if command.is_virtual:
            if self.virtual_executor is None:
                message = "Virtual agent commands are not available in this context."
                return CommandOutcome(
                    result=CommandResult.failure(message),
                    execution_details={"type": "VIRTUAL", "command": command.to_dict(), "error": {"message": message}},
                )
            return await self.virtual_executor.execute(command)
        return await self._execute_shell(command)

    async def _execute_shell(self, command: PlanCommand) -> CommandOutcome:
        run = (command.run or "").strip()
        cwd = command.cwd or "."
        timeout = command.timeout_sec if isinstance(command.timeout_sec, (int, float)) else self._default_timeout
        details = {"type": "EXECUTE", "command": {**command.to_dict(), "run": run}}
        started = time.monotonic()

        log.info("command.execute", run=run, cwd=cwd, timeout_sec=timeout)
        try:
            raw = await self._run(run, cwd, timeout, command.shell)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            runtime_ms = int((time.monotonic() - started) * 1000)
            log.error("command.exception", run=run, error=str(e), exc_info=True)
            self._emit(status_event("error", "Command execution threw an exception.", {"message": str(e)}))
            return CommandOutcome(
                result=CommandResult.failure(str(e), runtime_ms=runtime_ms),
                execution_details={**details, "error": {"message": str(e)}},
            )

        result = raw if isinstance(raw, CommandResult) else CommandResult.from_mapping(raw or {})
        log.info(
            "command.complete",
            run=run,
            exit_code=result.exit_code,
            killed=result.killed,
            runtime_ms=result.runtime_ms,
        )
        return CommandOutcome(result=result, execution_details=details)


def approval_status_message(verdict: ApprovalVerdict) -> Optional[str]:
    """Status line announcing how a command was approved, if any."""
    if verdict.source == "human" and verdict.outcome is not None:
        if verdict.outcome.decision == APPROVE_ONCE:
            return "Command approved for single execution."
        return "Command approved for the remainder of the session."
    if verdict.source == "flag":
        return "Command auto-approved via flag."
    return None
