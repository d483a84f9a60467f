"""
tests/unit/test_pass_executor.py — Pass Executor

Covers:
  - pass index validation
  - canceled requests and missing tool output end the session
  - invalid JSON, schema and protocol failures become observations
  - the execute loop: run -> observation -> next step in the same pass
  - dependencies, failures and the final plan-update entry
  - human rejection of a command
  - the failsafe baseline tracks the request sent after compaction

Run with:
    pytest tests/unit/test_pass_executor.py -v
"""

from __future__ import annotations

import json
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentpass.agent.approval import ApprovalManager, CommandApprovalPolicy
from agentpass.agent.command_execution import CommandExecutionGateway
from agentpass.agent.esc_state import EscState
from agentpass.agent.history import HistoryStore
from agentpass.agent.history_compactor import HistoryCompactor
from agentpass.agent.history_messages import create_system_entry, create_user_entry
from agentpass.agent.model_gateway import ModelRequestGateway
from agentpass.agent.pass_executor import PassExecutor
from agentpass.agent.payload_guard import RequestPayloadGuard, estimate_request_payload_size
from agentpass.agent.plan_reminder import PlanReminderTracker
from agentpass.agent.types import CommandResult
from agentpass.brain.llm_client import BaseLLMClient
from agentpass.brain.types import LLMConfig, LLMResponse, ToolCall
from agentpass.exceptions import PassError


class _ScriptedClient(BaseLLMClient):
    """Returns one scripted reply per generate() call."""

    def __init__(self, replies: list[Any]):
        super().__init__()
        self._replies = list(replies)

    async def generate(self, messages, config, tools=None, tool_choice=None, on_partial=None):
        reply = self._replies.pop(0)
        if isinstance(reply, LLMResponse):
            return reply
        raw = reply if isinstance(reply, str) else json.dumps(reply)
        return LLMResponse(tool_calls=[ToolCall(id="call", name="open-agent", raw_arguments=raw)])

    async def health_check(self) -> bool:
        return True


def _make_executor(
    replies: list[Any],
    run_result: Optional[CommandResult] = None,
    approval_manager: Optional[ApprovalManager] = None,
    esc_state: Optional[EscState] = None,
) -> tuple[PassExecutor, MagicMock, AsyncMock, HistoryStore]:
    emit = MagicMock()
    history = HistoryStore([create_system_entry("sys"), create_user_entry("inspect the repo", 1)])
    run_command = AsyncMock(return_value=run_result or CommandResult(stdout="README.md\n", exit_code=0))
    executor = PassExecutor(
        model_gateway=ModelRequestGateway(_ScriptedClient(replies), LLMConfig(model="gpt-4o"), emit_event=emit),
        command_gateway=CommandExecutionGateway(run_command, approval_manager=approval_manager, emit_event=emit),
        history=history,
        emit_event=emit,
        reminder_tracker=PlanReminderTracker(),
        esc_state=esc_state,
    )
    return executor, emit, run_command, history


def _events(emit: MagicMock, kind: str) -> list[dict]:
    return [c[0][0] for c in emit.call_args_list if c[0][0]["type"] == kind]


def _step(step_id: str, run: Optional[str] = "ls", status: str = "pending", **extra) -> dict:
    step: dict[str, Any] = {"id": step_id, "title": f"step {step_id}", "status": status}
    if run is not None:
        step["command"] = {"run": run, "shell": "bash"}
    step.update(extra)
    return step


def _last_plan_update(history: HistoryStore) -> dict:
    for entry in reversed(history.entries):
        if entry.role == "user" and isinstance(entry.content, str) and '"plan-update"' in entry.content:
            return json.loads(entry.content)
    raise AssertionError("no plan-update entry in history")


# ─────────────────────────────────────────────────────────────────────────────
# Request outcomes
# ─────────────────────────────────────────────────────────────────────────────


class TestRequestOutcomes:
    @pytest.mark.asyncio
    async def test_rejects_non_integer_pass(self):
        executor, _, _, _ = _make_executor([])
        with pytest.raises(PassError):
            await executor.execute("1")
        with pytest.raises(PassError):
            await executor.execute(True)

    @pytest.mark.asyncio
    async def test_canceled_request_stops(self):
        esc = EscState()
        esc.trigger("pressed")
        executor, _, run_command, history = _make_executor(
            [{"message": "hi", "plan": []}], esc_state=esc,
        )
        assert await executor.execute(1) is False
        assert '"escape_key"' in history.last().content
        run_command.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_tool_output(self):
        executor, emit, _, _ = _make_executor([LLMResponse(content="plain text")])
        assert await executor.execute(1) is False
        errors = _events(emit, "error")
        assert errors[-1]["message"] == "OpenAI response did not include text output."

    @pytest.mark.asyncio
    async def test_context_usage_emitted(self):
        executor, emit, _, _ = _make_executor([{"message": "hello", "plan": []}])
        await executor.execute(1)
        (usage,) = _events(emit, "context-usage")
        assert usage["usage"]["used"] > 0
        assert usage["usage"]["total"] == 128_000


class TestValidationFailures:
    @pytest.mark.asyncio
    async def test_invalid_json(self):
        executor, emit, _, history = _make_executor(["this is not json"])
        assert await executor.execute(2) is True
        assert _events(emit, "error")[-1]["message"] == "LLM returned invalid JSON."
        data = json.loads(history.last().content)
        assert data["payload"]["json_parse_error"] is True
        assert history.last().pass_index == 2

    @pytest.mark.asyncio
    async def test_schema_failure(self):
        executor, emit, _, history = _make_executor([{"message": "missing plan"}])
        assert await executor.execute(1) is True
        (event,) = _events(emit, "schema_validation_failed")
        assert event["errors"]
        assert json.loads(history.last().content)["payload"]["schema_validation_error"] is True

    @pytest.mark.asyncio
    async def test_protocol_failure(self):
        executor, emit, run_command, history = _make_executor([
            {"message": "plan", "plan": [_step("1", run=None)]},
        ])
        assert await executor.execute(1) is True
        statuses = [e["message"] for e in _events(emit, "status")]
        assert "Assistant response failed protocol validation." in statuses
        assert json.loads(history.last().content)["payload"]["response_validation_error"] is True
        run_command.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_raw_reply_recorded_as_assistant_entry(self):
        executor, _, _, history = _make_executor([{"message": "All set.", "plan": []}])
        await executor.execute(1)
        assert history.last().role == "assistant"
        assert json.loads(history.last().content)["message"] == "All set."


# ─────────────────────────────────────────────────────────────────────────────
# Plan execution
# ─────────────────────────────────────────────────────────────────────────────


class TestPlanExecution:
    @pytest.mark.asyncio
    async def test_empty_plan_ends_session(self):
        executor, emit, _, _ = _make_executor([{"message": "All set.", "plan": []}])
        assert await executor.execute(1) is False
        assert _events(emit, "assistant-message") == [{"type": "assistant-message", "message": "All set."}]

    @pytest.mark.asyncio
    async def test_runs_command_and_records_observation(self):
        executor, emit, run_command, history = _make_executor([
            {"message": "Listing files.", "plan": [_step("1", run="ls")]},
        ])
        assert await executor.execute(1) is True

        run_command.assert_awaited_once_with("ls", ".", 60, "bash")
        (result,) = _events(emit, "command-result")
        assert result["result"]["exit_code"] == 0
        assert result["execution"]["type"] == "EXECUTE"

        update = _last_plan_update(history)
        step = update["plan"][0]
        assert step["status"] == "completed"
        assert step["observation"]["observation_for_llm"]["stdout"] == "README.md\n"

    @pytest.mark.asyncio
    async def test_dependent_steps_run_in_one_pass(self):
        executor, _, run_command, history = _make_executor([
            {"message": "Two steps.", "plan": [
                _step("b", run="cat README.md", waitingForId=["a"]),
                _step("a", run="ls"),
            ]},
        ])
        await executor.execute(1)
        assert [c[0][0] for c in run_command.await_args_list] == ["ls", "cat README.md"]
        assert [s["status"] for s in _last_plan_update(history)["plan"]] == ["completed", "completed"]

    @pytest.mark.asyncio
    async def test_failed_dependency_blocks_dependent(self):
        executor, _, run_command, history = _make_executor(
            [{"message": "Try.", "plan": [_step("a", run="make"), _step("b", run="make test", waitingForId=["a"])]}],
            run_result=CommandResult(stderr="boom", exit_code=2),
        )
        assert await executor.execute(1) is True
        run_command.assert_awaited_once()
        plan = _last_plan_update(history)["plan"]
        assert [s["status"] for s in plan] == ["failed", "pending"]

    @pytest.mark.asyncio
    async def test_cwd_and_timeout_forwarded(self):
        executor, _, run_command, _ = _make_executor([
            {"message": "x", "plan": [_step("1", command={"run": "ls", "shell": "sh", "cwd": "/tmp", "timeout_sec": 5})]},
        ])
        await executor.execute(1)
        run_command.assert_awaited_once_with("ls", "/tmp", 5, "sh")

    @pytest.mark.asyncio
    async def test_blocked_open_steps_remind(self):
        executor, emit, run_command, history = _make_executor([
            {"message": "Thinking.", "plan": [_step("1", waitingForId=["ghost"])]},
        ])
        assert await executor.execute(1) is True
        run_command.assert_not_awaited()
        assert history.last().role == "assistant"
        assert json.loads(history.last().content)["type"] == "plan-reminder"


class TestRejection:
    @pytest.mark.asyncio
    async def test_human_rejects_command(self):
        manager = ApprovalManager(CommandApprovalPolicy(), ask_human=AsyncMock(return_value="3"))
        executor, emit, run_command, history = _make_executor(
            [{"message": "Deleting.", "plan": [_step("1", run="rm -rf build")]}],
            approval_manager=manager,
        )
        assert await executor.execute(1) is True
        run_command.assert_not_awaited()
        statuses = [e["message"] for e in _events(emit, "status")]
        assert "Command execution canceled by human request." in statuses
        plan = _last_plan_update(history)["plan"]
        assert plan[0]["observation"]["canceled_by_human"] is True

    @pytest.mark.asyncio
    async def test_human_approves_once(self):
        manager = ApprovalManager(CommandApprovalPolicy(), ask_human=AsyncMock(return_value="1"))
        executor, emit, run_command, _ = _make_executor(
            [{"message": "Building.", "plan": [_step("1", run="make")]}],
            approval_manager=manager,
        )
        await executor.execute(1)
        run_command.assert_awaited_once()
        statuses = [e["message"] for e in _events(emit, "status")]
        assert "Command approved for single execution." in statuses


class TestPayloadFailsafe:
    def _make(self, tmp_path, replies: list[Any]) -> tuple[PassExecutor, RequestPayloadGuard, HistoryStore]:
        emit = MagicMock()
        client = _ScriptedClient(replies)
        config = LLMConfig(model="gpt-4o")
        history = HistoryStore([create_system_entry("sys")])
        for i in range(8):
            history.append(create_user_entry(f"output chunk {i}: " + "x" * 600, 1))
        guard = RequestPayloadGuard(tmp_path / "failsafe", exit_fn=MagicMock())
        executor = PassExecutor(
            model_gateway=ModelRequestGateway(client, config, emit_event=emit),
            command_gateway=CommandExecutionGateway(AsyncMock(), emit_event=emit),
            history=history,
            emit_event=emit,
            reminder_tracker=PlanReminderTracker(),
            history_compactor=HistoryCompactor(client, config, context_window=1000),
            payload_guard=guard,
        )
        return executor, guard, history

    @pytest.mark.asyncio
    async def test_baseline_is_the_compacted_request(self, tmp_path):
        executor, guard, history = self._make(tmp_path, [
            LLMResponse(content="Eight chunks of x output."),
            {"message": "All set.", "plan": []},
        ])
        before = estimate_request_payload_size(history, "gpt-4o")

        assert await executor.execute(2) is False

        assert history.last().role == "assistant"
        sent = HistoryStore(history.entries[:-1])
        assert sent[1].content.startswith("Compacted memory:")
        assert guard.baseline == estimate_request_payload_size(sent, "gpt-4o")
        assert guard.baseline < before

    @pytest.mark.asyncio
    async def test_uncompacted_request_sets_baseline(self, tmp_path):
        executor, guard, history = self._make(tmp_path, [
            LLMResponse(content=""),
            {"message": "All set.", "plan": []},
        ])
        before = estimate_request_payload_size(history, "gpt-4o")
        await executor.execute(2)
        assert guard.baseline == before
