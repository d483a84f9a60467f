"""
tests/integration/test_agent_loop.py — Agent Loop Integration Tests

Runs whole sessions through AgentLoop with real component wiring and a
scripted LLM client. Shell commands go through an AsyncMock runner, so
nothing touches the host.

Coverage:
  - plan -> command -> observation -> completion across two passes
  - human rejection feeds back into the next pass
  - pass budget exhaustion
  - no-human mode auto-continues until "done"
  - virtual sub-agent commands run on a private history
  - sub-agents get plan reminders for blocked steps
  - invalid JSON is recovered on the next pass
  - provider errors end the session with stop_reason "error"

Run:
    pytest tests/integration/test_agent_loop.py -v
"""

from __future__ import annotations

import json
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentpass.agent.approval import CommandApprovalPolicy
from agentpass.agent.loop import NO_HUMAN_AUTO_RESPONSE, AgentLoop
from agentpass.agent.prompts import SUB_AGENT_SYSTEM_PROMPT
from agentpass.agent.types import CommandResult
from agentpass.brain.llm_client import BaseLLMClient, LLMInvalidRequestError
from agentpass.brain.types import LLMConfig, LLMResponse, ToolCall
from agentpass.config.settings import AllowlistEntry


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


class _ScriptedClient(BaseLLMClient):
    """Serves scripted replies in order and records every request."""

    def __init__(self, replies: list[Any]):
        super().__init__()
        self._replies = list(replies)
        self.requests: list[list] = []

    async def generate(self, messages, config, tools=None, tool_choice=None, on_partial=None):
        self.requests.append(messages)
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        raw = reply if isinstance(reply, str) else json.dumps(reply)
        return LLMResponse(tool_calls=[ToolCall(id=f"call-{len(self.requests)}", name="open-agent", raw_arguments=raw)])

    async def health_check(self) -> bool:
        return True


def _make_loop(
    replies: list[Any],
    *,
    ask_human: Optional[AsyncMock] = None,
    allowlist: tuple[str, ...] = ("ls",),
    auto_approve: bool = False,
    no_human: bool = False,
    max_passes: int = 10,
    run_result: Optional[CommandResult] = None,
) -> tuple[AgentLoop, _ScriptedClient, AsyncMock, MagicMock]:
    client = _ScriptedClient(replies)
    run_command = AsyncMock(return_value=run_result or CommandResult(stdout="README.md\nsrc\n", exit_code=0, runtime_ms=4))
    emit = MagicMock()
    loop = AgentLoop(
        client,
        LLMConfig(model="gpt-4o"),
        run_command=run_command,
        emit_event=emit,
        ask_human=ask_human,
        approval_policy=CommandApprovalPolicy([AllowlistEntry(name=name) for name in allowlist]),
        auto_approve=auto_approve,
        max_passes=max_passes,
        no_human=no_human,
        session_id="sess_test",
    )
    return loop, client, run_command, emit


def _step(step_id: str, status: str = "pending", **command) -> dict:
    step: dict[str, Any] = {"id": step_id, "title": f"step {step_id}", "status": status}
    if command:
        step["command"] = command
    return step


def _reply(message: str, *steps: dict) -> dict:
    return {"message": message, "plan": list(steps)}


def _messages(emit: MagicMock, kind: str) -> list[str]:
    return [c[0][0].get("message") for c in emit.call_args_list if c[0][0]["type"] == kind]


def _plan_updates(loop: AgentLoop) -> list[dict]:
    updates = []
    for entry in loop.history:
        if entry.role == "user" and isinstance(entry.content, str) and '"plan-update"' in entry.content:
            updates.append(json.loads(entry.content))
    return updates


# ─────────────────────────────────────────────────────────────────────────────
# Sessions
# ─────────────────────────────────────────────────────────────────────────────


class TestFullSession:
    @pytest.mark.asyncio
    async def test_plan_command_completion(self):
        loop, client, run_command, emit = _make_loop([
            _reply("Listing the repository.", _step("1", shell="bash", run="ls")),
            _reply("The repo has a README and src/.", _step("1", status="completed", shell="bash", run="ls")),
        ])

        result = await loop.run("What is in this repo?")

        assert result.stop_reason == "stopped"
        assert result.passes == 2
        run_command.assert_awaited_once_with("ls", ".", 60, "bash")
        assert "Plan completed." in _messages(emit, "status")
        assert _messages(emit, "assistant-message") == [
            "Listing the repository.",
            "The repo has a README and src/.",
        ]

        (update,) = _plan_updates(loop)
        assert update["plan"][0]["status"] == "completed"
        assert update["plan"][0]["observation"]["observation_for_llm"]["stdout"] == "README.md\nsrc\n"

        # Second request saw the observation from the first pass.
        second_request = client.requests[1]
        assert any('"plan-update"' in m.content for m in second_request)
        assert loop.plan_manager.active == []

    @pytest.mark.asyncio
    async def test_history_shape(self):
        loop, _, _, _ = _make_loop([_reply("Nothing to do.")])
        await loop.run("hello")
        roles = [(e.role, e.pass_index) for e in loop.history]
        assert roles == [("system", None), ("user", 1), ("assistant", 1)]

    @pytest.mark.asyncio
    async def test_rejection_feeds_back(self):
        ask_human = AsyncMock(return_value="3")
        loop, client, run_command, emit = _make_loop(
            [
                _reply("Cleaning build output.", _step("1", shell="bash", run="rm -rf build")),
                _reply("Understood, leaving build/ alone."),
            ],
            ask_human=ask_human,
        )

        result = await loop.run("Clean the build")

        assert result.passes == 2
        run_command.assert_not_awaited()
        ask_human.assert_awaited_once()
        assert "Command execution canceled by human request." in _messages(emit, "status")
        (update,) = _plan_updates(loop)
        assert update["plan"][0]["observation"]["canceled_by_human"] is True

    @pytest.mark.asyncio
    async def test_session_approval_skips_later_prompts(self):
        ask_human = AsyncMock(return_value="2")
        step = _step("1", shell="bash", run="make test")
        loop, _, run_command, _ = _make_loop(
            [_reply("Testing.", step), _reply("Again.", _step("2", shell="bash", run="make test")), _reply("Done.")],
            ask_human=ask_human,
        )
        await loop.run("Run the tests twice")
        assert run_command.await_count == 2
        ask_human.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_max_passes(self):
        replies = [_reply("Still going.", _step(str(i), shell="bash", run="ls")) for i in range(3)]
        loop, _, run_command, _ = _make_loop(replies, max_passes=3)

        result = await loop.run("Loop forever")

        assert result.stop_reason == "max_passes"
        assert result.passes == 3
        assert run_command.await_count == 3

    @pytest.mark.asyncio
    async def test_no_human_continues_until_done(self):
        loop, _, _, _ = _make_loop(
            [_reply("Working on it."), _reply("done")],
            no_human=True,
        )

        result = await loop.run("Do the thing")

        assert result.stop_reason == "stopped"
        assert result.passes == 2
        assert loop.no_human is False
        auto = [e for e in loop.history if e.role == "user" and e.content == NO_HUMAN_AUTO_RESPONSE]
        assert len(auto) == 1
        assert auto[0].pass_index == 2

    @pytest.mark.asyncio
    async def test_invalid_json_recovers(self):
        loop, _, _, emit = _make_loop(["{not json", _reply("Fixed my reply.")])
        result = await loop.run("hello")
        assert result.passes == 2
        assert "LLM returned invalid JSON." in _messages(emit, "error")
        assert _messages(emit, "assistant-message") == ["Fixed my reply."]

    @pytest.mark.asyncio
    async def test_provider_error_ends_session(self):
        loop, _, _, emit = _make_loop([LLMInvalidRequestError("bad tool schema", provider="openai")])
        result = await loop.run("hello")
        assert result.stop_reason == "error"
        assert result.error == "bad tool schema"
        assert any("bad tool schema" in m for m in _messages(emit, "error"))


class TestVirtualAgent:
    @pytest.mark.asyncio
    async def test_sub_agent_result_becomes_observation(self):
        loop, client, run_command, emit = _make_loop([
            _reply("Delegating research.", _step("1", shell="openagent", run="research where is config loaded")),
            _reply("The loader lives in config/settings.py."),
            _reply("Research finished."),
        ])

        result = await loop.run("Where is config loaded?")

        assert result.passes == 2
        run_command.assert_not_awaited()

        sub_request = client.requests[1]
        assert sub_request[0].content == SUB_AGENT_SYSTEM_PROMPT
        assert sub_request[1].content == "where is config loaded"

        (update,) = _plan_updates(loop)
        step = update["plan"][0]
        assert step["status"] == "completed"
        assert step["observation"]["observation_for_llm"]["stdout"] == "The loader lives in config/settings.py."

        statuses = _messages(emit, "status")
        assert "Launching virtual agent task (Virtual agent: research)." in statuses
        assert "Virtual agent task (Virtual agent: research) completed successfully." in statuses

        # The sub-agent conversation stays out of the parent history.
        assistant = [json.loads(e.content)["message"] for e in loop.history if e.role == "assistant"]
        assert assistant == ["Delegating research.", "Research finished."]

    @pytest.mark.asyncio
    async def test_sub_agent_is_reminded_of_blocked_steps(self):
        blocked = {"id": "a", "title": "Read loader", "status": "pending",
                   "waitingForId": ["ghost"], "command": {"run": "cat config.py", "shell": "bash"}}
        loop, client, run_command, emit = _make_loop([
            _reply("Delegating research.", _step("1", shell="openagent", run="research where is config loaded")),
            _reply("Looking.", blocked),
            _reply("The loader lives in config/settings.py."),
            _reply("Research finished."),
        ])

        await loop.run("Where is config loaded?")

        run_command.assert_not_awaited()
        sub_request = client.requests[2]
        assert any('"plan-reminder"' in m.content for m in sub_request)

        (update,) = _plan_updates(loop)
        stdout = update["plan"][0]["observation"]["observation_for_llm"]["stdout"]
        assert stdout == "Looking.\n\n---\n\nThe loader lives in config/settings.py."
