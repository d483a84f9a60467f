"""
tests/unit/test_approval.py — Command approval and execution gateway

Covers:
  - is_command_string_safe: chaining, pipes, substitution, redirection
  - CommandApprovalPolicy: allowlist, subcommands, per-tool rules, session cache
  - ApprovalManager: auto-approval order and the human prompt loop
  - CommandExecutionGateway: authorize/execute for shell and virtual commands

Run with:
    pytest tests/unit/test_approval.py -v
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from agentpass.agent.approval import (
    APPROVE_ONCE,
    APPROVE_SESSION,
    REJECT,
    ApprovalManager,
    CommandApprovalPolicy,
    is_command_string_safe,
    parse_decision,
)
from agentpass.agent.command_execution import (
    ApprovalVerdict,
    CommandExecutionGateway,
    approval_status_message,
)
from agentpass.agent.plan import PlanCommand
from agentpass.agent.types import CommandOutcome, CommandResult
from agentpass.config.settings import AllowlistEntry
from agentpass.exceptions import ApprovalError


def _make_policy() -> CommandApprovalPolicy:
    return CommandApprovalPolicy([
        AllowlistEntry(name="ls"),
        AllowlistEntry(name="cat"),
        AllowlistEntry(name="sed"),
        AllowlistEntry(name="find"),
        AllowlistEntry(name="curl"),
        AllowlistEntry(name="ping"),
        AllowlistEntry(name="git", subcommands=["status", "diff"]),
        AllowlistEntry(name="pip", subcommands=["list"]),
    ])


def _cmd(run: str, shell: str | None = None, cwd: str | None = None) -> PlanCommand:
    return PlanCommand(run=run, shell=shell, cwd=cwd)


def _make_manager(answers=None, auto=False, policy=None, **kwargs) -> tuple[ApprovalManager, MagicMock, AsyncMock]:
    emit = MagicMock()
    ask = AsyncMock(side_effect=list(answers or []))
    manager = ApprovalManager(
        policy=policy or CommandApprovalPolicy(),
        ask_human=ask,
        get_auto_approve_flag=lambda: auto,
        emit_event=emit,
        **kwargs,
    )
    return manager, emit, ask


# ─────────────────────────────────────────────────────────────────────────────
# Policy
# ─────────────────────────────────────────────────────────────────────────────


class TestCommandStringSafety:
    @pytest.mark.parametrize("run", [
        "ls; rm -rf /",
        "ls && rm x",
        "cat a | sh",
        "echo `whoami`",
        "echo $(whoami)",
        "ls > out.txt",
        "sleep 10 &",
        "cat <<EOF",
        "sudo ls",
        "ls\nrm x",
    ])
    def test_unsafe(self, run):
        assert is_command_string_safe(run) is False

    def test_plain_command_is_safe(self):
        assert is_command_string_safe("ls -la src") is True

    def test_non_string_and_blank(self):
        assert is_command_string_safe(None) is False
        assert is_command_string_safe("   ") is False


class TestCommandApprovalPolicy:
    def test_allowlisted_command(self):
        assert _make_policy().is_preapproved(_cmd("ls -la"))

    def test_full_path_executable(self):
        assert _make_policy().is_preapproved(_cmd("/bin/ls"))

    def test_unknown_command(self):
        assert not _make_policy().is_preapproved(_cmd("rm -rf build"))

    def test_subcommand_must_match(self):
        policy = _make_policy()
        assert policy.is_preapproved(_cmd("git status"))
        assert not policy.is_preapproved(_cmd("git push"))

    def test_interpreter_subcommand_must_be_last(self):
        policy = _make_policy()
        assert policy.is_preapproved(_cmd("pip list"))
        assert not policy.is_preapproved(_cmd("pip list --outdated"))

    def test_non_posix_shell_is_not_preapproved(self):
        assert not _make_policy().is_preapproved(_cmd("ls", shell="powershell"))

    def test_sed_in_place_rejected(self):
        policy = _make_policy()
        assert policy.is_preapproved(_cmd("sed -n 1,5p file.txt"))
        assert not policy.is_preapproved(_cmd("sed -i s/a/b/ file.txt"))

    def test_find_exec_rejected(self):
        assert not _make_policy().is_preapproved(_cmd("find . -name '*.pyc' -delete"))
        assert not _make_policy().is_preapproved(_cmd("find . -exec rm {} +"))

    def test_curl_must_be_read_only(self):
        policy = _make_policy()
        assert policy.is_preapproved(_cmd("curl -s https://example.com"))
        assert not policy.is_preapproved(_cmd("curl -X POST https://example.com"))
        assert not policy.is_preapproved(_cmd("curl -d a=1 https://example.com"))
        assert not policy.is_preapproved(_cmd("curl -o page.html https://example.com"))

    def test_ping_needs_small_count(self):
        policy = _make_policy()
        assert policy.is_preapproved(_cmd("ping -c 2 example.com"))
        assert not policy.is_preapproved(_cmd("ping example.com"))
        assert not policy.is_preapproved(_cmd("ping -c 50 example.com"))

    def test_session_approval_is_exact(self):
        policy = CommandApprovalPolicy()
        command = _cmd("make test", cwd="app")
        policy.approve_for_session(command)
        assert policy.is_session_approved(_cmd("make test", cwd="app"))
        assert not policy.is_session_approved(_cmd("make test", cwd="other"))
        policy.reset_session()
        assert not policy.is_session_approved(command)

    def test_default_shell_and_cwd_share_signature(self):
        policy = CommandApprovalPolicy()
        policy.approve_for_session(_cmd("make"))
        assert policy.is_session_approved(_cmd("make", shell="bash", cwd="."))


# ─────────────────────────────────────────────────────────────────────────────
# Manager
# ─────────────────────────────────────────────────────────────────────────────


class TestParseDecision:
    def test_choices(self):
        assert parse_decision("1") == APPROVE_ONCE
        assert parse_decision(" Y ") == APPROVE_ONCE
        assert parse_decision("2") == APPROVE_SESSION
        assert parse_decision("no") == REJECT
        assert parse_decision("maybe") is None
        assert parse_decision(None) is None


class TestApprovalManager:
    def test_allowlist_wins_over_flag(self):
        manager, _, _ = _make_manager(auto=True, policy=_make_policy())
        assert manager.should_auto_approve(_cmd("ls")).source == "allowlist"

    def test_session_before_flag(self):
        manager, _, _ = _make_manager(auto=True)
        manager.policy.approve_for_session(_cmd("make"))
        assert manager.should_auto_approve(_cmd("make")).source == "session"

    def test_flag(self):
        manager, _, _ = _make_manager(auto=True)
        assert manager.should_auto_approve(_cmd("make")).source == "flag"

    def test_not_approved(self):
        manager, _, _ = _make_manager()
        assert manager.should_auto_approve(_cmd("make")).approved is False
        assert manager.should_auto_approve(None).approved is False

    @pytest.mark.asyncio
    async def test_human_approves_once(self):
        manager, emit, ask = _make_manager(answers=["1"])
        outcome = await manager.request_human_decision(_cmd("make"))
        assert outcome.decision == APPROVE_ONCE
        assert emit.call_args_list[0][0][0]["type"] == "request-input"
        assert not manager.policy.is_session_approved(_cmd("make"))

    @pytest.mark.asyncio
    async def test_human_approves_for_session(self):
        manager, _, _ = _make_manager(answers=["2"])
        await manager.request_human_decision(_cmd("make"))
        assert manager.policy.is_session_approved(_cmd("make"))

    @pytest.mark.asyncio
    async def test_invalid_answer_reprompts(self):
        manager, emit, ask = _make_manager(answers=["what", "3"])
        outcome = await manager.request_human_decision(_cmd("make"))
        assert outcome.rejected
        assert ask.await_count == 2
        warnings = [c[0][0] for c in emit.call_args_list if c[0][0]["type"] == "status"]
        assert warnings[0]["message"] == "Please enter 1, 2, or 3."

    @pytest.mark.asyncio
    async def test_prompt_limit_rejects(self):
        manager, _, _ = _make_manager(answers=["x", "y?"], max_prompts=2)
        outcome = await manager.request_human_decision(_cmd("make"))
        assert outcome.rejected
        assert outcome.reason == "no_valid_answer"

    @pytest.mark.asyncio
    async def test_no_input_channel(self):
        manager = ApprovalManager(policy=CommandApprovalPolicy())
        with pytest.raises(ApprovalError):
            await manager.request_human_decision(_cmd("make"))


# ─────────────────────────────────────────────────────────────────────────────
# Execution gateway
# ─────────────────────────────────────────────────────────────────────────────


def _make_gateway(run_result=None, manager=None, virtual=None) -> tuple[CommandExecutionGateway, AsyncMock, MagicMock]:
    runner = AsyncMock(return_value=run_result or CommandResult(stdout="ok", exit_code=0))
    emit = MagicMock()
    gateway = CommandExecutionGateway(
        run_command=runner,
        approval_manager=manager,
        virtual_executor=virtual,
        emit_event=emit,
    )
    return gateway, runner, emit


class TestCommandExecutionGateway:
    @pytest.mark.asyncio
    async def test_virtual_commands_skip_approval(self):
        manager, _, ask = _make_manager()
        gateway, _, _ = _make_gateway(manager=manager)
        verdict = await gateway.authorize(_cmd("research x", shell="openagent"))
        assert verdict.approved and verdict.source == "virtual"
        ask.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_human_rejection(self):
        manager, _, _ = _make_manager(answers=["3"])
        gateway, _, _ = _make_gateway(manager=manager)
        verdict = await gateway.authorize(_cmd("make"))
        assert verdict.rejected
        assert verdict.source == "human"

    @pytest.mark.asyncio
    async def test_execute_passes_run_cwd_timeout_shell(self):
        gateway, runner, _ = _make_gateway()
        command = PlanCommand(run="  pytest -q ", cwd="src", timeout_sec=30, shell="bash")
        outcome = await gateway.execute(command)
        runner.assert_awaited_once_with("pytest -q", "src", 30, "bash")
        assert outcome.result.exit_code == 0
        assert outcome.execution_details["type"] == "EXECUTE"
        assert outcome.execution_details["command"]["run"] == "pytest -q"

    @pytest.mark.asyncio
    async def test_default_timeout_and_cwd(self):
        gateway, runner, _ = _make_gateway()
        await gateway.execute(_cmd("ls"))
        runner.assert_awaited_once_with("ls", ".", 60, None)

    @pytest.mark.asyncio
    async def test_mapping_result_is_converted(self):
        gateway, _, _ = _make_gateway(run_result={"stdout": "x", "exitCode": 2})
        outcome = await gateway.execute(_cmd("ls"))
        assert outcome.result.exit_code == 2
        assert outcome.result.stdout == "x"

    @pytest.mark.asyncio
    async def test_runner_exception_becomes_failure(self):
        gateway, runner, emit = _make_gateway()
        runner.side_effect = OSError("spawn failed")
        outcome = await gateway.execute(_cmd("ls"))
        assert outcome.result.exit_code == 1
        assert outcome.result.stderr == "spawn failed"
        assert outcome.execution_details["error"] == {"message": "spawn failed"}
        assert emit.call_args[0][0]["message"] == "Command execution threw an exception."

    @pytest.mark.asyncio
    async def test_virtual_without_executor(self):
        gateway, runner, _ = _make_gateway()
        outcome = await gateway.execute(_cmd("research x", shell="openagent"))
        assert outcome.result.exit_code == 1
        assert "not available" in outcome.result.stderr
        runner.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_virtual_dispatch(self):
        virtual = MagicMock()
        expected = CommandOutcome(result=CommandResult(stdout="found it", exit_code=0))
        virtual.execute = AsyncMock(return_value=expected)
        gateway, runner, _ = _make_gateway(virtual=virtual)
        outcome = await gateway.execute(_cmd("research x", shell="openagent"))
        assert outcome is expected
        runner.assert_not_awaited()


class TestApprovalStatusMessage:
    def test_messages(self):
        manager_outcome = MagicMock(decision=APPROVE_ONCE)
        assert approval_status_message(ApprovalVerdict(True, "human", manager_outcome)) == \
            "Command approved for single execution."
        session_outcome = MagicMock(decision=APPROVE_SESSION)
        assert approval_status_message(ApprovalVerdict(True, "human", session_outcome)) == \
            "Command approved for the remainder of the session."
        assert approval_status_message(ApprovalVerdict(True, "flag")) == "Command auto-approved via flag."
        assert approval_status_message(ApprovalVerdict(True, "allowlist")) is None
