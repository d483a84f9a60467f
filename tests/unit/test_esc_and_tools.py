"""
tests/unit/test_esc_and_tools.py — Interrupt primitives and command helpers

Covers:
  - EscState lifecycle: idle -> armed -> triggered -> idle
  - CancellationRegistry: innermost-first cancellation
  - tools.output: stream combination, filtering, tailing, previews
  - tools.shell.run_command against real subprocesses

Run with:
    pytest tests/unit/test_esc_and_tools.py -v
"""

from __future__ import annotations

import asyncio
import sys
from unittest.mock import MagicMock

import pytest

from agentpass.agent.cancellation import CancellationRegistry
from agentpass.agent.esc_state import EscState
from agentpass.tools.output import (
    SNIP_MARKER,
    apply_filter,
    build_preview,
    combine_std_streams,
    tail_lines,
    truncate_output,
)
from agentpass.tools.shell import _safe_env, run_command


# ─────────────────────────────────────────────────────────────────────────────
# EscState
# ─────────────────────────────────────────────────────────────────────────────


class TestEscState:
    @pytest.mark.asyncio
    async def test_lifecycle(self):
        esc = EscState()
        assert esc.state == "idle"
        waiter = esc.create_waiter()
        assert esc.state == "armed"

        esc.trigger({"key": "escape"})
        assert esc.state == "triggered"
        assert await waiter.future == {"key": "escape"}

        waiter.cleanup()
        esc.reset()
        assert esc.state == "idle"

    @pytest.mark.asyncio
    async def test_trigger_invokes_active_cancel_once(self):
        esc = EscState()
        cancel = MagicMock()
        esc.set_active_cancel(cancel)
        esc.trigger()
        esc.trigger()
        cancel.assert_called_once()

    @pytest.mark.asyncio
    async def test_second_waiter_rejected_while_armed(self):
        esc = EscState()
        waiter = esc.create_waiter()
        with pytest.raises(RuntimeError):
            esc.create_waiter()
        waiter.cleanup()
        esc.create_waiter().cleanup()

    @pytest.mark.asyncio
    async def test_trigger_before_arming_resolves_immediately(self):
        esc = EscState()
        esc.trigger("early")
        waiter = esc.create_waiter()
        assert waiter.future.done()
        assert waiter.future.result() == "early"
        waiter.cleanup()

    @pytest.mark.asyncio
    async def test_cleanup_cancels_pending_future(self):
        esc = EscState()
        waiter = esc.create_waiter()
        waiter.cleanup()
        waiter.cleanup()
        assert waiter.future.cancelled()
        assert esc.state == "idle"


# ─────────────────────────────────────────────────────────────────────────────
# CancellationRegistry
# ─────────────────────────────────────────────────────────────────────────────


class TestCancellationRegistry:
    def test_cancels_innermost_first(self):
        registry = CancellationRegistry()
        outer_cb, inner_cb = MagicMock(), MagicMock()
        outer = registry.register("outer", outer_cb)
        inner = registry.register("inner", inner_cb)

        assert registry.cancel("esc") is True
        inner_cb.assert_called_once_with("esc")
        outer_cb.assert_not_called()
        assert inner.is_canceled() and not outer.is_canceled()
        assert registry.active_descriptions == ["outer"]

    def test_nothing_to_cancel(self):
        assert CancellationRegistry().cancel() is False

    def test_unregister_removes_entry(self):
        registry = CancellationRegistry()
        handle = registry.register("op")
        handle.unregister()
        assert not registry.has_active()

    def test_callback_error_is_recorded(self):
        registry = CancellationRegistry()
        handle = registry.register("op", MagicMock(side_effect=RuntimeError("boom")))
        assert registry.cancel() is True
        assert isinstance(handle.cancel_error, RuntimeError)


# ─────────────────────────────────────────────────────────────────────────────
# Output helpers
# ─────────────────────────────────────────────────────────────────────────────


class TestOutputHelpers:
    def test_combine_on_success(self):
        assert combine_std_streams("out", "err", 0) == ("out\nerr", "")
        assert combine_std_streams("out\n", "err", 0) == ("out\nerr", "")

    def test_combine_keeps_streams_on_failure(self):
        assert combine_std_streams("out", "err", 1) == ("out", "err")
        assert combine_std_streams("out", "err", None) == ("out", "err")

    def test_filter_is_case_insensitive(self):
        assert apply_filter("Error: a\nok\nerror: b", "ERROR") == "Error: a\nerror: b"

    def test_invalid_filter_returns_text(self):
        assert apply_filter("a\nb", "([") == "a\nb"

    def test_tail_lines(self):
        assert tail_lines("1\n2\n3\n4", 2) == "3\n4"
        assert tail_lines("1\n2", 0) == "1\n2"

    def test_truncate_output(self):
        text = "\n".join(str(i) for i in range(10))
        assert truncate_output(text, head=2, tail=2) == f"0\n1\n{SNIP_MARKER}\n8\n9"
        assert truncate_output(text, head=5, tail=5) == text
        assert truncate_output(None) == ""

    def test_preview_is_short(self):
        text = "\n".join(str(i) for i in range(100))
        preview = build_preview(text)
        assert SNIP_MARKER in preview
        assert len(preview.split("\n")) == 41


# ─────────────────────────────────────────────────────────────────────────────
# Shell runner
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")
class TestRunCommand:
    @pytest.mark.asyncio
    async def test_captures_output_and_exit_code(self, tmp_path):
        result = await run_command("echo hello; echo oops >&2; exit 3", cwd=str(tmp_path), shell="bash")
        assert result.stdout == "hello\n"
        assert result.stderr == "oops\n"
        assert result.exit_code == 3
        assert result.killed is False

    @pytest.mark.asyncio
    async def test_runs_in_cwd(self, tmp_path):
        result = await run_command("pwd", cwd=str(tmp_path), shell="sh")
        assert result.stdout.strip() == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path):
        result = await run_command("sleep 5", cwd=str(tmp_path), timeout_sec=0.2, shell="bash")
        assert result.killed is True
        assert result.exit_code is None
        assert "timed out" in result.stderr

    @pytest.mark.asyncio
    async def test_missing_cwd_is_a_failure(self, tmp_path):
        result = await run_command("ls", cwd=str(tmp_path / "nope"))
        assert result.exit_code == 1
        assert "Failed to start process" in result.stderr

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, tmp_path):
        task = asyncio.ensure_future(run_command("sleep 5", cwd=str(tmp_path), shell="bash"))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    def test_secrets_removed_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("MY_SERVICE_TOKEN", "t")
        monkeypatch.setenv("HARMLESS_VALUE", "1")
        env = _safe_env()
        assert "OPENAI_API_KEY" not in env
        assert "MY_SERVICE_TOKEN" not in env
        assert env["HARMLESS_VALUE"] == "1"
