"""
interfaces/cli.py — agentpass Console Interface

Renders agent events with rich and collects human input with aioconsole.

Event rendering:
  - assistant-message   Markdown panel
  - plan                table of steps with status colours
  - command-result      command, exit code and the head/tail preview
  - status / error      one coloured line each
  - request-input       the approval menu (the answer is read by ask_human)
  - context-usage       dim footer with the remaining context window
  - debug               only with --log-level DEBUG

Ctrl+C while a pass is running acts like ESC: it cancels the in-flight
model request. A second Ctrl+C with nothing to cancel exits.

Usage:
    agentpass "Fix the failing unit test in tests/test_parser.py"
    agentpass --no-human --auto-approve "Upgrade the lockfile"
"""

from __future__ import annotations

import asyncio
import json
import signal
from typing import Any, Optional

import aioconsole
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich import box

from agentpass.agent.loop import AgentLoop, LoopResult
from agentpass.agent.types import Event
from agentpass.config.settings import Settings
from agentpass.observability.logger import get_logger

log = get_logger(__name__)

_STATUS_STYLES = {
    "info": "cyan",
    "warn": "yellow",
    "error": "red",
}

_PLAN_STATUS_STYLES = {
    "pending": "white",
    "running": "bold yellow",
    "completed": "green",
    "failed": "red",
    "abandoned": "dim",
}


class ConsoleInterface:
    """Event sink and human input channel for one terminal session."""

    def __init__(self, console: Optional[Console] = None, show_debug: bool = False):
        self.console = console or Console()
        self.show_debug = show_debug
        self._status = None

    # ── Thinking indicator ────────────────────────────────────────────────────

    def start_thinking(self) -> None:
        if self._status is None:
            self._status = self.console.status("[dim cyan]Thinking...[/]", spinner="dots")
            self._status.start()

    def stop_thinking(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None

    # ── Input ─────────────────────────────────────────────────────────────────

    async def ask_human(self, prompt: str) -> Optional[str]:
        """The prompt text was already rendered from the request-input event."""
        self.stop_thinking()
        try:
            return await aioconsole.ainput("> ")
        except EOFError:
            return None

    # ── Events ────────────────────────────────────────────────────────────────

    def emit(self, event: Event) -> None:
        kind = event.get("type")
        handler = getattr(self, f"_render_{str(kind).replace('-', '_')}", None)
        if handler is None:
            log.debug("cli.unhandled_event", event_type=kind)
            return
        handler(event)

    def _render_status(self, event: Event) -> None:
        style = _STATUS_STYLES.get(event.get("level"), "white")
        self.console.print(f"[{style}]{event.get('message', '')}[/]")
        details = event.get("details")
        if details and self.show_debug:
            self.console.print(f"[dim]{json.dumps(details, default=str)[:500]}[/]")

    def _render_error(self, event: Event) -> None:
        self.console.print(f"[bold red]❌ {event.get('message', '')}[/]")
        details = event.get("details")
        if details:
            self.console.print(f"[red dim]{details}[/]")

    def _render_schema_validation_failed(self, event: Event) -> None:
        self.console.print(f"[yellow]{event.get('message', '')}[/]")
        for err in event.get("errors") or []:
            self.console.print(f"[yellow dim]  • {err.get('path', '')}: {err.get('message', '')}[/]")

    def _render_assistant_message(self, event: Event) -> None:
        message = event.get("message")
        if not isinstance(message, str) or not message.strip():
            return
        self.stop_thinking()
        self.console.print(Panel(Markdown(message), border_style="cyan", padding=(0, 2)))

    def _render_plan(self, event: Event) -> None:
        steps = event.get("steps") or []
        if not steps:
            return
        table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
        table.add_column("#", style="dim")
        table.add_column("Step")
        table.add_column("Status")
        table.add_column("Priority", justify="right")
        for step in steps:
            status = step.get("status", "")
            style = _PLAN_STATUS_STYLES.get(status, "white")
            priority = step.get("priority")
            table.add_row(
                str(step.get("id", "")),
                str(step.get("title", "")),
                f"[{style}]{status}[/]",
                "" if priority is None else str(priority),
            )
        self.console.print(table)

    def _render_plan_progress(self, event: Event) -> None:
        self.console.print(
            f"[dim]Plan progress: {event.get('completed', 0)}/{event.get('total', 0)}[/]"
        )

    def _render_command_result(self, event: Event) -> None:
        command = event.get("command") or {}
        result = event.get("result") or {}
        preview = event.get("preview") or {}
        exit_code = result.get("exit_code")
        border = "green" if exit_code == 0 else "red"
        title = f"$ {command.get('run', '')}"
        lines = []
        if preview.get("stdout_preview"):
            lines.append(preview["stdout_preview"])
        if preview.get("stderr_preview"):
            lines.append(f"[red]{preview['stderr_preview']}[/]")
        footer = f"exit {exit_code}" if exit_code is not None else "no exit code"
        if result.get("killed"):
            footer += " · killed"
        footer += f" · {result.get('runtime_ms', 0)} ms"
        self.console.print(Panel(
            "\n".join(lines) or "[dim](no output)[/]",
            title=title,
            subtitle=f"[dim]{footer}[/]",
            border_style=border,
            padding=(0, 1),
        ))

    def _render_request_input(self, event: Event) -> None:
        self.stop_thinking()
        command = (event.get("metadata") or {}).get("command") or {}
        if command:
            reason = command.get("reason")
            self.console.print(Panel(
                f"[bold]{command.get('run', '')}[/]" + (f"\n[dim]{reason}[/]" if reason else ""),
                title="Command approval",
                border_style="yellow",
                padding=(0, 1),
            ))
        self.console.print(event.get("prompt", ""), end="")

    def _render_context_usage(self, event: Event) -> None:
        usage = event.get("usage") or {}
        percent = usage.get("percent_remaining")
        if percent is not None:
            self.console.print(f"[dim]Context remaining: {percent:.0f}%[/]")

    def _render_debug(self, event: Event) -> None:
        if self.show_debug:
            self.console.print(f"[dim]debug {event.get('id')}: {str(event.get('payload'))[:300]}[/]")


# ─────────────────────────────────────────────────────────────────────────────
# Runner
# ─────────────────────────────────────────────────────────────────────────────


async def run_cli(
    settings: Settings,
    prompt: str,
    *,
    no_human: bool = False,
    max_passes: Optional[int] = None,
    show_debug: bool = False,
) -> LoopResult:
    ui = ConsoleInterface(show_debug=show_debug)
    agent = AgentLoop.from_settings(
        settings,
        emit_event=ui.emit,
        ask_human=ui.ask_human,
        no_human=no_human,
        start_thinking=ui.start_thinking,
        stop_thinking=ui.stop_thinking,
    )

    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()

    def _on_interrupt() -> None:
        if agent.esc_state.state != "triggered":
            ui.console.print("\n[yellow]🛑 Cancel signal sent.[/]")
            agent.cancel({"source": "sigint"})
        elif main_task is not None:
            main_task.cancel()

    installed = _install_interrupt_handler(loop, _on_interrupt)
    try:
        result = await agent.run(prompt, max_passes=max_passes)
    finally:
        ui.stop_thinking()
        if installed:
            loop.remove_signal_handler(signal.SIGINT)

    _print_summary(ui.console, result)
    return result


def _install_interrupt_handler(loop: asyncio.AbstractEventLoop, callback: Any) -> bool:
    try:
        loop.add_signal_handler(signal.SIGINT, callback)
    except NotImplementedError:
        # Windows event loops: Ctrl+C falls back to KeyboardInterrupt
        log.debug("cli.signal_handler_unavailable")
        return False
    return True


def _print_summary(console: Console, result: LoopResult) -> None:
    if result.stop_reason == "error":
        console.print(f"[red]Session ended with an error after {result.passes} pass(es): {result.error}[/]")
    elif result.stop_reason == "max_passes":
        console.print(f"[yellow]Stopped after reaching the pass limit ({result.passes}).[/]")
    else:
        console.print(f"[dim]Session finished after {result.passes} pass(es).[/]")
