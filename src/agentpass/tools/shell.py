"""
tools/shell.py — Default Shell Runner

The async command runner the CommandExecutionGateway delegates to when no
custom runner is injected. Output is captured and returned as a
CommandResult; a timeout kills the process and reports killed=True.

Secrets are stripped from the subprocess environment so commands like
`printenv` cannot exfiltrate API keys.
"""

from __future__ import annotations

import asyncio
import os
import re
import time
from pathlib import Path
from typing import Optional

from agentpass.agent.types import CommandResult
from agentpass.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_TIMEOUT = 60
_DIRECT_SHELLS = {"bash", "sh", "zsh"}

_SECRET_ENV_PATTERNS: list[re.Pattern] = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"API[_-]?KEY",
        r"SECRET",
        r"PASSWORD",
        r"PASSWD",
        r"TOKEN",
        r"CREDENTIAL",
        r"PRIVATE[_-]?KEY",
        r"ACCESS[_-]?KEY",
        r"OPENAI",
        r"AWS[_-]",
        r"GCP[_-]",
        r"AZURE[_-]",
    ]
]


def _safe_env() -> dict[str, str]:
    """Return a copy of os.environ with secret variables removed."""
    return {
        key: value
        for key, value in os.environ.items()
        if not any(pat.search(key) for pat in _SECRET_ENV_PATTERNS)
    }


async def run_command(
    run: str,
    cwd: str = ".",
    timeout_sec: float = DEFAULT_TIMEOUT,
    shell: Optional[str] = None,
) -> CommandResult:
    """
    Execute `run` and capture its output.

    `shell` selects the interpreter (bash/sh/zsh run as `<shell> -c`);
    anything else uses the platform default shell.
    """
    resolved_dir = Path(cwd or ".").expanduser().resolve()
    started = time.monotonic()
    normalized_shell = (shell or "").strip().lower()

    try:
        if normalized_shell in _DIRECT_SHELLS:
            proc = await asyncio.create_subprocess_exec(
                normalized_shell, "-c", run,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(resolved_dir),
                env={**_safe_env(), "PYTHONUNBUFFERED": "1"},
            )
        else:
            proc = await asyncio.create_subprocess_shell(
                run,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(resolved_dir),
                env={**_safe_env(), "PYTHONUNBUFFERED": "1"},
            )
    except OSError as e:
        log.warning("shell.spawn_failed", run=run, cwd=str(resolved_dir), error=str(e))
        return CommandResult.failure(f"Failed to start process: {e}")

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout_sec)
    except asyncio.TimeoutError:
        proc.kill()
        stdout_bytes, stderr_bytes = await proc.communicate()
        runtime_ms = int((time.monotonic() - started) * 1000)
        log.warning("shell.timeout", run=run, timeout_sec=timeout_sec)
        return CommandResult(
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=(
                stderr_bytes.decode("utf-8", errors="replace")
                + f"\nCommand timed out after {timeout_sec} seconds"
            ).lstrip("\n"),
            exit_code=None,
            killed=True,
            runtime_ms=runtime_ms,
        )
    except asyncio.CancelledError:
        proc.kill()
        raise

    runtime_ms = int((time.monotonic() - started) * 1000)
    log.debug("shell.complete", run=run, exit_code=proc.returncode, runtime_ms=runtime_ms)
    return CommandResult(
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
        exit_code=proc.returncode,
        killed=False,
        runtime_ms=runtime_ms,
    )
