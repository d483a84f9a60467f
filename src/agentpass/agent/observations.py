"""
agent/observations.py — Observation Builder

Turns raw command results into the structured observation the model sees
next pass, plus a short render payload for the UI. Also builds the
non-command observations (cancellations, rejected commands, protocol
errors) so every kind of feedback reaches the model in one shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from agentpass.agent.plan import PlanCommand
from agentpass.agent.types import CommandResult
from agentpass.tools.output import apply_filter as default_apply_filter
from agentpass.tools.output import build_preview as default_build_preview
from agentpass.tools.output import combine_std_streams as default_combine_std_streams
from agentpass.tools.output import tail_lines as default_tail_lines

MAX_OBSERVATION_BYTES = 50 * 1024
CORRUPT_OUTPUT_MESSAGE = "!!!corrupt command, excessive output!!!"
RESPONSE_SNIPPET_CHARS = 4000


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ObservationRecord:
    observation_for_llm: dict[str, Any]
    observation_metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "observation_for_llm": dict(self.observation_for_llm),
            "observation_metadata": dict(self.observation_metadata),
        }


@dataclass
class RenderPayload:
    stdout: str
    stderr: str
    stdout_preview: str
    stderr_preview: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "stdout_preview": self.stdout_preview,
            "stderr_preview": self.stderr_preview,
        }


class ObservationBuilder:
    """
    Build observations from command results.

    Collaborators are injectable so sub-agents and tests can swap the
    output shaping helpers or pin the clock.
    """

    def __init__(
        self,
        combine_std_streams: Callable[[str, str, Optional[int]], tuple[str, str]] = default_combine_std_streams,
        apply_filter: Callable[[str, str], str] = default_apply_filter,
        tail_lines: Callable[[str, int], str] = default_tail_lines,
        build_preview: Callable[[str], str] = default_build_preview,
        now: Callable[[], str] = utc_timestamp,
        max_bytes: int = MAX_OBSERVATION_BYTES,
    ):
        self._combine = combine_std_streams
        self._apply_filter = apply_filter
        self._tail_lines = tail_lines
        self._build_preview = build_preview
        self._now = now
        self._max_bytes = max_bytes

    # ── Command results ───────────────────────────────────────────────────────

    def build(
        self,
        command: Optional[PlanCommand],
        result: CommandResult,
    ) -> tuple[RenderPayload, ObservationRecord]:
        stdout, stderr = self._combine(result.stdout or "", result.stderr or "", result.exit_code)
        exit_code = result.exit_code

        total_bytes = len(stdout.encode("utf-8")) + len(stderr.encode("utf-8"))
        corrupted = total_bytes > self._max_bytes

        if corrupted:
            stdout = CORRUPT_OUTPUT_MESSAGE
            stderr = CORRUPT_OUTPUT_MESSAGE
            exit_code = 1
            truncated = False
        else:
            filtered_stdout, filtered_stderr = stdout, stderr
            if command is not None and command.filter_regex:
                filtered_stdout = self._apply_filter(filtered_stdout, command.filter_regex)
                filtered_stderr = self._apply_filter(filtered_stderr, command.filter_regex)
            if command is not None and command.tail_lines:
                filtered_stdout = self._tail_lines(filtered_stdout, command.tail_lines)
                filtered_stderr = self._tail_lines(filtered_stderr, command.tail_lines)
            truncated = filtered_stdout != stdout or filtered_stderr != stderr
            stdout, stderr = filtered_stdout, filtered_stderr

        render = RenderPayload(
            stdout=stdout,
            stderr=stderr,
            stdout_preview=self._build_preview(stdout),
            stderr_preview=self._build_preview(stderr),
        )

        for_llm: dict[str, Any] = {"stdout": stdout, "stderr": stderr}
        if exit_code is not None:
            for_llm["exit_code"] = exit_code
        for_llm["truncated"] = truncated

        record = ObservationRecord(
            observation_for_llm=for_llm,
            observation_metadata={
                "runtime_ms": result.runtime_ms,
                "killed": result.killed,
                "timestamp": self._now(),
            },
        )
        return render, record

    # ── Non-command observations ──────────────────────────────────────────────

    def build_cancellation(
        self,
        reason: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ObservationRecord:
        return ObservationRecord(
            observation_for_llm={
                "operation_canceled": True,
                "reason": reason,
                "message": message,
            },
            observation_metadata={"timestamp": self._now(), **(metadata or {})},
        )

    def build_command_rejection(self) -> dict[str, Any]:
        return {
            "canceled_by_human": True,
            "message": (
                "Human declined to execute the proposed command and asked the AI to "
                "propose an alternative approach without executing a command."
            ),
        }

    def build_parse_error(self, attempts: list[dict[str, Any]], raw: str) -> ObservationRecord:
        return ObservationRecord(
            observation_for_llm={
                "json_parse_error": True,
                "message": (
                    "Failed to parse assistant JSON response. Please resend a valid "
                    "JSON object that follows the CLI protocol."
                ),
                "attempts": attempts,
                "response_snippet": raw[:RESPONSE_SNIPPET_CHARS],
            },
            observation_metadata={"timestamp": self._now()},
        )

    def build_schema_error(self, errors: list[dict[str, Any]], raw: str) -> ObservationRecord:
        if len(errors) == 1:
            message = f"Schema validation failed: {errors[0]['path']}: {errors[0]['message']}"
        else:
            lines = "\n".join(f"- {e['path']}: {e['message']}" for e in errors)
            message = f"Schema validation failed. Please address the following issues:\n{lines}"
        return ObservationRecord(
            observation_for_llm={
                "schema_validation_error": True,
                "message": message,
                "details": errors,
                "response_snippet": raw[:RESPONSE_SNIPPET_CHARS],
            },
            observation_metadata={"timestamp": self._now()},
        )

    def build_validation_error(self, errors: list[str], raw: str) -> ObservationRecord:
        if len(errors) == 1:
            message = errors[0]
        else:
            message = (
                f"Detected {len(errors)} validation issues. Please fix them and "
                f"resend a compliant response."
            )
        return ObservationRecord(
            observation_for_llm={
                "response_validation_error": True,
                "message": message,
                "details": list(errors),
                "response_snippet": raw[:RESPONSE_SNIPPET_CHARS],
            },
            observation_metadata={"timestamp": self._now()},
        )
