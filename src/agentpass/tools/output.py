"""
tools/output.py — Command output shaping helpers

Pure helpers the ObservationBuilder uses to turn raw stdout/stderr into
what the model and the UI see: stream combination, regex filtering,
tailing and preview truncation.
"""

from __future__ import annotations

import re

from agentpass.observability.logger import get_logger

log = get_logger(__name__)

PREVIEW_HEAD_LINES = 20
PREVIEW_TAIL_LINES = 20
SNIP_MARKER = "<snip....>"


def combine_std_streams(stdout: str, stderr: str, exit_code: int | None) -> tuple[str, str]:
    """
    Fold stderr into stdout when the command succeeded.

    Many tools log progress on stderr; on exit 0 that text is regular output.
    On failure the streams stay separate so the model can see the error.
    """
    if exit_code == 0 and stderr.strip():
        joiner = "" if not stdout or stdout.endswith("\n") else "\n"
        return f"{stdout}{joiner}{stderr}", ""
    return stdout, stderr


def apply_filter(text: str, regex: str | None) -> str:
    """Keep only lines matching `regex` (case-insensitive). Invalid patterns are ignored."""
    if not regex:
        return text
    try:
        pattern = re.compile(regex, re.IGNORECASE)
    except re.error as e:
        log.warning("output.invalid_filter_regex", regex=regex, error=str(e))
        return text
    return "\n".join(line for line in text.split("\n") if pattern.search(line))


def tail_lines(text: str, lines: int | None) -> str:
    if not lines:
        return text
    return "\n".join(text.split("\n")[-lines:])


def truncate_output(
    text: str | None,
    head: int = 5000,
    tail: int = 5000,
    snip_marker: str = SNIP_MARKER,
) -> str:
    if not text:
        return ""
    all_lines = text.split("\n")
    if len(all_lines) <= head + tail:
        return text
    parts: list[str] = []
    if head > 0:
        parts.append("\n".join(all_lines[:head]))
    parts.append(snip_marker)
    if tail > 0:
        parts.append("\n".join(all_lines[-tail:]))
    return "\n".join(parts)


def build_preview(text: str) -> str:
    """Short head/tail preview for UI rendering."""
    return truncate_output(text, head=PREVIEW_HEAD_LINES, tail=PREVIEW_TAIL_LINES)
