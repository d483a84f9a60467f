"""
tools/__init__.py — Command execution helpers

    run_command        async subprocess runner used for plan commands
    output helpers     stream merging, filtering, tailing and truncation
"""

from agentpass.tools.output import (
    apply_filter,
    build_preview,
    combine_std_streams,
    tail_lines,
    truncate_output,
)
from agentpass.tools.shell import run_command

__all__ = [
    "run_command",
    "apply_filter",
    "build_preview",
    "combine_std_streams",
    "tail_lines",
    "truncate_output",
]
