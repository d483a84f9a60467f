"""
exceptions.py — agentpass Unified Error Hierarchy

All agentpass-specific exceptions live here. Every layer of the engine
raises typed subclasses of AgentPassError — never bare Exception.

Import from here, not from individual modules:
    from agentpass.exceptions import PassError, HistoryError

Hierarchy:
    AgentPassError
    ├── AgentError
    │   ├── PassError
    │   └── ApprovalError
    ├── HistoryError
    │   └── CompactionError
    └── LLMError  (re-exported from brain for convenience)
        ├── LLMConnectionError
        │   └── LLMTimeoutError
        ├── LLMRateLimitError
        ├── LLMContextError
        └── LLMInvalidRequestError

Cancellation, validation failures and command failures are NOT exceptions
in this engine: they are recovered locally and turned into observations.
These classes cover programming errors and the few hard failures that
must leave a pass.
"""

from __future__ import annotations

from agentpass.brain.llm_client import (  # noqa: F401
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
    LLMTimeoutError,
)


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class AgentPassError(Exception):
    """Base class for all agentpass exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Agent layer
# ─────────────────────────────────────────────────────────────────────────────

class AgentError(AgentPassError):
    """Base for pass orchestration errors."""


class PassError(AgentError):
    """A pass was invoked with invalid arguments (e.g. a non-integer pass index)."""


class ApprovalError(AgentError):
    """The approval flow could not reach a decision."""


# ─────────────────────────────────────────────────────────────────────────────
# History layer
# ─────────────────────────────────────────────────────────────────────────────

class HistoryError(AgentPassError):
    """Base for history store / governor errors."""


class CompactionError(HistoryError):
    """History compaction was misconfigured (missing client or model)."""


# ─────────────────────────────────────────────────────────────────────────────
# Convenience: all public names
# ─────────────────────────────────────────────────────────────────────────────

__all__ = [
    "AgentPassError",
    # Agent
    "AgentError",
    "PassError",
    "ApprovalError",
    # History
    "HistoryError",
    "CompactionError",
    # LLM (re-exported)
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
    "LLMContextError",
    "LLMInvalidRequestError",
    "LLMTimeoutError",
]
