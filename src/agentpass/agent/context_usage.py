"""
agent/context_usage.py — Context window usage estimation

A cheap character-based token estimate (~4 chars/token plus per-message
framing) against a per-model context window table. Good enough to decide
when to compact and to show the human how full the window is.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional

from agentpass.agent.history import ChatHistoryEntry

DEFAULT_CONTEXT_WINDOW = 256_000
CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 6
EMPTY_MESSAGE_OVERHEAD_TOKENS = 4

MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    "gpt-5-codex": 256_000,
    "gpt-4.1": 128_000,
    "gpt-4.1-mini": 128_000,
    "gpt-4.1-nano": 128_000,
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "o4-mini": 128_000,
    "o3": 128_000,
    "o3-mini": 128_000,
}


@dataclass
class ContextUsage:
    total: Optional[int]
    used: int
    remaining: Optional[int]
    percent_remaining: Optional[float]

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "used": self.used,
            "remaining": self.remaining,
            "percent_remaining": self.percent_remaining,
        }


def get_context_window(model: Optional[str] = None, override: Optional[int] = None) -> int:
    if override:
        return override
    if model:
        key = model.strip().lower()
        if key in MODEL_CONTEXT_WINDOWS:
            return MODEL_CONTEXT_WINDOWS[key]
        # dated snapshots, e.g. "gpt-4o-2024-08-06"
        for name in sorted(MODEL_CONTEXT_WINDOWS, key=len, reverse=True):
            if key.startswith(name):
                return MODEL_CONTEXT_WINDOWS[name]
    return DEFAULT_CONTEXT_WINDOW


def estimate_tokens_for_history(entries: Iterable[ChatHistoryEntry]) -> int:
    messages = 0
    chars = 0
    for entry in entries:
        messages += 1
        chars += len(entry.content_text())
    if messages == 0:
        return 0
    if chars == 0:
        return messages * EMPTY_MESSAGE_OVERHEAD_TOKENS
    return math.ceil(chars / CHARS_PER_TOKEN) + messages * MESSAGE_OVERHEAD_TOKENS


def summarize_context_usage(
    entries: Iterable[ChatHistoryEntry],
    model: Optional[str] = None,
    context_window: Optional[int] = None,
) -> ContextUsage:
    total = get_context_window(model, context_window)
    used = estimate_tokens_for_history(entries)
    if not total or total <= 0:
        return ContextUsage(total=None, used=used, remaining=None, percent_remaining=None)
    remaining = max(total - used, 0)
    return ContextUsage(
        total=total,
        used=used,
        remaining=remaining,
        percent_remaining=round(remaining / total * 100, 2),
    )
