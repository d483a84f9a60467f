"""
agent/history_compactor.py — History Compactor

When estimated context usage passes the threshold, the oldest half of the
non-system history is summarised by the model and replaced with a single
"Compacted memory" system entry. The leading system prompt is never
compacted and at least one entry always survives after the summary.
"""

from __future__ import annotations

import asyncio
import math
from typing import Optional

from agentpass.agent.context_usage import summarize_context_usage
from agentpass.agent.history import ChatHistoryEntry, HistoryStore
from agentpass.brain.llm_client import BaseLLMClient
from agentpass.brain.types import LLMConfig, Message
from agentpass.exceptions import CompactionError
from agentpass.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_USAGE_THRESHOLD = 0.5
SUMMARY_PREFIX = "Compacted memory:"

SUMMARY_SYSTEM_PROMPT = (
    "You summarize prior conversation history into a concise long-term memory "
    "for an autonomous agent. Capture key facts, decisions, obligations, and user "
    "preferences. Respond with plain text only."
)


def format_entries_for_summary(entries: list[ChatHistoryEntry]) -> str:
    blocks = []
    for i, entry in enumerate(entries, start=1):
        pass_label = entry.pass_index if entry.pass_index is not None else "n/a"
        blocks.append(f"Entry {i} ({entry.role}, pass {pass_label}):\n{entry.content_text()}")
    return "\n\n".join(blocks)


class HistoryCompactor:

    def __init__(
        self,
        client: BaseLLMClient,
        llm_config: LLMConfig,
        usage_threshold: float = DEFAULT_USAGE_THRESHOLD,
        context_window: Optional[int] = None,
        summary_prefix: str = SUMMARY_PREFIX,
    ):
        if client is None:
            raise CompactionError("HistoryCompactor requires an LLM client")
        if llm_config is None or not llm_config.model:
            raise CompactionError("HistoryCompactor requires a model")
        if not (0.0 < usage_threshold <= 1.0):
            raise CompactionError(f"usage_threshold must be in (0, 1], got {usage_threshold}")
        self._client = client
        self._config = llm_config
        self._threshold = usage_threshold
        self._context_window = context_window
        self._prefix = summary_prefix

    async def compact_if_needed(self, history: HistoryStore) -> bool:
        """Compact `history` in place. Returns True when entries were replaced."""
        usage = summarize_context_usage(history, self._config.model, self._context_window)
        if not usage.total:
            return False

        ratio = usage.used / usage.total
        if ratio <= self._threshold:
            return False

        first_content_index = 1 if len(history) and history[0].is_system else 0
        compactable = len(history) - first_content_index
        if compactable <= 1:
            return False

        count = max(1, math.ceil(compactable / 2))
        count = min(count, compactable - 1)
        end = first_content_index + count
        to_compact = history.entries[first_content_index:end]

        try:
            summary = await self._summarize(to_compact)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("compactor.summarize_failed", error=str(e), entries=len(to_compact))
            return False

        if not summary:
            log.warning("compactor.empty_summary", entries=len(to_compact))
            return False

        passes = [e.pass_index for e in to_compact if e.pass_index is not None]
        replacement = ChatHistoryEntry(
            role="system",
            content=f"{self._prefix}\n{summary}",
            pass_index=max(passes) if passes else None,
        )
        history.replace_range(first_content_index, end, [replacement])
        log.info(
            "compactor.compacted",
            entries=len(to_compact),
            usage_ratio=round(ratio, 3),
            remaining_entries=len(history),
        )
        return True

    async def _summarize(self, entries: list[ChatHistoryEntry]) -> str:
        prompt = (
            f"Summarize the following {len(entries)} conversation entries for long-term "
            f"memory. Preserve critical details while remaining concise.\n\n"
            f"{format_entries_for_summary(entries)}"
        )
        response = await self._client.generate(
            [Message.system(SUMMARY_SYSTEM_PROMPT), Message.user(prompt)],
            self._config,
        )
        return (response.content or "").strip()
