"""
agent/history.py — Conversation History Store

An ordered, mutable log of typed chat entries. Insertion order is
conversation order; every component that reads or mutates the conversation
does so through one HistoryStore owned by the active session.

Single-writer contract: only the PassExecutor, the history governors
(compactor, amnesia, dementia) and plan-effect application mutate a store,
and they never run concurrently. The store does not lock.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional

from agentpass.brain.types import Message, Role
from agentpass.exceptions import HistoryError

DEFAULT_EVENT_TYPE = "chat-message"
_ALLOWED_ROLES = {"system", "user", "assistant"}


@dataclass
class ChatHistoryEntry:
    role: str
    content: Any
    pass_index: Optional[int] = None
    event_type: str = DEFAULT_EVENT_TYPE

    def __post_init__(self) -> None:
        if self.role not in _ALLOWED_ROLES:
            raise HistoryError(f"Unsupported history role: {self.role!r}")
        if not self.event_type or not str(self.event_type).strip():
            self.event_type = DEFAULT_EVENT_TYPE

    @property
    def is_system(self) -> bool:
        return self.role == "system"

    def content_text(self) -> str:
        """Content as the model will see it."""
        if isinstance(self.content, str):
            return self.content
        if self.content is None:
            return ""
        return json.dumps(self.content, indent=2, default=str)

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type,
            "role": self.role,
            "content": self.content,
            "pass": self.pass_index,
        }


def create_chat_entry(
    role: str,
    content: Any,
    pass_index: Optional[int] = None,
    event_type: str = DEFAULT_EVENT_TYPE,
) -> ChatHistoryEntry:
    return ChatHistoryEntry(role=role, content=content, pass_index=pass_index, event_type=event_type)


class HistoryStore:
    """Ordered history log with invariant enforcement on insert."""

    def __init__(self, entries: Optional[Iterable[ChatHistoryEntry]] = None):
        self._entries: list[ChatHistoryEntry] = []
        for entry in entries or ():
            self.append(entry)

    # ── Invariants ────────────────────────────────────────────────────────────

    @staticmethod
    def _check(entry: ChatHistoryEntry) -> None:
        if not isinstance(entry, ChatHistoryEntry):
            raise HistoryError(f"History entries must be ChatHistoryEntry, got {type(entry).__name__}")
        if not entry.is_system:
            pi = entry.pass_index
            if not isinstance(pi, int) or isinstance(pi, bool):
                raise HistoryError(
                    f"Non-system history entries must carry an integer pass index "
                    f"(role={entry.role!r}, pass={pi!r})"
                )

    # ── Mutation ──────────────────────────────────────────────────────────────

    def append(self, entry: ChatHistoryEntry) -> None:
        self._check(entry)
        self._entries.append(entry)

    def extend(self, entries: Iterable[ChatHistoryEntry]) -> None:
        for entry in entries:
            self.append(entry)

    def replace_range(self, start: int, stop: int, replacement: Iterable[ChatHistoryEntry]) -> None:
        """Replace entries[start:stop] with `replacement`."""
        new_entries = list(replacement)
        for entry in new_entries:
            self._check(entry)
        self._entries[start:stop] = new_entries

    def remove_at(self, index: int) -> ChatHistoryEntry:
        return self._entries.pop(index)

    def clear(self) -> None:
        self._entries.clear()

    # ── Read access ───────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ChatHistoryEntry]:
        return iter(self._entries)

    def __getitem__(self, index: int) -> ChatHistoryEntry:
        return self._entries[index]

    @property
    def entries(self) -> list[ChatHistoryEntry]:
        """Shallow copy of the entry list."""
        return list(self._entries)

    def last(self) -> Optional[ChatHistoryEntry]:
        return self._entries[-1] if self._entries else None

    def snapshot(self) -> list[dict[str, Any]]:
        """JSON-ready copy of every entry (used by the failsafe dump)."""
        return [entry.to_dict() for entry in self._entries]

    def to_model_messages(self) -> list[Message]:
        """Project the history into the chat messages sent to the model."""
        return [
            Message(role=Role(entry.role), content=entry.content_text())
            for entry in self._entries
        ]

    def __repr__(self) -> str:
        return f"<HistoryStore entries={len(self._entries)}>"
