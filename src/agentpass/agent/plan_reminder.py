"""
agent/plan_reminder.py — Plan reminders and refusal detection
"""

from __future__ import annotations

import re

DEFAULT_REMINDER_LIMIT = 3
MAX_REFUSAL_LENGTH = 160

_SORRY_RE = re.compile(r"\bsorry\b", re.IGNORECASE)
_ASSIST_RE = re.compile(r"\bhelp\b|\bassist\b|\bcontinue\b", re.IGNORECASE)
_NEGATION_RE = re.compile(r"can'?t|cannot|unable to|not able to|won'?t be able to", re.IGNORECASE)


class PlanReminderTracker:
    """Counts consecutive "you still have open steps" nudges."""

    def __init__(self, limit: int = DEFAULT_REMINDER_LIMIT):
        self.limit = limit
        self.count = 0

    def increment(self) -> int:
        self.count += 1
        return self.count

    def reset(self) -> None:
        self.count = 0

    @property
    def exhausted(self) -> bool:
        return self.count > self.limit


def is_likely_refusal(message: object) -> bool:
    """Short apologetic "I can't help with that" replies."""
    if not isinstance(message, str):
        return False
    text = message.replace("’", "'").replace("‘", "'").strip()
    if not text or len(text) > MAX_REFUSAL_LENGTH:
        return False
    if not _SORRY_RE.search(text):
        return False
    return bool(_ASSIST_RE.search(text) and _NEGATION_RE.search(text))


def is_done_message(message: object) -> bool:
    if not isinstance(message, str):
        return False
    return message.strip().rstrip(".!").strip().lower() == "done"
