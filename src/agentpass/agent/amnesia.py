"""
agent/amnesia.py — Amnesia and dementia history policies

Amnesia slims entries older than a pass threshold: stale plan-update
snapshots are dropped and embedded plan arrays are stripped from older
structured entries. Dementia (optional) drops non-system entries older
than a hard pass limit.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Optional

from agentpass.agent.history import ChatHistoryEntry, HistoryStore
from agentpass.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_AMNESIA_THRESHOLD = 10


@dataclass
class _EntryContext:
    entry: ChatHistoryEntry
    parsed: Optional[Any]
    remove: bool = False
    rewritten: Optional[dict[str, Any]] = None

    def current(self) -> Optional[Any]:
        return self.rewritten if self.rewritten is not None else self.parsed


AmnesiaRule = Callable[[_EntryContext], None]


def _parse_content(content: Any) -> Optional[Any]:
    if isinstance(content, dict):
        return content
    if not isinstance(content, str):
        return None
    text = content.strip()
    if not text.startswith("{"):
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def drop_plan_updates(ctx: _EntryContext) -> None:
    data = ctx.current()
    if isinstance(data, dict) and data.get("type") == "plan-update":
        ctx.remove = True


def strip_embedded_plans(ctx: _EntryContext) -> None:
    data = ctx.current()
    if isinstance(data, dict) and "plan" in data:
        ctx.rewritten = {k: v for k, v in data.items() if k != "plan"}


DEFAULT_RULES: tuple[AmnesiaRule, ...] = (drop_plan_updates, strip_embedded_plans)


class AmnesiaManager:

    def __init__(self, threshold: int = DEFAULT_AMNESIA_THRESHOLD, rules: tuple[AmnesiaRule, ...] = DEFAULT_RULES):
        self.threshold = threshold
        self._rules = rules

    def apply(self, history: HistoryStore, current_pass: int) -> int:
        """Apply the rules to stale entries. Returns the number of entries changed."""
        if not isinstance(current_pass, int) or current_pass <= self.threshold:
            return 0
        cutoff = current_pass - self.threshold
        changed = 0

        for index in range(len(history) - 1, -1, -1):
            entry = history[index]
            if entry.is_system:
                continue
            if not isinstance(entry.pass_index, int) or entry.pass_index >= cutoff:
                continue

            ctx = _EntryContext(entry=entry, parsed=_parse_content(entry.content))
            if ctx.parsed is None:
                continue

            for rule in self._rules:
                try:
                    rule(ctx)
                except Exception as e:
                    log.warning("amnesia.rule_failed", rule=getattr(rule, "__name__", repr(rule)), error=str(e))
                    continue
                if ctx.remove:
                    break

            if ctx.remove:
                history.remove_at(index)
                changed += 1
            elif ctx.rewritten is not None:
                entry.content = (
                    ctx.rewritten if isinstance(entry.content, dict)
                    else json.dumps(ctx.rewritten, indent=2, default=str)
                )
                changed += 1

        if changed:
            log.info("amnesia.applied", current_pass=current_pass, cutoff=cutoff, changed=changed)
        return changed


def apply_dementia_policy(
    history: HistoryStore,
    current_pass: int,
    limit: int,
    preserve_system_messages: bool = True,
) -> bool:
    """Drop entries older than `limit` passes. Returns True when anything was removed."""
    if not limit or limit <= 0 or not isinstance(current_pass, int):
        return False
    cutoff = current_pass - limit
    removed = 0
    for index in range(len(history) - 1, -1, -1):
        entry = history[index]
        if entry.is_system and preserve_system_messages:
            continue
        if isinstance(entry.pass_index, int) and entry.pass_index < cutoff:
            history.remove_at(index)
            removed += 1
    if removed:
        log.info("dementia.applied", current_pass=current_pass, limit=limit, removed=removed)
    return removed > 0
