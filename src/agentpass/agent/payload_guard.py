"""
agent/payload_guard.py — Request payload growth failsafe

Estimates the byte size of the next model request and compares it with
the last successful one. A sudden balloon (growth factor AND an absolute
delta) usually means a runaway loop feeding huge outputs back to the
model; the history is dumped to disk for inspection and the process exits
before the bill grows.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, NoReturn, Optional

from agentpass.agent.history import HistoryStore
from agentpass.agent.response_schema import RESPONSE_TOOL_NAME
from agentpass.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_GROWTH_FACTOR = 2.0
DEFAULT_MIN_GROWTH_BYTES = 1024


def estimate_request_payload_size(
    history: HistoryStore,
    model: str,
    tool_name: str = RESPONSE_TOOL_NAME,
) -> int:
    payload = {
        "model": model,
        "input": [m.model_dump(mode="json") for m in history.to_model_messages()],
        "tool_choice": {"type": "function", "name": tool_name},
    }
    return len(json.dumps(payload, ensure_ascii=False).encode("utf-8"))


def _timestamp_slug() -> str:
    return datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")


class RequestPayloadGuard:

    def __init__(
        self,
        history_dir: Path,
        growth_factor: float = DEFAULT_GROWTH_FACTOR,
        min_growth_bytes: int = DEFAULT_MIN_GROWTH_BYTES,
        exit_fn: Callable[[int], NoReturn] = sys.exit,
        timestamp: Callable[[], str] = _timestamp_slug,
    ):
        self.history_dir = Path(history_dir)
        self.growth_factor = growth_factor
        self.min_growth_bytes = min_growth_bytes
        self._exit = exit_fn
        self._timestamp = timestamp
        self.baseline: Optional[int] = None

    def is_balloon(self, previous: Optional[int], current: int) -> bool:
        if previous is None:
            return False
        ratio = float("inf") if previous <= 0 else current / previous
        return ratio >= self.growth_factor and (current - previous) > self.min_growth_bytes

    def check(self, history: HistoryStore, model: str, pass_index: Optional[int]) -> int:
        """Estimate the next request and trip the failsafe on runaway growth."""
        size = estimate_request_payload_size(history, model)
        return self.check_size(size, history, pass_index)

    def check_size(self, size: int, history: HistoryStore, pass_index: Optional[int]) -> int:
        if self.is_balloon(self.baseline, size):
            self._trip(history, self.baseline or 0, size, pass_index)
        return size

    def record_baseline(self, size: int) -> None:
        self.baseline = size

    def _trip(self, history: HistoryStore, previous: int, current: int, pass_index: Optional[int]) -> None:
        pass_label = pass_index if pass_index is not None else "unknown"
        log.error(
            f"[failsafe] OpenAI request ballooned from {previous}B to {current}B on pass {pass_label}.",
            previous_bytes=previous,
            current_bytes=current,
            pass_index=pass_index,
        )
        try:
            self.history_dir.mkdir(parents=True, exist_ok=True)
            dump_path = self.history_dir / f"pass-{pass_label}-{self._timestamp()}.json"
            dump_path.write_text(json.dumps(history.snapshot(), indent=2, default=str), encoding="utf-8")
            log.error(f"[failsafe] Dumped history snapshot to {dump_path}.", path=str(dump_path))
        except OSError as e:
            log.error("[failsafe] Failed to write history snapshot.", error=str(e))
        log.error("[failsafe] Exiting to prevent excessive API charges.")
        self._exit(1)
