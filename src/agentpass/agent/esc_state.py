"""
agent/esc_state.py — Human interrupt (ESC) signal

Holds the "human pressed ESC" flag for the running session. The model
request gateway arms a waiter for each in-flight request and races it
against the completion; trigger() resolves the waiter and invokes the
active cancel callback so the request is torn down promptly.

Lifecycle: idle -> armed (create_waiter) -> triggered (trigger) -> idle
(reset). Only one waiter may be armed at a time.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from agentpass.observability.logger import get_logger

log = get_logger(__name__)


@dataclass
class EscWaiter:
    future: asyncio.Future
    _owner: Optional["EscState"] = field(default=None, repr=False)

    def cleanup(self) -> None:
        """Disarm the waiter. Safe to call more than once."""
        if not self.future.done():
            self.future.cancel()
        if self._owner is not None:
            self._owner._release(self)
            self._owner = None


class EscState:

    def __init__(self) -> None:
        self.triggered: bool = False
        self.payload: Any = None
        self._waiter: Optional[EscWaiter] = None
        self._active_cancel: Optional[Callable[[], None]] = None

    @property
    def state(self) -> str:
        if self.triggered:
            return "triggered"
        if self._waiter is not None:
            return "armed"
        return "idle"

    def create_waiter(self) -> EscWaiter:
        if self._waiter is not None and not self._waiter.future.done():
            raise RuntimeError("An ESC waiter is already armed; clean it up before arming another.")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        waiter = EscWaiter(future=future, _owner=self)
        if self.triggered:
            future.set_result(self.payload)
        self._waiter = waiter
        return waiter

    def trigger(self, payload: Any = None) -> None:
        self.triggered = True
        self.payload = payload
        log.info("esc.triggered", has_waiter=self._waiter is not None)

        if self._active_cancel is not None:
            cancel, self._active_cancel = self._active_cancel, None
            try:
                cancel()
            except Exception as e:
                log.warning("esc.cancel_failed", error=str(e))

        if self._waiter is not None and not self._waiter.future.done():
            self._waiter.future.set_result(payload)

    def reset(self) -> None:
        self.triggered = False
        self.payload = None

    def set_active_cancel(self, cancel: Callable[[], None]) -> None:
        self._active_cancel = cancel

    def clear_active_cancel(self) -> None:
        self._active_cancel = None

    def _release(self, waiter: EscWaiter) -> None:
        if self._waiter is waiter:
            self._waiter = None
