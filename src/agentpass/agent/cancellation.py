"""
agent/cancellation.py — Cancellation registry

A stack of in-flight cancellable operations. cancel() always targets the
most recently registered operation that is still active, so a UI-level
"cancel" hits the innermost thing the agent is waiting on.
"""

from __future__ import annotations

import itertools
from typing import Any, Callable, Optional

from agentpass.observability.logger import get_logger

log = get_logger(__name__)

CancelCallback = Callable[[Any], None]


class CancellationHandle:
    """Handle returned by CancellationRegistry.register()."""

    def __init__(
        self,
        registry: "CancellationRegistry",
        token: int,
        description: str,
        on_cancel: Optional[CancelCallback],
    ):
        self._registry = registry
        self.token = token
        self.description = description
        self._on_cancel = on_cancel
        self.canceled = False
        self.reason: Any = None
        self.cancel_error: Optional[Exception] = None

    def is_canceled(self) -> bool:
        return self.canceled

    def cancel(self, reason: Any = None) -> bool:
        if self.canceled:
            return False
        self.canceled = True
        self.reason = reason
        if self._on_cancel is not None:
            try:
                self._on_cancel(reason)
            except Exception as e:
                self.cancel_error = e
                log.warning("cancellation.callback_failed", operation=self.description, error=str(e))
        log.info("cancellation.canceled", operation=self.description, reason=reason)
        return True

    def set_cancel_callback(self, on_cancel: Optional[CancelCallback]) -> None:
        self._on_cancel = on_cancel

    def update_description(self, description: str) -> None:
        self.description = description

    def unregister(self) -> None:
        self._registry._remove(self.token)


class CancellationRegistry:

    def __init__(self) -> None:
        self._stack: list[CancellationHandle] = []
        self._tokens = itertools.count(1)

    def register(
        self,
        description: str = "operation",
        on_cancel: Optional[CancelCallback] = None,
    ) -> CancellationHandle:
        handle = CancellationHandle(self, next(self._tokens), description, on_cancel)
        self._stack.append(handle)
        return handle

    def cancel(self, reason: Any = None) -> bool:
        """Cancel the innermost active operation. Returns False if none is active."""
        for handle in reversed(self._stack):
            if not handle.canceled:
                return handle.cancel(reason)
        return False

    @property
    def active_descriptions(self) -> list[str]:
        return [h.description for h in self._stack if not h.canceled]

    def has_active(self) -> bool:
        return any(not h.canceled for h in self._stack)

    def _remove(self, token: int) -> None:
        self._stack = [h for h in self._stack if h.token != token]
