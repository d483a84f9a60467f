"""
agent/model_gateway.py — Model Request Gateway

Sends the conversation to the model and races the completion against the
human ESC signal and an optional timeout. Exactly one of three things
happens per request:

  success   the completion is returned to the PassExecutor
  canceled  ESC won the race, or the request was aborted/timed out; a
            cancellation observation is appended to history so the model
            learns about it next pass

Any other provider error propagates to the caller.

Structured-output streaming is surfaced as debug events with a stable id
(structured-response-stream-N) so a UI can show the partial response and
remove the panel when the request settles.
"""

from __future__ import annotations

import asyncio
import itertools
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from agentpass.agent.cancellation import CancellationRegistry
from agentpass.agent.esc_state import EscState
from agentpass.agent.history import HistoryStore
from agentpass.agent.history_messages import create_observation_entry
from agentpass.agent.observations import ObservationBuilder
from agentpass.agent.response_schema import RESPONSE_TOOL_NAME, build_response_tool
from agentpass.agent.types import EmitEvent, debug_event, noop_emit, status_event
from agentpass.brain.llm_client import BaseLLMClient
from agentpass.brain.types import LLMConfig, LLMResponse, ToolSchema
from agentpass.observability.logger import get_logger

log = get_logger(__name__)

ESCAPE_REASON = "escape_key"
ABORT_REASON = "abort"
ESC_CANCEL_MESSAGE = "Human canceled the in-flight request."
ABORT_CANCEL_MESSAGE = "The in-flight request was aborted before completion."

_ABORT_NAME_RE = re.compile(r"abort|timeout", re.IGNORECASE)
_ABORT_MESSAGE_RE = re.compile(r"abort|cancell?ed|timeout|timed out", re.IGNORECASE)


def is_abort_like_error(error: BaseException) -> bool:
    """True when `error` means the request was aborted rather than failed."""
    if isinstance(error, (asyncio.CancelledError, asyncio.TimeoutError, TimeoutError)):
        return True
    if _ABORT_NAME_RE.search(type(error).__name__):
        return True
    return bool(_ABORT_MESSAGE_RE.search(str(error) or ""))


@dataclass
class ModelCompletionResult:
    status: str                                 # "success" | "canceled"
    completion: Optional[LLMResponse] = None
    reason: Optional[str] = None

    @property
    def canceled(self) -> bool:
        return self.status == "canceled"


def _consume_task_result(task: asyncio.Future) -> None:
    # Mark exceptions as retrieved for tasks abandoned mid-race.
    if not task.cancelled():
        task.exception()


class ModelRequestGateway:

    def __init__(
        self,
        client: BaseLLMClient,
        llm_config: LLMConfig,
        observation_builder: Optional[ObservationBuilder] = None,
        emit_event: EmitEvent = noop_emit,
        cancellation: Optional[CancellationRegistry] = None,
        timeout_seconds: Optional[float] = None,
        tools: Optional[list[ToolSchema]] = None,
        tool_name: str = RESPONSE_TOOL_NAME,
    ):
        self._client = client
        self._config = llm_config
        self._observations = observation_builder or ObservationBuilder()
        self._emit = emit_event
        self._cancellation = cancellation or CancellationRegistry()
        self._timeout = timeout_seconds
        self._tools = tools if tools is not None else [build_response_tool()]
        self._tool_name = tool_name
        self._stream_ids = itertools.count(1)

    @property
    def model(self) -> str:
        return self._config.model

    @property
    def tool_name(self) -> str:
        return self._tool_name

    # ── Public API ────────────────────────────────────────────────────────────

    async def request(
        self,
        history: HistoryStore,
        pass_index: int,
        esc_state: Optional[EscState] = None,
        start_thinking: Optional[Callable[[], None]] = None,
        stop_thinking: Optional[Callable[[], None]] = None,
        set_no_human_flag: Optional[Callable[[bool], None]] = None,
    ) -> ModelCompletionResult:
        stream_id = f"structured-response-stream-{next(self._stream_ids)}"
        stream_used = False

        def on_partial(text: str) -> None:
            nonlocal stream_used
            stream_used = True
            self._safe_emit(debug_event(stream_id, {
                "stage": "structured-stream",
                "action": "replace",
                "value": text,
            }))

        if start_thinking:
            start_thinking()

        messages = history.to_model_messages()
        log.debug("model.request", pass_index=pass_index, messages=len(messages), model=self._config.model)

        request_task = asyncio.ensure_future(self._client.generate(
            messages,
            self._config,
            tools=self._tools,
            tool_choice=self._tool_name,
            on_partial=on_partial,
        ))
        request_task.add_done_callback(_consume_task_result)

        registration = self._cancellation.register(
            "model.generate",
            on_cancel=lambda reason: request_task.cancel(),
        )
        esc_waiter = None
        if esc_state is not None:
            esc_state.set_active_cancel(request_task.cancel)
            esc_waiter = esc_state.create_waiter()

        try:
            waitables: set[asyncio.Future] = {request_task}
            if esc_waiter is not None:
                waitables.add(esc_waiter.future)

            done, _ = await asyncio.wait(
                waitables,
                timeout=self._timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if esc_waiter is not None and esc_waiter.future in done and not esc_waiter.future.cancelled():
                await self._abort(request_task)
                return self._handle_escape(
                    history, pass_index, esc_waiter.future.result(), esc_state, set_no_human_flag,
                )

            if not done:
                log.warning("model.request_timeout", pass_index=pass_index, timeout_seconds=self._timeout)
                await self._abort(request_task)
                return self._handle_abort(history, pass_index, {"timeout_seconds": self._timeout})

            try:
                completion = request_task.result()
            except asyncio.CancelledError:
                return self._handle_abort(history, pass_index, {"source": "cancellation"})
            except Exception as e:
                if is_abort_like_error(e):
                    log.warning("model.request_aborted", pass_index=pass_index, error=str(e))
                    return self._handle_abort(history, pass_index, {"error": str(e)})
                raise

            if esc_state is not None:
                esc_state.reset()
            log.debug("model.response", pass_index=pass_index, tool_calls=len(completion.tool_calls))
            return ModelCompletionResult(status="success", completion=completion)

        finally:
            if esc_waiter is not None:
                esc_waiter.cleanup()
            if esc_state is not None:
                esc_state.clear_active_cancel()
            registration.unregister()
            if not request_task.done():
                request_task.cancel()
            if stop_thinking:
                stop_thinking()
            if stream_used:
                self._safe_emit(debug_event(stream_id, {
                    "stage": "structured-stream",
                    "action": "remove",
                }))

    # ── Outcome handlers ──────────────────────────────────────────────────────

    def _handle_escape(
        self,
        history: HistoryStore,
        pass_index: int,
        payload: Any,
        esc_state: Optional[EscState] = None,
        set_no_human_flag: Optional[Callable[[bool], None]] = None,
    ) -> ModelCompletionResult:
        log.info("model.request_canceled", pass_index=pass_index, reason=ESCAPE_REASON)
        if esc_state is not None:
            esc_state.reset()
        self._safe_emit(status_event("warn", "Operation canceled via user request."))
        if set_no_human_flag:
            set_no_human_flag(False)
        record = self._observations.build_cancellation(
            ESCAPE_REASON, ESC_CANCEL_MESSAGE, {"esc_payload": payload},
        )
        history.append(create_observation_entry(record, pass_index))
        return ModelCompletionResult(status="canceled", reason=ESCAPE_REASON)

    def _handle_abort(
        self,
        history: HistoryStore,
        pass_index: int,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ModelCompletionResult:
        self._safe_emit(status_event("warn", "Operation aborted before completion."))
        record = self._observations.build_cancellation(ABORT_REASON, ABORT_CANCEL_MESSAGE, metadata)
        history.append(create_observation_entry(record, pass_index))
        return ModelCompletionResult(status="canceled", reason=ABORT_REASON)

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    async def _abort(task: asyncio.Future) -> None:
        """Cancel the losing request; abort-like failures are expected, others surface."""
        task.cancel()
        results = await asyncio.gather(task, return_exceptions=True)
        outcome = results[0]
        if isinstance(outcome, BaseException) and not is_abort_like_error(outcome):
            raise outcome

    def _safe_emit(self, event: dict) -> None:
        try:
            self._emit(event)
        except Exception as e:
            log.debug("model.emit_failed", error=str(e))
