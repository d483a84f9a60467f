"""
brain/llm_client.py — Abstract LLM Client + Retry

Provider implementations must subclass BaseLLMClient and implement generate().

  - _call_with_retry() — exponential backoff on transient errors
  - RetryingLLMClient — wraps any client with retry. Cancellation is never
    retried: asyncio.CancelledError propagates immediately so the model
    request gateway can abort an in-flight request.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from typing import Callable, Optional

from agentpass.brain.types import LLMConfig, LLMResponse, Message, ToolSchema

# Called with the accumulated partial tool-call arguments while streaming.
PartialCallback = Callable[[str], None]


class BaseLLMClient(ABC):
    """
    Abstract base for LLM provider clients.

    Subclasses must implement:
      - generate()     -> call the LLM, return normalised LLMResponse
      - health_check() -> verify connectivity to the provider
    """

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key
        self.base_url = base_url

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
        tool_choice: Optional[str] = None,
        on_partial: Optional[PartialCallback] = None,
    ) -> LLMResponse:
        """
        Call the LLM and return a normalised response.

        tool_choice: name of a tool the model is forced to call.
        on_partial:  best-effort callback receiving partial tool arguments.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the provider is reachable and the API key is valid."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


# ─────────────────────────────────────────────────────────────────────────────
# Retry logic
# ─────────────────────────────────────────────────────────────────────────────


async def _call_with_retry(
    client: BaseLLMClient,
    messages: list[Message],
    config: LLMConfig,
    tools: Optional[list[ToolSchema]],
    tool_choice: Optional[str] = None,
    on_partial: Optional[PartialCallback] = None,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> LLMResponse:
    """
    Call client.generate() with exponential backoff on transient errors.

    Retries on:
      - LLMConnectionError  (network blip, 5xx)
      - LLMRateLimitError   (429 / quota exceeded)

    Does NOT retry:
      - LLMContextError, LLMInvalidRequestError, other LLMError subclasses
      - asyncio.CancelledError (the caller is aborting the request)

    Backoff formula: min(base_delay * 2^attempt + jitter, max_delay)
    If LLMRateLimitError carries retry_after, that value is used instead.
    """
    last_error: Exception | None = None

    for attempt in range(max_attempts):
        try:
            return await client.generate(
                messages=messages,
                config=config,
                tools=tools,
                tool_choice=tool_choice,
                on_partial=on_partial,
            )

        except (LLMConnectionError, LLMRateLimitError) as e:
            last_error = e

            if attempt == max_attempts - 1:
                break

            if isinstance(e, LLMRateLimitError) and e.retry_after:
                delay = min(e.retry_after, max_delay)
            else:
                jitter = random.uniform(0, 0.5)
                delay = min(base_delay * (2 ** attempt) + jitter, max_delay)

            from agentpass.observability.logger import get_logger
            _log = get_logger("agentpass.brain.retry")
            _log.warning(
                "llm.retrying",
                attempt=attempt + 1,
                max_attempts=max_attempts,
                delay_s=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)

    raise last_error  # type: ignore[misc]


# ─────────────────────────────────────────────────────────────────────────────
# RetryingLLMClient
# ─────────────────────────────────────────────────────────────────────────────


class RetryingLLMClient(BaseLLMClient):
    """
    Wraps an LLM client with automatic retry (exponential backoff).

    Usage:
        client = RetryingLLMClient(OpenAIClient(api_key=...), max_attempts=3)
        response = await client.generate(messages, config, tools, tool_choice="open-agent")
    """

    def __init__(
        self,
        inner: BaseLLMClient,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        super().__init__()
        self._inner = inner
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay

    @property
    def inner(self) -> BaseLLMClient:
        return self._inner

    async def generate(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
        tool_choice: Optional[str] = None,
        on_partial: Optional[PartialCallback] = None,
    ) -> LLMResponse:
        return await _call_with_retry(
            client=self._inner,
            messages=messages,
            config=config,
            tools=tools,
            tool_choice=tool_choice,
            on_partial=on_partial,
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
            max_delay=self._max_delay,
        )

    async def health_check(self) -> bool:
        return await self._inner.health_check()

    def __repr__(self) -> str:
        return f"<RetryingLLMClient inner={self._inner!r} attempts={self._max_attempts}>"


# ─────────────────────────────────────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────────────────────────────────────


class LLMError(Exception):
    """Base exception for all LLM client errors."""
    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class LLMConnectionError(LLMError):
    """Provider unreachable or authentication failed."""


class LLMRateLimitError(LLMError):
    """Rate limit hit — retry with exponential backoff."""
    def __init__(self, message: str, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class LLMContextError(LLMError):
    """Input exceeds model context window."""


class LLMInvalidRequestError(LLMError):
    """Bad request — invalid parameters or unsupported feature."""


class LLMTimeoutError(LLMConnectionError):
    """The provider did not answer within the request timeout."""
