"""
brain/__init__.py — agentpass LLM Brain
"""

from __future__ import annotations

from agentpass.brain.llm_client import (
    BaseLLMClient,
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
    LLMTimeoutError,
    RetryingLLMClient,
)
from agentpass.brain.types import (
    FinishReason,
    LLMConfig,
    LLMResponse,
    Message,
    Role,
    TokenUsage,
    ToolCall,
    ToolSchema,
)

__all__ = [
    "LLMClientFactory",
    "BaseLLMClient",
    "RetryingLLMClient",
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
    "LLMContextError",
    "LLMInvalidRequestError",
    "LLMTimeoutError",
    "Message",
    "LLMConfig",
    "LLMResponse",
    "ToolCall",
    "ToolSchema",
    "TokenUsage",
    "Role",
    "FinishReason",
]


class LLMClientFactory:

    @staticmethod
    def create(
        api_key: str | None = None,
        base_url: str | None = None,
        max_retries: int = 2,
    ) -> BaseLLMClient:
        if not api_key and not base_url:
            raise LLMConnectionError("OPENAI_API_KEY is required", provider="openai")
        from agentpass.brain.openai_client import OpenAIClient
        return OpenAIClient(api_key=api_key, base_url=base_url, max_retries=max_retries)

    @staticmethod
    def from_settings(settings) -> BaseLLMClient:
        """
        Create an LLM client from Settings, wrapped in RetryingLLMClient.

        Example config.yaml:
            llm:
              model: gpt-4.1
              max_retries: 2        # SDK-level transport retries
              retry:
                max_attempts: 3     # application-level backoff
                base_delay: 1.0
                max_delay: 30.0
        """
        inner = LLMClientFactory.create(
            api_key=settings.openai_api_key,
            base_url=settings.llm.base_url,
            max_retries=settings.llm.max_retries,
        )
        retry_cfg = settings.llm.retry
        return RetryingLLMClient(
            inner=inner,
            max_attempts=retry_cfg.max_attempts,
            base_delay=retry_cfg.base_delay,
            max_delay=retry_cfg.max_delay,
        )
