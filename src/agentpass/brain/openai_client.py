"""
brain/openai_client.py — OpenAI LLM Client

Supports any OpenAI chat-completions compatible endpoint.
Handles forced tool calling, optional streaming of partial tool arguments,
and error normalisation.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import openai
from openai import AsyncOpenAI

from agentpass.brain.llm_client import (
    BaseLLMClient,
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
    LLMTimeoutError,
    PartialCallback,
)
from agentpass.brain.types import (
    FinishReason,
    LLMConfig,
    LLMResponse,
    Message,
    TokenUsage,
    ToolCall,
    ToolSchema,
)
from agentpass.observability.logger import get_logger

log = get_logger(__name__)

_FINISH_MAP = {
    "stop": FinishReason.STOP,
    "tool_calls": FinishReason.TOOL_CALLS,
    "length": FinishReason.LENGTH,
}


class OpenAIClient(BaseLLMClient):
    """
    OpenAI API client (also works with OpenAI-compatible endpoints
    e.g. LiteLLM proxy, local vLLM, etc.).
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: Optional[str] = None,     # None = official OpenAI endpoint
        organization: Optional[str] = None,
        max_retries: int = 2,
    ):
        super().__init__(api_key=api_key, base_url=base_url)
        if not api_key and base_url:
            # The SDK refuses an empty key even for keyless local endpoints.
            api_key = "not-needed"
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            organization=organization,
            max_retries=max_retries,
        )

    # ── Public API ────────────────────────────────────────────────────────────

    async def generate(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
        tool_choice: Optional[str] = None,
        on_partial: Optional[PartialCallback] = None,
    ) -> LLMResponse:
        request: dict[str, Any] = {
            "model": config.model,
            "messages": self._to_provider_messages(messages),
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            "top_p": config.top_p,
        }
        if tools:
            request["tools"] = self._to_provider_tools(tools)
            if tool_choice:
                request["tool_choice"] = {"type": "function", "function": {"name": tool_choice}}
        if config.timeout_seconds is not None:
            request["timeout"] = config.timeout_seconds

        log.debug(
            "openai.generate.start",
            model=config.model,
            message_count=len(messages),
            has_tools=bool(tools),
            streaming=on_partial is not None,
        )

        client = self._client.with_options(max_retries=config.max_retries)
        try:
            if on_partial is not None:
                result = await self._generate_streaming(client, request, on_partial)
            else:
                response = await client.chat.completions.create(**request)
                result = self._from_provider_response(response)
        except openai.AuthenticationError as e:
            raise LLMConnectionError(str(e), provider="openai", status_code=401) from e
        except openai.RateLimitError as e:
            raise LLMRateLimitError(str(e), provider="openai") from e
        except openai.BadRequestError as e:
            if "context" in str(e).lower() or "too long" in str(e).lower():
                raise LLMContextError(str(e), provider="openai") from e
            raise LLMInvalidRequestError(str(e), provider="openai") from e
        except openai.APITimeoutError as e:
            raise LLMTimeoutError(f"Request timeout: {e}", provider="openai") from e
        except openai.APIConnectionError as e:
            raise LLMConnectionError(str(e), provider="openai") from e
        except openai.APIError as e:
            raise LLMError(str(e), provider="openai", status_code=getattr(e, "status_code", None)) from e

        log.debug(
            "openai.generate.complete",
            model=result.model,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            finish_reason=result.finish_reason,
            tool_calls=len(result.tool_calls),
        )
        return result

    async def health_check(self) -> bool:
        try:
            await self._client.models.list()
            return True
        except (openai.APIError, OSError) as e:
            log.warning("openai.health_check.failed", error=str(e), error_type=type(e).__name__)
            return False

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _generate_streaming(
        self,
        client: AsyncOpenAI,
        request: dict[str, Any],
        on_partial: PartialCallback,
    ) -> LLMResponse:
        """Stream the completion, forwarding partial tool arguments to on_partial."""
        stream = await client.chat.completions.create(
            **request,
            stream=True,
            stream_options={"include_usage": True},
        )

        content_parts: list[str] = []
        calls: dict[int, dict[str, Any]] = {}
        finish_reason = FinishReason.STOP
        usage = TokenUsage()
        model = request["model"]

        async for chunk in stream:
            if chunk.usage is not None:
                usage = TokenUsage(
                    input_tokens=chunk.usage.prompt_tokens or 0,
                    output_tokens=chunk.usage.completion_tokens or 0,
                )
            if chunk.model:
                model = chunk.model
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            delta = choice.delta
            if delta.content:
                content_parts.append(delta.content)
            for tc in delta.tool_calls or []:
                slot = calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                if tc.id:
                    slot["id"] = tc.id
                if tc.function is not None:
                    if tc.function.name:
                        slot["name"] = tc.function.name
                    if tc.function.arguments:
                        slot["arguments"] += tc.function.arguments
                        on_partial(slot["arguments"])
            if choice.finish_reason:
                finish_reason = _FINISH_MAP.get(choice.finish_reason, FinishReason.STOP)

        tool_calls = [
            self._make_tool_call(slot["id"], slot["name"], slot["arguments"])
            for _, slot in sorted(calls.items())
        ]
        return LLMResponse(
            content="".join(content_parts) or None,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            usage=usage,
            model=model,
        )

    def _to_provider_messages(self, messages: list[Message]) -> list[dict]:
        """Translate internal Message list → OpenAI chat message format."""
        return [{"role": msg.role.value, "content": msg.content or ""} for msg in messages]

    def _to_provider_tools(self, tools: list[ToolSchema]) -> list[dict]:
        """Translate internal ToolSchema list → OpenAI function tool format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                },
            }
            for t in tools
        ]

    @staticmethod
    def _make_tool_call(call_id: str, name: str, raw_arguments: str) -> ToolCall:
        try:
            parsed = json.loads(raw_arguments) if raw_arguments else {}
        except json.JSONDecodeError:
            parsed = {}
        return ToolCall(
            id=call_id or "call-0",
            name=name,
            arguments=parsed if isinstance(parsed, dict) else {},
            raw_arguments=raw_arguments,
        )

    def _from_provider_response(self, response) -> LLMResponse:
        """Translate OpenAI ChatCompletion → internal LLMResponse."""
        choice = response.choices[0]
        msg = choice.message

        finish_reason = _FINISH_MAP.get(choice.finish_reason or "stop", FinishReason.STOP)

        tool_calls: list[ToolCall] = []
        if msg.tool_calls:
            for tc in msg.tool_calls:
                tool_calls.append(
                    self._make_tool_call(tc.id, tc.function.name, tc.function.arguments or "")
                )

        usage = TokenUsage(
            input_tokens=response.usage.prompt_tokens if response.usage else 0,
            output_tokens=response.usage.completion_tokens if response.usage else 0,
        )

        return LLMResponse(
            content=msg.content,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            usage=usage,
            model=response.model,
        )
