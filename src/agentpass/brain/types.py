"""
brain/types.py — agentpass Brain Data Models

Shared types used by the LLM client and the model request gateway.
The OpenAI adapter maps its native response shapes into these types.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class FinishReason(str, Enum):
    STOP = "stop"               # normal completion
    TOOL_CALLS = "tool_calls"   # LLM called the response tool
    LENGTH = "length"           # hit max_tokens
    ERROR = "error"


# ─────────────────────────────────────────────────────────────────────────────
# Tool calling types
# ─────────────────────────────────────────────────────────────────────────────


class ToolCall(BaseModel):
    """A single tool invocation requested by the LLM."""
    id: str = Field(..., description="Unique ID for this tool call (from LLM)")
    name: str = Field(..., description="Tool/function name to call")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Parsed JSON arguments")
    raw_arguments: str = Field(default="", description="Arguments exactly as the model emitted them")


class ToolSchema(BaseModel):
    """
    Provider-agnostic tool definition.
    The client translates this into the provider's function schema format.
    """
    name: str
    description: str
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )


# ─────────────────────────────────────────────────────────────────────────────
# Message types
# ─────────────────────────────────────────────────────────────────────────────


class Message(BaseModel):
    """A single chat message sent to the model."""
    role: Role
    content: str = ""

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=content)


# ─────────────────────────────────────────────────────────────────────────────
# LLM config
# ─────────────────────────────────────────────────────────────────────────────


class LLMConfig(BaseModel):
    """
    Per-request LLM configuration.
    Overrides the provider defaults for a single generate() call.
    """
    model: str
    temperature: float = 0.2
    max_tokens: int = 4096
    top_p: float = 1.0
    timeout_seconds: Optional[float] = None
    max_retries: int = 2                # transport-level retries inside the SDK


# ─────────────────────────────────────────────────────────────────────────────
# LLM response
# ─────────────────────────────────────────────────────────────────────────────


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class LLMResponse(BaseModel):
    """
    Normalised response from the LLM provider.
    """
    content: Optional[str] = None               # text response (None if tool_calls only)
    tool_calls: list[ToolCall] = Field(default_factory=list)
    finish_reason: FinishReason = FinishReason.STOP
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    def find_tool_call(self, name: str) -> Optional[ToolCall]:
        """Return the first tool call named `name`, or None."""
        for call in self.tool_calls:
            if call.name == name:
                return call
        return None
