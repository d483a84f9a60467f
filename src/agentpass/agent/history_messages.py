"""
agent/history_messages.py — History entry builders

Every structured message the engine writes into the conversation is built
here. Content is a small tagged union (plan update, observation,
cancellation) serialised by exactly one function, so the JSON the model
reads always has the same shape.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from agentpass.agent.history import ChatHistoryEntry
from agentpass.agent.observations import ObservationRecord

PLAN_UPDATE_MESSAGE = "Here is the updated plan with the latest command observations."
PLAN_REMINDER_MESSAGE = (
    "I still have unfinished steps in the active plan. I am reminding myself "
    "to keep working on them."
)
REFUSAL_REMINDER_MESSAGE = (
    "The previous response appeared to be a refusal, so I nudged myself to continue."
)
REFUSAL_AUTO_RESPONSE = "continue"


# ─────────────────────────────────────────────────────────────────────────────
# Content union
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PlanUpdateContent:
    plan: list[dict[str, Any]]
    metadata: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class ObservationContent:
    payload: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CancellationContent:
    reason: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)


HistoryContent = Union[PlanUpdateContent, ObservationContent, CancellationContent]


def _observation_summary(payload: dict[str, Any]) -> tuple[str, Optional[str]]:
    """Return (summary, details) for an observation payload."""
    message = payload.get("message") if isinstance(payload.get("message"), str) else None

    if payload.get("json_parse_error"):
        return "I could not parse the previous assistant JSON response.", message
    if payload.get("schema_validation_error"):
        return "The previous assistant response failed schema validation.", message
    if payload.get("response_validation_error"):
        return "The previous assistant response failed protocol validation checks.", message
    if payload.get("canceled_by_human"):
        return "A human reviewer declined the proposed command.", message
    if payload.get("operation_canceled"):
        return "The operation was canceled before completion.", message

    parts = ["I executed the approved command from the active plan."]
    exit_code = payload.get("exit_code")
    if isinstance(exit_code, int):
        parts.append(f"It finished with exit code {exit_code}.")
    if payload.get("truncated"):
        parts.append("Note: the output shown below is truncated.")
    return " ".join(parts), None


def serialize_history_content(content: HistoryContent) -> dict[str, Any]:
    """The single serialiser for structured history content."""
    if isinstance(content, PlanUpdateContent):
        data: dict[str, Any] = {
            "type": "plan-update",
            "message": PLAN_UPDATE_MESSAGE,
            "plan": content.plan,
        }
        if content.metadata:
            data["metadata"] = content.metadata
        return data

    if isinstance(content, CancellationContent):
        payload = {
            "operation_canceled": True,
            "reason": content.reason,
            "message": content.message,
        }
        content = ObservationContent(payload=payload, metadata=content.metadata)

    if isinstance(content, ObservationContent):
        summary, details = _observation_summary(content.payload)
        data = {"type": "observation", "payload": content.payload, "summary": summary}
        if details:
            data["details"] = details
        if content.metadata:
            data["metadata"] = content.metadata
        return data

    raise TypeError(f"Unsupported history content: {type(content).__name__}")


def content_from_record(record: ObservationRecord) -> HistoryContent:
    payload = record.observation_for_llm
    if payload.get("operation_canceled"):
        return CancellationContent(
            reason=str(payload.get("reason") or "abort"),
            message=str(payload.get("message") or ""),
            metadata=dict(record.observation_metadata),
        )
    return ObservationContent(payload=dict(payload), metadata=dict(record.observation_metadata))


# ─────────────────────────────────────────────────────────────────────────────
# Entry builders
# ─────────────────────────────────────────────────────────────────────────────


def _dump(data: dict[str, Any]) -> str:
    return json.dumps(data, indent=2, default=str)


def create_observation_entry(record: ObservationRecord, pass_index: int) -> ChatHistoryEntry:
    return ChatHistoryEntry(
        role="user",
        content=_dump(serialize_history_content(content_from_record(record))),
        pass_index=pass_index,
    )


def create_plan_observation_entry(
    plan: list[dict[str, Any]],
    pass_index: int,
    metadata: Optional[dict[str, Any]] = None,
) -> ChatHistoryEntry:
    return ChatHistoryEntry(
        role="user",
        content=_dump(serialize_history_content(PlanUpdateContent(plan=plan, metadata=metadata))),
        pass_index=pass_index,
    )


def create_plan_reminder_entry(auto_response: str, pass_index: int) -> ChatHistoryEntry:
    return ChatHistoryEntry(
        role="assistant",
        content=_dump({
            "type": "plan-reminder",
            "message": PLAN_REMINDER_MESSAGE,
            "auto_response": auto_response,
        }),
        pass_index=pass_index,
    )


def create_refusal_reminder_entry(pass_index: int) -> ChatHistoryEntry:
    return ChatHistoryEntry(
        role="assistant",
        content=_dump({
            "type": "refusal-reminder",
            "message": REFUSAL_REMINDER_MESSAGE,
            "auto_response": REFUSAL_AUTO_RESPONSE,
        }),
        pass_index=pass_index,
    )


def create_assistant_entry(raw_response: str, pass_index: int) -> ChatHistoryEntry:
    return ChatHistoryEntry(role="assistant", content=raw_response, pass_index=pass_index)


def create_user_entry(text: str, pass_index: int) -> ChatHistoryEntry:
    return ChatHistoryEntry(role="user", content=text, pass_index=pass_index)


def create_system_entry(text: str) -> ChatHistoryEntry:
    return ChatHistoryEntry(role="system", content=text)
