"""
agent/ — agentpass Agent Core

Public API:
    from agentpass.agent import AgentLoop, PassExecutor, HistoryStore

Component overview:
    AgentLoop               Session owner: history, plan, ESC state, pass budget
    PassExecutor            One model round-trip plus the commands it asks for
    ModelRequestGateway     Cancelable, time-bounded model request
    CommandExecutionGateway Approval, then shell or virtual-agent execution
    PlanManager             Active plan, dependency state, progress events
    HistoryCompactor        Summarizes old history under context pressure
    AmnesiaManager          Prunes stale plan payloads from old passes
    RequestPayloadGuard     Aborts when the request size balloons
"""

from agentpass.agent.amnesia import AmnesiaManager, apply_dementia_policy
from agentpass.agent.command_execution import CommandExecutionGateway
from agentpass.agent.esc_state import EscState
from agentpass.agent.history import ChatHistoryEntry, HistoryStore, create_chat_entry
from agentpass.agent.history_compactor import HistoryCompactor
from agentpass.agent.loop import AgentLoop, LoopResult
from agentpass.agent.model_gateway import ModelRequestGateway
from agentpass.agent.pass_executor import PassExecutor
from agentpass.agent.payload_guard import RequestPayloadGuard
from agentpass.agent.plan import PlanCommand, PlanStep
from agentpass.agent.plan_manager import PlanManager

__all__ = [
    "AgentLoop",
    "LoopResult",
    "PassExecutor",
    "ModelRequestGateway",
    "CommandExecutionGateway",
    "EscState",
    "ChatHistoryEntry",
    "HistoryStore",
    "create_chat_entry",
    "HistoryCompactor",
    "AmnesiaManager",
    "apply_dementia_policy",
    "RequestPayloadGuard",
    "PlanCommand",
    "PlanStep",
    "PlanManager",
]
