"""
Events emitted by an orchestrator onto its event channel.

Each variant is a small dataclass; hosts dispatch on the concrete class
(``isinstance`` or ``match``).  Emission is best-effort: a closed receiver
drops events silently.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from foreman.core.messages import ToolResult
from foreman.core.types import RiskLevel, TokenUsage, TurnStatus


@dataclass(frozen=True)
class AgentEvent:
    """Base class for everything an orchestrator emits."""


@dataclass(frozen=True)
class TurnStarted(AgentEvent):
    turn_id: int
    user_input: str


@dataclass(frozen=True)
class TurnCompleted(AgentEvent):
    turn_id: int
    response: str
    status: TurnStatus
    token_usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class TurnInterrupted(AgentEvent):
    turn_id: int
    reason: str = "cancelled"


@dataclass(frozen=True)
class Thinking(AgentEvent):
    pass


@dataclass(frozen=True)
class TextDelta(AgentEvent):
    text: str


@dataclass(frozen=True)
class ReasoningDelta(AgentEvent):
    text: str


@dataclass(frozen=True)
class ToolCallPending(AgentEvent):
    call_id: str
    tool_name: str
    arguments: Any
    risk_level: RiskLevel


@dataclass(frozen=True)
class ToolCallApproved(AgentEvent):
    call_id: str
    tool_name: str
    automatic: bool = False


@dataclass(frozen=True)
class ToolCallRejected(AgentEvent):
    call_id: str
    tool_name: str
    reason: str


@dataclass(frozen=True)
class ToolCallStarted(AgentEvent):
    call_id: str
    tool_name: str
    arguments: Any


@dataclass(frozen=True)
class ToolCallCompleted(AgentEvent):
    call_id: str
    tool_name: str
    result: ToolResult
    duration: float = 0.0


@dataclass(frozen=True)
class TaskSpawned(AgentEvent):
    task_id: str
    description: str
    subagent_type: str


@dataclass(frozen=True)
class TaskProgress(AgentEvent):
    task_id: str
    message: str


@dataclass(frozen=True)
class TaskCompleted(AgentEvent):
    task_id: str
    success: bool
    session_id: Optional[str] = None


@dataclass(frozen=True)
class LoopDetected(AgentEvent):
    tool_name: str
    count: int


@dataclass(frozen=True)
class TokenUsageUpdate(AgentEvent):
    usage: TokenUsage


@dataclass(frozen=True)
class Error(AgentEvent):
    message: str
    recoverable: bool = True
