"""
Interfaces the engine consumes: the model client, the tool capability and
the custom-agent registry, plus the request / response / stream-event types
that flow across the model-client boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Optional, Protocol

from foreman.core.messages import Message, ToolCall, ToolResult
from foreman.core.types import RiskLevel, TokenUsage

if TYPE_CHECKING:
    from foreman.infra.agent_registry import CustomAgent


# ---------------------------------------------------------------------------
# Model client
# ---------------------------------------------------------------------------

@dataclass
class CompletionRequest:
    model: str
    messages: list[Message]
    tools: list[dict] = field(default_factory=list)
    max_tokens: int = 4096
    temperature: Optional[float] = None
    stream: bool = False


@dataclass
class CompletionResponse:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    reasoning: str = ""


@dataclass(frozen=True)
class ResponseEvent:
    """Base class for streaming events."""


@dataclass(frozen=True)
class Delta(ResponseEvent):
    text: str


@dataclass(frozen=True)
class Reasoning(ResponseEvent):
    text: str


@dataclass(frozen=True)
class StreamToolCall(ResponseEvent):
    call: ToolCall


@dataclass(frozen=True)
class Done(ResponseEvent):
    usage: TokenUsage = field(default_factory=TokenUsage)
    tool_calls: tuple[ToolCall, ...] = ()


@dataclass(frozen=True)
class StreamError(ResponseEvent):
    message: str


class ModelClient(Protocol):
    async def complete_sync(self, request: CompletionRequest) -> CompletionResponse:
        ...

    def complete(self, request: CompletionRequest) -> AsyncIterator[ResponseEvent]:
        ...


# ---------------------------------------------------------------------------
# Tools and agents
# ---------------------------------------------------------------------------

class ToolCapability(Protocol):
    def get_definitions(self) -> list[dict]:
        ...

    async def execute(self, call: ToolCall) -> ToolResult:
        ...

    def assess_risk(self, call: ToolCall) -> RiskLevel:
        ...


class AgentLookup(Protocol):
    def get(self, name: str) -> Optional["CustomAgent"]:
        ...

    def list(self, include_hidden: bool = False) -> list["CustomAgent"]:
        ...

    def list_names(self) -> list[str]:
        ...
