"""
Subagent progress reporting.

:class:`ProgressEvent` variants travel from the subagent executor to
whoever launched the subagent (normally the Task tool).  Each renders a
one-line, human-readable :meth:`to_message`.  :class:`SubagentProgress`
wraps a channel sender and keeps running counters for one session.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Optional

from foreman.core.subagent_types import SubagentStatus, SubagentType
from foreman.infra.channel import Sender

PREVIEW_CHARS = 200
TEXT_PREVIEW_CHARS = 100


def _preview(value: Any, limit: int = PREVIEW_CHARS) -> str:
    if not isinstance(value, str):
        try:
            value = json.dumps(value)
        except (TypeError, ValueError):
            value = repr(value)
    return value[:limit]


@dataclass(frozen=True)
class ProgressEvent:
    session_id: str

    def to_message(self) -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class Started(ProgressEvent):
    agent_type: str
    description: str

    def to_message(self) -> str:
        return f"Spawned {self.agent_type} subagent: {self.description}"


@dataclass(frozen=True)
class StatusChanged(ProgressEvent):
    old_status: str
    new_status: str

    def to_message(self) -> str:
        return f"Status: {self.new_status}"


@dataclass(frozen=True)
class Thinking(ProgressEvent):
    turn_number: int

    def to_message(self) -> str:
        return f"Thinking (turn {self.turn_number})"


@dataclass(frozen=True)
class TextOutput(ProgressEvent):
    content: str

    def to_message(self) -> str:
        if len(self.content) > TEXT_PREVIEW_CHARS:
            return self.content[:TEXT_PREVIEW_CHARS] + "..."
        return self.content


@dataclass(frozen=True)
class ToolCallStarted(ProgressEvent):
    tool_name: str
    tool_id: str
    arguments_preview: str = ""

    def to_message(self) -> str:
        return f"Calling: {self.tool_name}"


@dataclass(frozen=True)
class ToolCallCompleted(ProgressEvent):
    tool_name: str
    tool_id: str
    success: bool
    output_preview: str = ""
    duration_ms: int = 0

    def to_message(self) -> str:
        mark = "ok" if self.success else "failed"
        return f"{self.tool_name} {mark} ({self.duration_ms}ms)"


@dataclass(frozen=True)
class ToolCallPending(ProgressEvent):
    tool_name: str
    tool_id: str
    risk_level: str

    def to_message(self) -> str:
        return f"Awaiting approval: {self.tool_name} ({self.risk_level})"


@dataclass(frozen=True)
class FileModified(ProgressEvent):
    path: str
    operation: str

    def to_message(self) -> str:
        return f"{self.operation} {self.path}"


@dataclass(frozen=True)
class Completed(ProgressEvent):
    total_turns: int
    total_tool_calls: int
    duration_ms: int

    def to_message(self) -> str:
        return (f"Completed: {self.total_turns} turns, "
                f"{self.total_tool_calls} tool calls, {self.duration_ms}ms")


@dataclass(frozen=True)
class Failed(ProgressEvent):
    error: str
    recoverable: bool = False

    def to_message(self) -> str:
        return f"Failed: {self.error}"


@dataclass(frozen=True)
class Cancelled(ProgressEvent):
    reason: str

    def to_message(self) -> str:
        return f"Cancelled: {self.reason}"


@dataclass(frozen=True)
class Warning(ProgressEvent):
    message: str

    def to_message(self) -> str:
        return f"Warning: {self.message}"


class SubagentProgress:
    """Progress tracker for one subagent run.

    Every method is fire-and-forget; a closed progress channel is ignored.
    """

    def __init__(self, session_id: str, agent_type: SubagentType, description: str,
                 sender: Optional[Sender] = None) -> None:
        self.session_id = session_id
        self.agent_type = agent_type
        self.description = description
        self.status = SubagentStatus.INITIALIZING
        self.current_turn = 0
        self.total_tool_calls = 0
        self.files_modified: list[str] = []
        self._sender = sender
        self._started = time.monotonic()
        self._emit(Started(session_id, agent_type.name, description))

    def _emit(self, event: ProgressEvent) -> None:
        if self._sender is not None:
            self._sender.send(event)

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def set_status(self, status: SubagentStatus) -> None:
        old, self.status = self.status, status
        self._emit(StatusChanged(self.session_id, old.value, status.value))

    def start_thinking(self) -> None:
        self.current_turn += 1
        self._emit(Thinking(self.session_id, self.current_turn))

    def text_output(self, content: str) -> None:
        self._emit(TextOutput(self.session_id, content))

    def tool_call_started(self, tool_name: str, tool_id: str, arguments: Any) -> None:
        self._emit(ToolCallStarted(self.session_id, tool_name, tool_id, _preview(arguments)))

    def tool_call_completed(self, tool_name: str, tool_id: str, success: bool,
                            output: str, duration: float) -> None:
        self.total_tool_calls += 1
        self._emit(ToolCallCompleted(self.session_id, tool_name, tool_id, success,
                                     _preview(output), int(duration * 1000)))

    def tool_call_pending(self, tool_name: str, tool_id: str, risk_level: str) -> None:
        self._emit(ToolCallPending(self.session_id, tool_name, tool_id, risk_level))

    def file_modified(self, path: str, operation: str) -> None:
        if path not in self.files_modified:
            self.files_modified.append(path)
        self._emit(FileModified(self.session_id, path, operation))

    def warning(self, message: str) -> None:
        self._emit(Warning(self.session_id, message))

    def complete(self) -> None:
        self.status = SubagentStatus.COMPLETED
        self._emit(Completed(self.session_id, self.current_turn,
                             self.total_tool_calls, self.elapsed_ms))

    def fail(self, error: str, recoverable: bool = False) -> None:
        self.status = SubagentStatus.FAILED
        self._emit(Failed(self.session_id, error, recoverable))

    def cancel(self, reason: str) -> None:
        self.status = SubagentStatus.CANCELLED
        self._emit(Cancelled(self.session_id, reason))
