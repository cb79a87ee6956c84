"""
Conversation messages and the per-orchestrator message history.

The history is append-only during a turn.  Every ``tool`` message must
answer a tool call issued by an earlier ``assistant`` message that has not
been answered yet; :meth:`MessageHistory.add` enforces this so the history
stays valid for the chat-completions API.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from foreman.core.types import InternalError

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Any = field(default_factory=dict)  # parsed JSON value

    def arguments_json(self) -> str:
        return json.dumps(self.arguments)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json()},
        }


def parse_arguments(raw: str) -> Any:
    """Parse a tool-call argument string, falling back to ``{}``."""
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.debug("Unparseable tool arguments, using {}: %.200s", raw)
        return {}


@dataclass
class ToolResult:
    output: str
    success: bool = True
    files_touched: Optional[list[str]] = None

    @classmethod
    def ok(cls, output: str, files_touched: Optional[list[str]] = None) -> "ToolResult":
        return cls(output=output, success=True, files_touched=files_touched)

    @classmethod
    def error(cls, message: str) -> "ToolResult":
        return cls(output=message, success=False)


@dataclass
class Message:
    role: Role
    content: str = ""
    tool_calls: Optional[list[ToolCall]] = None
    tool_call_id: Optional[str] = None

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str, tool_calls: Optional[list[ToolCall]] = None) -> "Message":
        return cls(Role.ASSISTANT, content, tool_calls=tool_calls or None)

    @classmethod
    def tool_result(cls, tool_call_id: str, result: ToolResult) -> "Message":
        return cls(Role.TOOL, result.output, tool_call_id=tool_call_id)

    def to_dict(self) -> dict:
        """OpenAI chat-completions representation."""
        msg: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            msg["tool_call_id"] = self.tool_call_id
        return msg


def sanitize_tool_call_boundary(messages: list[Message]) -> list[Message]:
    """Ensure *messages* form a valid tool-call sequence.

    After trimming, the kept tail may start with orphaned ``tool`` results
    whose ``assistant`` was discarded, or end with an ``assistant`` whose
    tool calls were never answered.  Both are removed; a leading assistant
    whose results were only partially kept is dropped with them.
    """
    start = 0
    while start < len(messages) and messages[start].role is Role.TOOL:
        start += 1
    msgs = list(messages[start:])
    if not msgs:
        return []

    first = msgs[0]
    if first.role is Role.ASSISTANT and first.tool_calls:
        expected = {tc.id for tc in first.tool_calls}
        idx = 1
        while idx < len(msgs) and msgs[idx].role is Role.TOOL:
            expected.discard(msgs[idx].tool_call_id)
            idx += 1
        if expected:
            msgs = msgs[idx:]
            while msgs and msgs[0].role is Role.TOOL:
                msgs.pop(0)

    if msgs and msgs[-1].role is Role.ASSISTANT and msgs[-1].tool_calls:
        msgs.pop()
    return msgs


class MessageHistory:
    """Ordered conversation history owned by a single orchestrator."""

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._unanswered: set[str] = set()

    def __len__(self) -> int:
        return len(self._messages)

    def add(self, message: Message) -> None:
        if message.role is Role.TOOL:
            if message.tool_call_id not in self._unanswered:
                raise InternalError(
                    f"tool result for unknown or already answered call {message.tool_call_id!r}"
                )
            self._unanswered.discard(message.tool_call_id)
        elif message.role is Role.ASSISTANT and message.tool_calls:
            self._unanswered = {tc.id for tc in message.tool_calls}
        self._messages.append(message)

    def extend(self, messages: list[Message]) -> None:
        for message in messages:
            self.add(message)

    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def unanswered(self) -> set[str]:
        return set(self._unanswered)

    def clear(self) -> None:
        self._messages.clear()
        self._unanswered.clear()

    def compact(self, keep_last: int) -> int:
        """Drop all but the last *keep_last* non-system messages.

        Leading system messages are preserved.  Returns the number of
        messages removed.
        """
        head = []
        for m in self._messages:
            if m.role is not Role.SYSTEM:
                break
            head.append(m)
        body = self._messages[len(head):]
        if len(body) <= keep_last:
            return 0
        tail = sanitize_tool_call_boundary(body[-keep_last:] if keep_last > 0 else [])
        removed = len(self._messages) - len(head) - len(tail)
        self.clear()
        self.extend(head + tail)
        logger.info("History compacted: removed %d message(s), kept %d", removed, len(self._messages))
        return removed
