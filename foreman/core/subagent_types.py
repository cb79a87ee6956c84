"""
Subagent types, spawn configuration and session records.

A subagent type is one of the built-in kinds (each with its own base prompt,
iteration budget and tool restrictions) or ``CUSTOM``, which carries the name
of an agent from the custom-agent registry.
"""

import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from foreman.core.types import TokenUsage
from foreman.infra import prompt_loader

logger = logging.getLogger(__name__)


class SubagentKind(str, enum.Enum):
    CODE = "code"
    RESEARCH = "research"
    REFACTOR = "refactor"
    TEST = "test"
    DOCUMENTATION = "documentation"
    SECURITY = "security"
    ARCHITECT = "architect"
    REVIEWER = "reviewer"
    CUSTOM = "custom"


_ALIASES = {
    "code": SubagentKind.CODE, "coding": SubagentKind.CODE,
    "research": SubagentKind.RESEARCH, "investigate": SubagentKind.RESEARCH,
    "refactor": SubagentKind.REFACTOR, "refactoring": SubagentKind.REFACTOR,
    "test": SubagentKind.TEST, "testing": SubagentKind.TEST,
    "doc": SubagentKind.DOCUMENTATION, "docs": SubagentKind.DOCUMENTATION,
    "documentation": SubagentKind.DOCUMENTATION,
    "security": SubagentKind.SECURITY, "audit": SubagentKind.SECURITY,
    "architect": SubagentKind.ARCHITECT, "architecture": SubagentKind.ARCHITECT,
    "design": SubagentKind.ARCHITECT,
    "review": SubagentKind.REVIEWER, "reviewer": SubagentKind.REVIEWER,
    "code-review": SubagentKind.REVIEWER,
}

_MAX_ITERATIONS = {
    SubagentKind.RESEARCH: 10,
    SubagentKind.REVIEWER: 10,
    SubagentKind.ARCHITECT: 15,
    SubagentKind.DOCUMENTATION: 15,
    SubagentKind.SECURITY: 15,
}
_DEFAULT_MAX_ITERATIONS = 20

_READ_ONLY = ["Read", "Grep", "Glob", "LS"]
_ALLOWED_TOOLS = {
    SubagentKind.RESEARCH: _READ_ONLY + ["FetchUrl", "WebSearch"],
    SubagentKind.REVIEWER: list(_READ_ONLY),
    SubagentKind.SECURITY: _READ_ONLY + ["Execute"],
    SubagentKind.ARCHITECT: _READ_ONLY + ["WebSearch"],
}
_WRITE_TOOLS = ["Create", "Edit", "ApplyPatch", "MultiEdit", "Execute"]
_DENIED_TOOLS = {
    SubagentKind.RESEARCH: _WRITE_TOOLS,
    SubagentKind.REVIEWER: _WRITE_TOOLS,
    SubagentKind.ARCHITECT: _WRITE_TOOLS,
}

_DESCRIPTIONS = {
    SubagentKind.CODE: "Implements features and fixes with full tool access",
    SubagentKind.RESEARCH: "Investigates code or questions read-only and reports findings",
    SubagentKind.REFACTOR: "Restructures code without changing behaviour",
    SubagentKind.TEST: "Writes and runs tests",
    SubagentKind.DOCUMENTATION: "Writes and updates documentation",
    SubagentKind.SECURITY: "Audits code for vulnerabilities",
    SubagentKind.ARCHITECT: "Analyses the design and proposes a roadmap, read-only",
    SubagentKind.REVIEWER: "Reviews code for correctness and quality, read-only",
}


@dataclass(frozen=True)
class SubagentType:
    kind: SubagentKind
    custom_name: Optional[str] = None   # registry key, only for CUSTOM

    def __post_init__(self) -> None:
        if (self.kind is SubagentKind.CUSTOM) != bool(self.custom_name):
            raise ValueError("custom_name is required for, and only for, CUSTOM subagents")

    @classmethod
    def parse(cls, value: str) -> "SubagentType":
        """Built-in names and aliases map to their kind; anything else is a
        custom agent name."""
        key = value.strip().lower()
        kind = _ALIASES.get(key)
        if kind is not None:
            return cls(kind)
        return cls(SubagentKind.CUSTOM, key)

    @classmethod
    def custom(cls, name: str) -> "SubagentType":
        return cls(SubagentKind.CUSTOM, name)

    @property
    def is_custom(self) -> bool:
        return self.kind is SubagentKind.CUSTOM

    @property
    def name(self) -> str:
        return self.custom_name if self.is_custom else self.kind.value

    def __str__(self) -> str:
        return self.name

    def base_system_prompt(self) -> str:
        base = prompt_loader.load(f"SUBAGENT_{self.kind.name}.txt")
        return base + "\n\n" + prompt_loader.load("SUBAGENT_PROTOCOL.txt")

    def allowed_tools(self) -> Optional[list[str]]:
        tools = _ALLOWED_TOOLS.get(self.kind)
        return list(tools) if tools is not None else None

    def denied_tools(self) -> list[str]:
        return list(_DENIED_TOOLS.get(self.kind, []))

    def max_iterations(self) -> int:
        return _MAX_ITERATIONS.get(self.kind, _DEFAULT_MAX_ITERATIONS)


@dataclass(frozen=True)
class SubagentTypeInfo:
    name: str
    description: str
    max_iterations: int
    read_only: bool


def available_types() -> list[SubagentTypeInfo]:
    """Built-in subagent types, in declaration order."""
    infos = []
    for kind in SubagentKind:
        if kind is SubagentKind.CUSTOM:
            continue
        t = SubagentType(kind)
        infos.append(SubagentTypeInfo(
            name=kind.value,
            description=_DESCRIPTIONS[kind],
            max_iterations=t.max_iterations(),
            read_only="Edit" in t.denied_tools(),
        ))
    return infos


# ---------------------------------------------------------------------------
# Spawn configuration
# ---------------------------------------------------------------------------

def new_session_id() -> str:
    return f"sub_{str(uuid.uuid4()).split('-')[0]}"


@dataclass
class SubagentConfig:
    agent_type: SubagentType
    description: str                           # short task label
    prompt: str                                # detailed instructions
    working_dir: Path = field(default_factory=Path.cwd)
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_iterations: Optional[int] = None
    timeout: Optional[float] = None            # seconds for the whole run; None = no limit
    parent_session_id: Optional[str] = None
    continue_session_id: Optional[str] = None
    context: Optional[str] = None
    session_id: Optional[str] = None           # caller-chosen id for a fresh spawn
    delegation_depth: int = 1                  # Task hops from the root orchestrator

    @property
    def effective_max_iterations(self) -> int:
        if self.max_iterations is not None:
            return self.max_iterations
        return self.agent_type.max_iterations()

    def build_user_message(self) -> str:
        message = f"## Task\n{self.description}\n\n## Instructions\n{self.prompt}"
        if self.context:
            message += f"\n\n## Additional Context\n{self.context}"
        message += ("\n\nPlease complete this task and provide a clear summary "
                    "of your findings or actions when done.")
        return message


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SubagentStatus(str, enum.Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (SubagentStatus.COMPLETED, SubagentStatus.FAILED,
                        SubagentStatus.CANCELLED, SubagentStatus.TIMED_OUT)

    @property
    def can_resume(self) -> bool:
        return self in (SubagentStatus.PAUSED, SubagentStatus.WAITING_FOR_APPROVAL)


@dataclass
class SubagentSession:
    id: str
    agent_type: SubagentType
    description: str
    working_dir: Path
    parent_session_id: Optional[str] = None
    status: SubagentStatus = SubagentStatus.INITIALIZING
    turns_completed: int = 0
    tool_calls_made: int = 0
    tokens_used: TokenUsage = field(default_factory=TokenUsage)
    files_modified: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    # Child conversation, replayed when the session is continued.
    messages: list = field(default_factory=list, repr=False)

    def set_status(self, status: SubagentStatus) -> None:
        self.status = status
        self.updated_at = time.time()

    def record_turn(self, tool_calls: int, tokens: TokenUsage) -> None:
        self.turns_completed += 1
        self.tool_calls_made += tool_calls
        self.tokens_used.add(tokens)
        self.updated_at = time.time()

    def add_modified_file(self, path: str) -> None:
        if path not in self.files_modified:
            self.files_modified.append(path)
            self.updated_at = time.time()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agent_type": self.agent_type.name,
            "description": self.description,
            "working_dir": str(self.working_dir),
            "parent_session_id": self.parent_session_id,
            "status": self.status.value,
            "turns_completed": self.turns_completed,
            "tool_calls_made": self.tool_calls_made,
            "tokens_used": self.tokens_used.total_tokens,
            "files_modified": list(self.files_modified),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
