"""
Shared type definitions for the foreman.core package.

Houses configuration data classes, the risk / sandbox enums, token
accounting and the exception taxonomy used by the orchestrator, the
approval gate and the subagent executor.
"""

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ForemanError(Exception):
    """Base class for every error raised by the engine."""


class ProviderError(ForemanError):
    """The model API (or its stream) failed."""


class ContextTooLargeError(ProviderError):
    """The request payload or token count exceeds backend limits."""


class RateLimitError(ForemanError):
    """A rate limit was hit: either HTTP 429 from the provider or the
    subagent concurrency cap."""


class SubagentTimeoutError(ForemanError):
    """A subagent turn exceeded its deadline."""


class NotFoundError(ForemanError):
    """An unknown session id, tool or custom agent was referenced."""


class InvalidInputError(ForemanError):
    """Malformed tool arguments, or a session that cannot be resumed."""


class InternalError(ForemanError):
    """A broken invariant inside the engine."""


_CONTEXT_TOO_LARGE_PHRASES = (
    "context length", "too many tokens", "maximum context",
    "token limit", "content too large", "payload too large",
)


def classify_api_error(exc: Exception) -> type | None:
    """Classify a provider exception as a normalized error type.

    Returns :class:`RateLimitError` or :class:`ContextTooLargeError` if
    the exception matches the corresponding pattern, or ``None`` for
    unrecognised errors.
    """
    status = getattr(exc, "status_code", None)

    if (
        status == 429
        or "RateLimit" in type(exc).__name__
        or str(getattr(exc, "code", "")) == "429"
    ):
        return RateLimitError

    if status == 413:
        return ContextTooLargeError
    if status == 400:
        msg = str(exc).lower()
        if any(phrase in msg for phrase in _CONTEXT_TOO_LARGE_PHRASES):
            return ContextTooLargeError

    return None


# ---------------------------------------------------------------------------
# Risk and sandbox policy
# ---------------------------------------------------------------------------

class SandboxPolicy(str, enum.Enum):
    FULL = "full"        # sandboxed execution; Safe and Medium run unattended
    PROMPT = "prompt"    # sandboxed execution; only Safe runs unattended
    NONE = "none"        # no sandbox and no gating


class RiskLevel(str, enum.Enum):
    SAFE = "safe"
    MEDIUM = "medium"
    HIGH = "high"

    def can_auto_approve(self, policy: SandboxPolicy) -> bool:
        """Whether *policy* lets a call of this risk run without a prompt."""
        if policy is SandboxPolicy.NONE:
            return True
        if policy is SandboxPolicy.FULL:
            return self in (RiskLevel.SAFE, RiskLevel.MEDIUM)
        return self is RiskLevel.SAFE

    def uses_sandbox(self, policy: SandboxPolicy) -> bool:
        return (
            policy in (SandboxPolicy.FULL, SandboxPolicy.PROMPT)
            and self in (RiskLevel.HIGH, RiskLevel.MEDIUM)
        )


class TurnStatus(str, enum.Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Token accounting
# ---------------------------------------------------------------------------

@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cached_tokens += other.cached_tokens
        self.reasoning_tokens += other.reasoning_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        total = TokenUsage()
        total.add(self)
        total.add(other)
        return total


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class ProviderConfig:
    model: str
    max_tokens: int = 4096   # maximum tokens in a single response
    reasoning: bool = False  # send max_completion_tokens instead of max_tokens
    api_key: str = ""
    base_url: str = ""       # e.g. http://localhost:8080/v1  or  https://api.openai.com/v1
    name: str = "default"


@dataclass
class AgentConfig:
    """Per-orchestrator settings.

    ``allowed_tools`` of ``None`` means every registered tool is offered;
    ``denied_tools`` is always subtracted.  ``delegation_depth`` counts how
    many Task hops separate this orchestrator from the root one.
    """
    model: str
    max_tool_iterations: int = 25
    max_output_tokens: int = 4096
    temperature: Optional[float] = None
    tool_timeout: float = 120.0          # seconds per tool execution
    sandbox_policy: SandboxPolicy = SandboxPolicy.PROMPT
    auto_approve_safe: bool = False
    streaming: bool = True
    system_prompt: Optional[str] = None
    approval_timeout: Optional[float] = None  # seconds; None waits on the host
    allowed_tools: Optional[list[str]] = None
    denied_tools: list[str] = field(default_factory=list)
    delegation_depth: int = 0
    max_delegation_depth: int = 2
    working_directory: Path = field(default_factory=Path.cwd)

    def tool_allowed(self, name: str) -> bool:
        if name in self.denied_tools:
            return False
        return self.allowed_tools is None or name in self.allowed_tools

    @property
    def can_delegate(self) -> bool:
        return self.delegation_depth < self.max_delegation_depth and self.tool_allowed("Task")
