"""
Tool-call approval.

State machine per call::

    Proposed -> RiskAssessed -> {AutoApproved | PendingApproval}
             -> {Approved | Rejected | Aborted} -> Executed

Auto-approval rules, first match wins:

1. the tool is in the session's always-approved set;
2. ``auto_approve_safe`` is on and the call is ``Safe``;
3. the risk level may run unattended under the sandbox policy.

Everything else becomes a :class:`PendingApproval` handed to the host
callback.  The host answers through :meth:`PendingApproval.respond` (or by
returning the response from the callback).  A host that never answers, drops
the request, or raises is treated as ``Reject("Approval timed out")``.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from foreman.core.messages import ToolCall
from foreman.core.types import InternalError, RiskLevel, SandboxPolicy

logger = logging.getLogger(__name__)

APPROVAL_TIMED_OUT = "Approval timed out"


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ApprovalResponse:
    pass


@dataclass(frozen=True)
class Approve(ApprovalResponse):
    pass


@dataclass(frozen=True)
class AlwaysApprove(ApprovalResponse):
    pass


@dataclass(frozen=True)
class ApproveModified(ApprovalResponse):
    arguments: Any


@dataclass(frozen=True)
class Reject(ApprovalResponse):
    reason: str = "Rejected by user"


@dataclass(frozen=True)
class Abort(ApprovalResponse):
    pass


# ---------------------------------------------------------------------------
# Pending request
# ---------------------------------------------------------------------------

@dataclass
class PendingApproval:
    """One interactive approval request.  Answered at most once."""
    call_id: str
    tool_name: str
    arguments: Any
    risk_level: RiskLevel
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)
    _future: Optional[asyncio.Future] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()

    @property
    def answered(self) -> bool:
        return self._future.done()

    def respond(self, response: ApprovalResponse) -> bool:
        """Deliver the host's decision.  Returns False if already answered."""
        if self._future.done():
            return False
        self._future.set_result(response)
        return True

    def drop(self) -> None:
        """Abandon the request without a decision."""
        if not self._future.done():
            self._future.set_result(None)

    async def wait(self) -> Optional[ApprovalResponse]:
        return await asyncio.shield(self._future)


ApprovalCallback = Callable[[PendingApproval], Awaitable[Optional[ApprovalResponse]]]


async def _await_host(pending: PendingApproval, callback: ApprovalCallback) -> Optional[ApprovalResponse]:
    response = await callback(pending)
    if response is None:
        response = await pending.wait()
    else:
        pending.respond(response)
    return response


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

class ApprovalGate:
    """Per-orchestrator approval state.

    The always-approved set is read and written under ``lock``, which the
    orchestrator also uses for its doom-loop window.
    """

    def __init__(self, sandbox_policy: SandboxPolicy, auto_approve_safe: bool,
                 callback: Optional[ApprovalCallback] = None,
                 timeout: Optional[float] = None,
                 lock: Optional[asyncio.Lock] = None) -> None:
        self.sandbox_policy = sandbox_policy
        self.auto_approve_safe = auto_approve_safe
        self.callback = callback
        self.timeout = timeout
        self.lock = lock or asyncio.Lock()
        self._always_approved: set[str] = set()

    async def can_auto_approve(self, tool_name: str, risk: RiskLevel) -> bool:
        async with self.lock:
            if tool_name in self._always_approved:
                return True
        if self.auto_approve_safe and risk is RiskLevel.SAFE:
            return True
        return risk.can_auto_approve(self.sandbox_policy)

    async def always_approve(self, tool_name: str) -> None:
        async with self.lock:
            self._always_approved.add(tool_name)

    async def always_approved(self) -> set[str]:
        async with self.lock:
            return set(self._always_approved)

    async def request(self, pending: PendingApproval) -> ApprovalResponse:
        """Hand *pending* to the host and wait for its answer."""
        if self.callback is None:
            logger.warning("No approval host for %s (%s risk), rejecting",
                           pending.tool_name, pending.risk_level.value)
            return Reject("No approval host available")

        try:
            if self.timeout is not None:
                response = await asyncio.wait_for(_await_host(pending, self.callback), self.timeout)
            else:
                response = await _await_host(pending, self.callback)
        except asyncio.TimeoutError:
            logger.info("Approval for %s timed out after %.0fs", pending.tool_name, self.timeout)
            response = None
        except Exception:  # noqa: BLE001
            logger.exception("Approval host failed for %s", pending.tool_name)
            response = None
        finally:
            pending.drop()

        if response is None:
            return Reject(APPROVAL_TIMED_OUT)
        if not isinstance(response, ApprovalResponse):
            raise InternalError(f"approval host returned {type(response).__name__}")
        if isinstance(response, AlwaysApprove):
            await self.always_approve(pending.tool_name)
        logger.info("Approval for %s: %s", pending.tool_name, type(response).__name__)
        return response

    def pending_for(self, call: ToolCall, risk: RiskLevel) -> PendingApproval:
        return PendingApproval(call_id=call.id, tool_name=call.name,
                               arguments=call.arguments, risk_level=risk)

    async def clear(self) -> None:
        async with self.lock:
            self._always_approved.clear()
