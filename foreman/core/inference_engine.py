"""Shared tool-call execution pipeline.

The orchestrator keeps its own outer turn loop (model calls, history and
summary handling) but delegates each proposed tool call to
:func:`process_tool_call`.

Pipeline per tool call
----------------------
1. Availability check against the agent's allowed / denied tool lists
2. Risk assessment via the tool capability
3. Approval gate: auto-approval rules, otherwise an interactive request
4. Execution: ``Task`` goes to the delegate, everything else to the
   tool capability under the configured timeout
5. Doom-loop check on ``(name, arguments, result)``
6. Event emission
"""

from __future__ import annotations

import asyncio
import logging
import time as _time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from foreman.core import events as ev
from foreman.core.approval import (
    Abort,
    AlwaysApprove,
    ApprovalGate,
    Approve,
    ApproveModified,
    Reject,
)
from foreman.core.doom_loop import DoomLoopDetector
from foreman.core.interfaces import ToolCapability
from foreman.core.messages import ToolCall, ToolResult
from foreman.core.types import AgentConfig, RiskLevel

logger = logging.getLogger(__name__)

TASK_TOOL_NAME = "Task"
# Delegation itself touches nothing; each subagent tool call is gated on its own.
TASK_TOOL_RISK = RiskLevel.SAFE

DelegateFn = Callable[[ToolCall], Awaitable[ToolResult]]
EmitFn = Callable[[ev.AgentEvent], None]


# ---------------------------------------------------------------------------
# Context & result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ToolCallContext:
    """Per-orchestrator collaborators the pipeline needs."""

    tools: ToolCapability
    gate: ApprovalGate
    detector: DoomLoopDetector
    config: AgentConfig
    emit: EmitFn
    delegate: Optional[DelegateFn] = None   # handles Task calls; None disables delegation


@dataclass
class ToolCallResult:
    call_id: str
    tool_name: str
    arguments: Any
    result: ToolResult
    duration: float
    approved: bool
    sandbox_used: bool = False


@dataclass
class ToolCallOutcome:
    """Result of processing a single tool call."""

    record: ToolCallResult
    aborted: bool = False         # user chose Abort: stop the whole turn
    loop_detected: bool = False   # doom-loop detector tripped on this call


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _assess_risk(ctx: ToolCallContext, call: ToolCall) -> RiskLevel:
    if call.name == TASK_TOOL_NAME and ctx.delegate is not None:
        return TASK_TOOL_RISK
    try:
        return ctx.tools.assess_risk(call)
    except Exception:  # noqa: BLE001
        logger.exception("Risk assessment failed for %s, treating as high risk", call.name)
        return RiskLevel.HIGH


async def _execute(ctx: ToolCallContext, call: ToolCall) -> ToolResult:
    if call.name == TASK_TOOL_NAME and ctx.delegate is not None:
        return await ctx.delegate(call)
    try:
        return await asyncio.wait_for(ctx.tools.execute(call), ctx.config.tool_timeout)
    except asyncio.TimeoutError:
        logger.warning("Tool %s (id=%s) timed out after %gs",
                       call.name, call.id, ctx.config.tool_timeout)
        return ToolResult.error(f"Tool {call.name} timed out after {ctx.config.tool_timeout:g}s")


def _available(ctx: ToolCallContext, name: str) -> bool:
    if name == TASK_TOOL_NAME:
        return ctx.delegate is not None and ctx.config.can_delegate
    return ctx.config.tool_allowed(name)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

async def process_tool_call(call: ToolCall, ctx: ToolCallContext) -> ToolCallOutcome:
    """Process a single tool call through the full pipeline.

    Never raises for tool-level problems: unavailable tools, rejections and
    execution failures all come back as a failed :class:`ToolResult` the
    model can react to.
    """
    started = _time.monotonic()
    arguments = call.arguments
    approved = False
    aborted = False
    sandbox_used = False

    # -- Step 1: Availability ----------------------------------------
    if not _available(ctx, call.name):
        logger.info("Tool %s is not available to this agent", call.name)
        result = ToolResult.error(f"Tool '{call.name}' is not available to this agent")

    else:
        # -- Step 2: Risk ---------------------------------------------
        risk = _assess_risk(ctx, call)

        # -- Step 3: Approval -----------------------------------------
        if await ctx.gate.can_auto_approve(call.name, risk):
            approved = True
            ctx.emit(ev.ToolCallApproved(call.id, call.name, automatic=True))
            response = None
        else:
            pending = ctx.gate.pending_for(call, risk)
            ctx.emit(ev.ToolCallPending(call.id, call.name, call.arguments, risk))
            response = await ctx.gate.request(pending)

            if isinstance(response, (Approve, AlwaysApprove)):
                approved = True
            elif isinstance(response, ApproveModified):
                approved = True
                arguments = response.arguments
            elif isinstance(response, Abort):
                aborted = True
            if approved:
                ctx.emit(ev.ToolCallApproved(call.id, call.name))

        # -- Step 4: Execution ----------------------------------------
        if approved:
            sandbox_used = risk.uses_sandbox(ctx.config.sandbox_policy)
            effective = ToolCall(call.id, call.name, arguments)
            ctx.emit(ev.ToolCallStarted(call.id, call.name, arguments))
            try:
                result = await _execute(ctx, effective)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Tool %s (id=%s) failed: %s", call.name, call.id, exc)
                ctx.emit(ev.Error(f"Tool {call.name} failed: {exc}", recoverable=True))
                result = ToolResult.error(f"Tool execution failed: {exc}")
            ctx.emit(ev.ToolCallCompleted(call.id, call.name, result,
                                          _time.monotonic() - started))
        elif aborted:
            result = ToolResult.error("Tool call was aborted by the user")
            ctx.emit(ev.ToolCallRejected(call.id, call.name, "aborted"))
        else:
            reason = response.reason if isinstance(response, Reject) else "rejected"
            result = ToolResult.error(f"Tool call was rejected: {reason}")
            ctx.emit(ev.ToolCallRejected(call.id, call.name, reason))

    record = ToolCallResult(
        call_id=call.id,
        tool_name=call.name,
        arguments=arguments,
        result=result,
        duration=_time.monotonic() - started,
        approved=approved,
        sandbox_used=sandbox_used,
    )

    # -- Step 5: Doom loop -------------------------------------------
    async with ctx.gate.lock:
        tripped = ctx.detector.record_and_check(call.name, arguments, result.output)
    if tripped:
        ctx.emit(ev.LoopDetected(call.name, ctx.detector.threshold))

    logger.debug("Tool %s -> %s", call.name, result.output[:200])
    return ToolCallOutcome(record=record, aborted=aborted, loop_detected=tripped)
