"""
Orchestrator: drives one conversation's turn loop.

Each turn runs::

    user input -> call model -> interpret
               -> no tool calls: stop (after at most one summary nudge)
               -> tool calls: risk -> approve -> execute -> append results
               -> repeat

Cancellation is cooperative.  ``TurnContext.cancel_token`` is checked before
every model call, every tool batch and every call inside a batch; work
already in flight is allowed to finish.  Doom loops and ``Abort`` use the
same token, so they end the turn softly with whatever was accumulated.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from foreman.core import events as ev
from foreman.core.approval import ApprovalCallback, ApprovalGate
from foreman.core.doom_loop import DoomLoopDetector
from foreman.core.inference_engine import (
    TASK_TOOL_NAME,
    ToolCallContext,
    ToolCallResult,
    process_tool_call,
)
from foreman.core.interfaces import (
    CompletionRequest,
    CompletionResponse,
    Delta,
    Done,
    ModelClient,
    Reasoning,
    StreamError,
    StreamToolCall,
    ToolCapability,
)
from foreman.core.messages import Message, MessageHistory, ToolCall, ToolResult
from foreman.core.task_tool import TaskHandler, task_tool_definition
from foreman.core.types import (
    AgentConfig,
    ForemanError,
    ProviderError,
    TokenUsage,
    TurnStatus,
)
from foreman.infra import prompt_loader
from foreman.infra.channel import Sender

if TYPE_CHECKING:
    from foreman.core.progress import ProgressEvent
    from foreman.core.subagent import SubagentExecutor

logger = logging.getLogger(__name__)

SKIPPED_RESULT = "Tool call skipped: the turn was interrupted"


# ---------------------------------------------------------------------------
# Turn state
# ---------------------------------------------------------------------------

@dataclass
class TurnContext:
    turn_id: int
    user_input: str
    submission_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    cwd: Path = field(default_factory=Path.cwd)
    start_time: float = field(default_factory=time.monotonic)
    cancel_token: asyncio.Event = field(default_factory=asyncio.Event)
    tool_results: list[ToolCallResult] = field(default_factory=list)
    tokens: TokenUsage = field(default_factory=TokenUsage)
    tool_iterations: int = 0          # tool batches executed
    summary_requested: bool = False
    stop_reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self.cancel_token.is_set():
            self.stop_reason = reason
            self.cancel_token.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_set()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time


@dataclass
class TurnResult:
    turn_id: int
    response: str
    tool_calls: list[ToolCallResult]
    token_usage: TokenUsage
    duration: float
    status: TurnStatus
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is TurnStatus.COMPLETED

    @classmethod
    def failed(cls, ctx: TurnContext, error: str) -> "TurnResult":
        return cls(ctx.turn_id, "", list(ctx.tool_results), ctx.tokens,
                   ctx.elapsed, TurnStatus.FAILED, error=error)


# ---------------------------------------------------------------------------
# Child factory
# ---------------------------------------------------------------------------

@dataclass
class ParentContext:
    """What a child orchestrator receives from whoever spawns it."""
    client: ModelClient
    tools: ToolCapability
    approval_callback: Optional[ApprovalCallback] = None
    subagents: Optional["SubagentExecutor"] = None


def make_child_orchestrator(parent: ParentContext, config: AgentConfig,
                            events: Sender) -> "Orchestrator":
    return Orchestrator(parent.client, parent.tools, config, events,
                        approval_callback=parent.approval_callback,
                        subagents=parent.subagents)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    """Owns one message history and runs turns against it."""

    def __init__(self, client: ModelClient, tools: ToolCapability, config: AgentConfig,
                 events: Optional[Sender] = None, *,
                 approval_callback: Optional[ApprovalCallback] = None,
                 subagents: Optional["SubagentExecutor"] = None) -> None:
        self.client = client
        self.tools = tools
        self.config = config
        self.history = MessageHistory()
        self.detector = DoomLoopDetector()
        # One lock for the always-approved set and the doom-loop window.
        self._state_lock = asyncio.Lock()
        self.gate = ApprovalGate(config.sandbox_policy, config.auto_approve_safe,
                                 callback=approval_callback,
                                 timeout=config.approval_timeout,
                                 lock=self._state_lock)
        self.subagents = subagents
        self._task_handler = TaskHandler(subagents, config) if subagents is not None else None
        self._events = events
        self._turn_counter = 0
        self._initialized = False
        self._tool_ctx = ToolCallContext(
            tools=tools,
            gate=self.gate,
            detector=self.detector,
            config=config,
            emit=self.emit,
            delegate=self._delegate if self._task_handler is not None else None,
        )

    # -- Setup ---------------------------------------------------------------

    def set_approval_callback(self, callback: Optional[ApprovalCallback]) -> None:
        self.gate.callback = callback

    def initialize(self) -> None:
        """Seed the history with the system prompt.  Idempotent."""
        if self._initialized:
            return
        system_prompt = self.config.system_prompt or prompt_loader.load("SYSTEM_PROMPT.txt")
        self.history.add(Message.system(system_prompt))
        self._initialized = True

    def restore(self, messages: list[Message]) -> None:
        """Replace the history with a previously saved conversation."""
        self.history.clear()
        self.history.extend(messages)
        self._initialized = bool(messages)

    def emit(self, event: ev.AgentEvent) -> None:
        if self._events is not None:
            self._events.send(event)

    def close(self) -> None:
        """Close the event sender; a forwarder on the other end then finishes."""
        if self._events is not None:
            self._events.close()

    def new_turn(self, user_input: str, **kwargs) -> TurnContext:
        self._turn_counter += 1
        return TurnContext(turn_id=self._turn_counter, user_input=user_input,
                           cwd=self.config.working_directory, **kwargs)

    # -- Tool definitions ------------------------------------------------------

    def tool_definitions(self) -> list[dict]:
        defs = [d for d in self.tools.get_definitions()
                if self.config.tool_allowed(d["function"]["name"])]
        if self._task_handler is not None and self.config.can_delegate:
            defs.append(task_tool_definition(self._task_handler.executor.agents))
        return defs

    # -- Turn loop -------------------------------------------------------------

    async def run_turn(self, user_input: str) -> TurnResult:
        """Run one turn; model failures come back as a FAILED result."""
        ctx = self.new_turn(user_input)
        try:
            return await self.process_turn(ctx)
        except ForemanError as exc:
            logger.error("Turn %d failed: %s", ctx.turn_id, exc)
            self.emit(ev.Error(str(exc), recoverable=False))
            result = TurnResult.failed(ctx, str(exc))
            self.emit(ev.TurnCompleted(ctx.turn_id, "", result.status, ctx.tokens))
            return result

    async def process_turn(self, ctx: TurnContext) -> TurnResult:
        """Drive *ctx* to completion.

        Appends ``ctx.user_input`` to the history, then loops until the model
        stops calling tools, the iteration budget is spent or the turn is
        cancelled.  Raises :class:`ProviderError` if the model call fails.
        """
        self.initialize()
        self.history.add(Message.user(ctx.user_input))
        self.emit(ev.TurnStarted(ctx.turn_id, ctx.user_input))
        logger.info("Turn %d started (%d chars of input)", ctx.turn_id, len(ctx.user_input))

        last_text = ""
        segments: list[str] = []

        while True:
            if ctx.cancelled:
                return self._interrupted(ctx, last_text, segments)

            if ctx.tool_iterations >= self.config.max_tool_iterations:
                logger.warning("Turn %d hit max_tool_iterations (%d)",
                               ctx.turn_id, self.config.max_tool_iterations)
                break

            self.emit(ev.Thinking())
            response = await self._call_model()
            ctx.tokens.add(response.usage)
            self.emit(ev.TokenUsageUpdate(ctx.tokens))

            text = response.text
            if text.strip():
                last_text = text
            if text:
                segments.append(text)

            if not response.tool_calls:
                if text:
                    self.history.add(Message.assistant(text))
                if not text.strip() and ctx.tool_iterations > 0 and not ctx.summary_requested:
                    logger.debug("Turn %d: empty reply after tools, requesting summary", ctx.turn_id)
                    self.history.add(Message.user(prompt_loader.load("TURN_SUMMARY.txt")))
                    ctx.summary_requested = True
                    continue
                break

            self.history.add(Message.assistant(text, response.tool_calls))
            ctx.tool_iterations += 1
            await self._process_tool_calls(ctx, response.tool_calls)

        result = TurnResult(ctx.turn_id, self._final_text(last_text, segments),
                            list(ctx.tool_results), ctx.tokens, ctx.elapsed,
                            TurnStatus.COMPLETED)
        self.emit(ev.TurnCompleted(ctx.turn_id, result.response, result.status, ctx.tokens))
        logger.info("Turn %d completed: %d tool call(s), %d tokens, %.1fs",
                    ctx.turn_id, len(result.tool_calls), ctx.tokens.total_tokens, result.duration)
        return result

    @staticmethod
    def _final_text(last_text: str, segments: list[str]) -> str:
        return last_text if last_text else "".join(segments)

    def _interrupted(self, ctx: TurnContext, last_text: str, segments: list[str]) -> TurnResult:
        reason = ctx.stop_reason or "cancelled"
        self.emit(ev.TurnInterrupted(ctx.turn_id, reason))
        logger.info("Turn %d interrupted (%s) after %d tool call(s)",
                    ctx.turn_id, reason, len(ctx.tool_results))
        return TurnResult(ctx.turn_id, self._final_text(last_text, segments),
                          list(ctx.tool_results), ctx.tokens, ctx.elapsed,
                          TurnStatus.INTERRUPTED, error=reason)

    async def _process_tool_calls(self, ctx: TurnContext, calls: list[ToolCall]) -> None:
        for idx, call in enumerate(calls):
            if ctx.cancelled:
                # Every call in the assistant message still needs an answer.
                for skipped in calls[idx:]:
                    self.history.add(Message.tool_result(skipped.id, ToolResult.error(SKIPPED_RESULT)))
                return

            outcome = await process_tool_call(call, self._tool_ctx)
            ctx.tool_results.append(outcome.record)
            self.history.add(Message.tool_result(call.id, outcome.record.result))

            if outcome.aborted:
                logger.info("Turn %d aborted by user at %s", ctx.turn_id, call.name)
                ctx.cancel("aborted")
            elif outcome.loop_detected:
                logger.warning("Turn %d stopped: doom loop on %s", ctx.turn_id, call.name)
                ctx.cancel("doom loop detected")

    # -- Model calls -----------------------------------------------------------

    def _request(self) -> CompletionRequest:
        return CompletionRequest(
            model=self.config.model,
            messages=self.history.messages(),
            tools=self.tool_definitions(),
            max_tokens=self.config.max_output_tokens,
            temperature=self.config.temperature,
            stream=self.config.streaming,
        )

    async def _call_model(self) -> CompletionResponse:
        request = self._request()
        try:
            if self.config.streaming:
                return await self._collect_stream(request)
            response = await self.client.complete_sync(request)
        except ForemanError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ProviderError(str(exc)) from exc
        if response.text:
            self.emit(ev.TextDelta(response.text))
        return response

    async def _collect_stream(self, request: CompletionRequest) -> CompletionResponse:
        text: list[str] = []
        reasoning: list[str] = []
        calls: list[ToolCall] = []
        seen: set[str] = set()
        usage = TokenUsage()

        def add_call(call: ToolCall) -> None:
            if call.id in seen:
                return
            seen.add(call.id)
            calls.append(call)

        stream = self.client.complete(request)
        try:
            async for event in stream:
                if isinstance(event, Delta):
                    text.append(event.text)
                    self.emit(ev.TextDelta(event.text))
                elif isinstance(event, Reasoning):
                    reasoning.append(event.text)
                    self.emit(ev.ReasoningDelta(event.text))
                elif isinstance(event, StreamToolCall):
                    add_call(event.call)
                elif isinstance(event, Done):
                    usage = event.usage
                    for call in event.tool_calls:
                        add_call(call)
                    break
                elif isinstance(event, StreamError):
                    raise ProviderError(event.message)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        return CompletionResponse(text="".join(text), tool_calls=calls,
                                  usage=usage, reasoning="".join(reasoning))

    # -- Delegation ------------------------------------------------------------

    async def _delegate(self, call: ToolCall) -> ToolResult:
        args = call.arguments if isinstance(call.arguments, dict) else {}
        self.emit(ev.TaskSpawned(call.id, str(args.get("description", "")),
                                 str(args.get("subagent_type", "code"))))

        def on_progress(event: "ProgressEvent") -> None:
            message = self._task_handler.forwardable(event)
            if message is not None:
                self.emit(ev.TaskProgress(call.id, f"[subagent] {message}"))

        try:
            outcome = await self._task_handler.execute(call.arguments, on_progress)
        except ForemanError as exc:
            logger.warning("Subagent for call %s failed: %s", call.id, exc)
            self.emit(ev.Error(f"Subagent failed: {exc}", recoverable=True))
            self.emit(ev.TaskCompleted(call.id, False))
            return ToolResult.error(f"Subagent failed: {exc}")

        self.emit(ev.TaskCompleted(call.id, outcome.result.success, outcome.session_id))
        return outcome.result

    # -- Maintenance -----------------------------------------------------------

    async def clear(self) -> None:
        """Forget the conversation, the always-approved set and the loop window."""
        self.history.clear()
        await self.gate.clear()
        async with self._state_lock:
            self.detector.clear()
        self._initialized = False

    def compact(self, keep_last: int = 20) -> int:
        return self.history.compact(keep_last)

    def messages(self) -> list[Message]:
        return self.history.messages()
