"""
Subagent Executor

Runs delegated tasks in isolated child orchestrators.  Each child gets its
own message history, system prompt and event channel; only selected events
are forwarded to the launcher's progress channel.

Lifecycle
---------
- **Admission**: one lock guards the session registry and the running
  count.  A start beyond ``max_concurrent`` fails with
  :class:`RateLimitError` instead of queueing.
- **Continuation**: an existing session can be resumed if it is paused,
  waiting for approval or completed.  Its saved conversation is replayed
  into the new child so the subagent keeps its context.
- **Timeout**: an optional deadline per run.  Expiry marks the session
  ``timed_out`` and raises :class:`SubagentTimeoutError`; there is no
  automatic retry.
- **Mandatory summary**: a completed run whose reply has no summary
  section gets exactly one more, bounded turn asking for it.  Failure of
  that extra turn is logged and ignored.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, replace
from typing import Any, Optional

from foreman.core import events as ev
from foreman.core.approval import ApprovalCallback
from foreman.core.interfaces import AgentLookup, ModelClient, ToolCapability
from foreman.core.orchestrator import (
    Orchestrator,
    ParentContext,
    TurnContext,
    TurnResult,
    make_child_orchestrator,
)
from foreman.core.progress import SubagentProgress
from foreman.core.subagent_result import (
    FILE_WRITING_TOOLS,
    FileChange,
    SubagentResult,
    TokenUsageBreakdown,
    extract_file_path,
    extract_next_steps,
    has_summary_output,
    split_summary,
)
from foreman.core.subagent_types import (
    SubagentConfig,
    SubagentSession,
    SubagentStatus,
    SubagentTypeInfo,
    available_types,
    new_session_id,
)
from foreman.core.types import (
    AgentConfig,
    ForemanError,
    InvalidInputError,
    NotFoundError,
    RateLimitError,
    SandboxPolicy,
    SubagentTimeoutError,
    TurnStatus,
)
from foreman.infra import prompt_loader
from foreman.infra.agent_registry import CustomAgent
from foreman.infra.channel import Sender, channel

logger = logging.getLogger(__name__)


@dataclass
class ExecutorSettings:
    max_concurrent: int = 3
    default_timeout: Optional[float] = None     # seconds; None = no limit
    summary_timeout: float = 60.0
    sandbox_policy: SandboxPolicy = SandboxPolicy.PROMPT
    tool_timeout: float = 120.0
    max_output_tokens: int = 16384
    max_delegation_depth: int = 2


# ---------------------------------------------------------------------------
# Event forwarding
# ---------------------------------------------------------------------------

class _EventForwarder:
    """Scoped pump from a child orchestrator's events to progress updates.

    Leaving the ``async with`` block closes the child's sender first and
    only then awaits the pump, which finishes once the buffered events are
    drained.
    """

    def __init__(self, session: SubagentSession, progress: SubagentProgress) -> None:
        self.session = session
        self.progress = progress
        self.sender, self._receiver = channel(f"subagent:{session.id}")
        self._task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "_EventForwarder":
        self._task = asyncio.create_task(self._pump())
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.sender.close()
        await self._task

    async def _pump(self) -> None:
        async for event in self._receiver:
            try:
                self._handle(event)
            except Exception:  # noqa: BLE001
                logger.exception("Subagent %s: failed to forward %s",
                                 self.session.id, type(event).__name__)

    def _handle(self, event: ev.AgentEvent) -> None:
        progress = self.progress
        if isinstance(event, ev.Thinking):
            progress.start_thinking()
        elif isinstance(event, ev.TextDelta):
            progress.text_output(event.text)
        elif isinstance(event, ev.ToolCallStarted):
            progress.tool_call_started(event.tool_name, event.call_id, event.arguments)
        elif isinstance(event, ev.ToolCallPending):
            if self.session.status is SubagentStatus.RUNNING:
                self.session.set_status(SubagentStatus.WAITING_FOR_APPROVAL)
            progress.tool_call_pending(event.tool_name, event.call_id, event.risk_level.value)
        elif isinstance(event, (ev.ToolCallApproved, ev.ToolCallRejected)):
            if self.session.status is SubagentStatus.WAITING_FOR_APPROVAL:
                self.session.set_status(SubagentStatus.RUNNING)
        elif isinstance(event, ev.ToolCallCompleted):
            result = event.result
            progress.tool_call_completed(event.tool_name, event.call_id, result.success,
                                         result.output, event.duration)
            if result.success:
                for path in self._touched(event):
                    progress.file_modified(path, event.tool_name)
        elif isinstance(event, ev.Error):
            if event.recoverable:
                progress.warning(event.message)
            else:
                progress.fail(event.message)

    @staticmethod
    def _touched(event: ev.ToolCallCompleted) -> list[str]:
        if event.result.files_touched:
            return list(event.result.files_touched)
        if event.tool_name in FILE_WRITING_TOOLS:
            path = extract_file_path(event.result.output)
            if path:
                return [path]
        return []


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class SubagentExecutor:
    def __init__(self, client: ModelClient, tools: ToolCapability, default_model: str, *,
                 agents: Optional[AgentLookup] = None,
                 settings: Optional[ExecutorSettings] = None,
                 approval_callback: Optional[ApprovalCallback] = None) -> None:
        self.client = client
        self.tools = tools
        self.default_model = default_model
        self.agents = agents
        self.settings = settings or ExecutorSettings()
        self.approval_callback = approval_callback
        self._sessions: dict[str, SubagentSession] = {}
        self._turns: dict[str, TurnContext] = {}   # session id -> running turn
        self._active = 0
        self._lock = asyncio.Lock()

    @property
    def active_count(self) -> int:
        return self._active

    @staticmethod
    def available_types() -> list[SubagentTypeInfo]:
        return available_types()

    # -- Registry ------------------------------------------------------------

    async def get_session(self, session_id: str) -> Optional[SubagentSession]:
        async with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session is not None else None

    async def list_sessions(self, parent_session_id: Optional[str] = None) -> list[SubagentSession]:
        async with self._lock:
            return [
                copy.deepcopy(s) for s in self._sessions.values()
                if parent_session_id is None or s.parent_session_id == parent_session_id
            ]

    async def cancel_session(self, session_id: str) -> bool:
        """Cancel a session.  A running turn stops at its next loop boundary."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status.is_terminal:
                return False
            session.set_status(SubagentStatus.CANCELLED)
            turn = self._turns.get(session_id)
        if turn is not None:
            turn.cancel("cancelled")
        logger.info("Subagent %s cancelled", session_id)
        return True

    # -- Execution -----------------------------------------------------------

    async def execute(self, config: SubagentConfig, progress: Optional[Sender] = None) -> SubagentResult:
        """Run *config* to completion and return its structured result.

        Raises :class:`RateLimitError` when the concurrency cap is reached,
        :class:`NotFoundError` / :class:`InvalidInputError` for bad
        continuation requests or unknown custom agents, and
        :class:`SubagentTimeoutError` when the run exceeds its deadline.
        """
        session, config, custom = await self._admit(config)
        try:
            return await self._run(session, config, custom, progress)
        finally:
            async with self._lock:
                self._active -= 1

    async def _admit(self, config: SubagentConfig
                     ) -> tuple[SubagentSession, SubagentConfig, Optional[CustomAgent]]:
        """Claim a slot and the session for *config*.

        A continuation keeps the session's own type and working directory,
        whatever the new request says; the returned config reflects that.
        """
        async with self._lock:
            if self._active >= self.settings.max_concurrent:
                raise RateLimitError(
                    f"Too many concurrent subagents ({self._active}/{self.settings.max_concurrent})"
                )

            if config.continue_session_id:
                session = self._sessions.get(config.continue_session_id)
                if session is None:
                    raise NotFoundError(f"Subagent session not found: {config.continue_session_id}")
                if session.id in self._turns:
                    raise InvalidInputError(f"Subagent session {session.id} is already running")
                if not (session.status.can_resume or session.status is SubagentStatus.COMPLETED):
                    raise InvalidInputError(
                        f"Subagent session {session.id} cannot be resumed (status: {session.status.value})"
                    )
                if config.agent_type != session.agent_type:
                    logger.debug("Subagent %s keeps type %s (request asked for %s)",
                                 session.id, session.agent_type, config.agent_type)
                config = replace(config, agent_type=session.agent_type,
                                 working_dir=session.working_dir)
                custom = self._resolve_custom(config)
                logger.info("Continuing subagent %s (%s)", session.id, session.agent_type)
            else:
                session_id = config.session_id or new_session_id()
                if session_id in self._sessions:
                    raise InvalidInputError(f"Subagent session {session_id} already exists")
                custom = self._resolve_custom(config)
                session = SubagentSession(
                    id=session_id,
                    agent_type=config.agent_type,
                    description=config.description,
                    working_dir=config.working_dir,
                    parent_session_id=config.parent_session_id,
                )
                self._sessions[session_id] = session
                logger.info("Spawning %s subagent %s: %s",
                            config.agent_type, session_id, config.description[:80])

            session.set_status(SubagentStatus.RUNNING)
            self._active += 1
        return session, config, custom

    def _resolve_custom(self, config: SubagentConfig) -> Optional[CustomAgent]:
        if not config.agent_type.is_custom:
            return None
        name = config.agent_type.custom_name
        custom = self.agents.get(name) if self.agents is not None else None
        if custom is None:
            names = self.agents.list_names() if self.agents is not None else []
            raise NotFoundError(
                f"Custom agent '{name}' not found. Available: {', '.join(names) or 'none'}"
            )
        return custom

    def _agent_config(self, config: SubagentConfig, custom: Optional[CustomAgent]) -> AgentConfig:
        agent_type = config.agent_type
        model = config.model or (custom.effective_model(self.default_model) if custom else self.default_model)
        if config.max_iterations is None and custom is not None and custom.max_turns:
            max_iterations = custom.max_turns
        else:
            max_iterations = config.effective_max_iterations
        temperature = config.temperature
        if temperature is None and custom is not None:
            temperature = custom.temperature

        if custom is not None:
            # Agent body first, then the generic custom-subagent prompt and protocol.
            system_prompt = custom.system_prompt + "\n\n" + agent_type.base_system_prompt()
            allowed = custom.tools
        else:
            system_prompt = agent_type.base_system_prompt()
            allowed = agent_type.allowed_tools()

        return AgentConfig(
            model=model,
            max_tool_iterations=max_iterations,
            max_output_tokens=self.settings.max_output_tokens,
            temperature=temperature,
            tool_timeout=self.settings.tool_timeout,
            sandbox_policy=self.settings.sandbox_policy,
            auto_approve_safe=True,
            streaming=True,
            system_prompt=system_prompt,
            allowed_tools=allowed,
            denied_tools=agent_type.denied_tools(),
            delegation_depth=config.delegation_depth,
            max_delegation_depth=self.settings.max_delegation_depth,
            working_directory=config.working_dir,
        )

    def _user_message(self, session: SubagentSession, config: SubagentConfig) -> str:
        if config.continue_session_id:
            config = copy.copy(config)
            config.description = f"Continue: {config.description}"
        return config.build_user_message()

    async def _run(self, session: SubagentSession, config: SubagentConfig,
                   custom: Optional[CustomAgent], progress_sender: Optional[Sender]) -> SubagentResult:
        progress = SubagentProgress(session.id, config.agent_type, config.description, progress_sender)
        progress.set_status(SubagentStatus.RUNNING)
        agent_config = self._agent_config(config, custom)
        timeout = config.timeout if config.timeout is not None else self.settings.default_timeout

        turn_result: Optional[TurnResult] = None
        timed_out = False
        error: Optional[str] = None

        async with _EventForwarder(session, progress) as forwarder:
            parent = ParentContext(self.client, self.tools, self.approval_callback, self)
            child = make_child_orchestrator(parent, agent_config, forwarder.sender)
            if session.messages:
                child.restore(session.messages)
            turn = child.new_turn(self._user_message(session, config))
            async with self._lock:
                self._turns[session.id] = turn
                if session.status is SubagentStatus.CANCELLED:
                    # cancel_session ran before the turn was registered
                    turn.cancel("cancelled")
            try:
                if timeout is not None:
                    turn_result = await asyncio.wait_for(child.process_turn(turn), timeout)
                else:
                    turn_result = await child.process_turn(turn)
                if turn_result.success and not has_summary_output(turn_result.response):
                    turn_result = await self._request_summary(child, turn_result, session.id)
            except asyncio.TimeoutError:
                timed_out = True
            except ForemanError as exc:
                logger.warning("Subagent %s failed: %s", session.id, exc)
                error = str(exc)
            except asyncio.CancelledError:
                session.set_status(SubagentStatus.CANCELLED)
                progress.cancel("launcher cancelled")
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Subagent %s crashed", session.id)
                error = f"Internal error: {exc}"
            finally:
                async with self._lock:
                    self._turns.pop(session.id, None)
                session.messages = child.messages()

        tokens = turn_result.token_usage if turn_result is not None else turn.tokens
        tool_calls = turn_result.tool_calls if turn_result is not None else turn.tool_results

        async with self._lock:
            for path in progress.files_modified:
                session.add_modified_file(path)
            session.record_turn(len(tool_calls), tokens)
            if session.status is SubagentStatus.CANCELLED:
                pass
            elif timed_out:
                session.set_status(SubagentStatus.TIMED_OUT)
            elif error is not None:
                session.set_status(SubagentStatus.FAILED)
            elif turn_result.status is TurnStatus.COMPLETED:
                session.set_status(SubagentStatus.COMPLETED)
            else:
                # Soft stop (doom loop or abort): the work can be picked up again.
                session.set_status(SubagentStatus.PAUSED)
            status = session.status
            snapshot = copy.deepcopy(session)

        if timed_out:
            message = f"Subagent timed out after {timeout:g}s"
            logger.warning("Subagent %s timed out after %gs (%d tool call(s))",
                           session.id, timeout, len(tool_calls))
            progress.fail(message)
            raise SubagentTimeoutError(f"{message} (session {session.id})")

        success = status is SubagentStatus.COMPLETED
        if status is SubagentStatus.CANCELLED:
            progress.cancel("cancelled by request")
            error = "Subagent was cancelled"
        elif success:
            progress.complete()
        else:
            error = error or (turn_result.error if turn_result else None) or status.value
            progress.fail(error)

        breakdown = TokenUsageBreakdown()
        breakdown.add_turn(tokens)
        output, summary = split_summary(turn_result.response if turn_result else "")
        continuable = success or (
            status is SubagentStatus.PAUSED and turn.tool_iterations < agent_config.max_tool_iterations
        )
        logger.info("Subagent %s finished: %s, %d tool call(s), %d tokens",
                    session.id, status.value, len(tool_calls), tokens.total_tokens)
        return SubagentResult(
            session=snapshot,
            success=success,
            output=output,
            error=None if success else error,
            summary=summary,
            token_usage=breakdown,
            files_modified=[FileChange(p) for p in snapshot.files_modified],
            next_steps=extract_next_steps(summary),
            continuable=continuable,
        )

    async def _request_summary(self, child: Orchestrator, first: TurnResult,
                               session_id: str) -> TurnResult:
        """Run one extra turn asking for the summary and splice it on.

        If that turn fails or times out the child's history is rolled back
        to the end of *first*, so no half-finished tool batch is saved.
        """
        logger.info("Subagent %s finished without a summary, requesting one", session_id)
        saved = child.messages()
        ctx = child.new_turn(prompt_loader.load("SUBAGENT_SUMMARY_REQUEST.txt"))
        try:
            extra = await asyncio.wait_for(child.process_turn(ctx), self.settings.summary_timeout)
        except asyncio.TimeoutError:
            logger.warning("Summary request for subagent %s timed out after %gs",
                           session_id, self.settings.summary_timeout)
            child.restore(saved)
            return first
        except ForemanError as exc:
            logger.warning("Summary request for subagent %s failed: %s", session_id, exc)
            child.restore(saved)
            return first

        response = first.response
        if extra.success and extra.response.strip():
            response = f"{first.response}\n\n{extra.response}" if first.response else extra.response
        return TurnResult(
            turn_id=first.turn_id,
            response=response,
            tool_calls=first.tool_calls + extra.tool_calls,
            token_usage=first.token_usage + extra.token_usage,
            duration=first.duration + extra.duration,
            status=first.status,
        )
