"""
The ``Task`` tool: lets a model delegate work to a subagent.

:class:`TaskHandler` turns the tool-call arguments into a
:class:`SubagentConfig`, runs it on the subagent executor while pumping the
executor's progress events, and converts the structured result into the
tool output the parent model sees.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

from foreman.core import progress as pg
from foreman.core.interfaces import AgentLookup
from foreman.core.messages import ToolResult
from foreman.core.subagent_types import SubagentConfig, SubagentType, available_types
from foreman.core.tool_registry import tool_schema
from foreman.core.types import AgentConfig, InvalidInputError
from foreman.infra import prompt_loader
from foreman.infra.channel import channel

if TYPE_CHECKING:
    from foreman.core.subagent import SubagentExecutor

logger = logging.getLogger(__name__)

TASK_TOOL_PARAMETERS = {
    "type": "object",
    "properties": {
        "description": {
            "type": "string",
            "description": "Short (3-8 word) label for the task.",
        },
        "prompt": {
            "type": "string",
            "description": (
                "Complete instructions for the subagent. It has no access to "
                "this conversation, so include every detail it needs."
            ),
        },
        "subagent_type": {
            "type": "string",
            "description": "Built-in type (see above) or the name of a custom agent. Default: code.",
        },
        "session_id": {
            "type": "string",
            "description": "Resume this earlier subagent session instead of starting a new one.",
        },
        "context": {
            "type": "string",
            "description": "Additional background passed verbatim to the subagent.",
        },
        "timeout": {
            "type": "integer",
            "description": "Maximum run time in seconds. Omit for no limit.",
        },
    },
    "required": ["description", "prompt"],
}


def task_tool_definition(agents: Optional[AgentLookup] = None) -> dict:
    """The Task tool schema, listing built-in types and visible custom agents."""
    lines = [f"- {t.name}: {t.description}" for t in available_types()]
    if agents is not None:
        lines += [f"- {a.name}: {a.description or 'custom agent'} (custom)" for a in agents.list()]
    types = "\n".join(lines)
    return tool_schema("Task", prompt_loader.load("TASK_TOOL.txt", types=types), TASK_TOOL_PARAMETERS)


def _optional_str(args: dict, key: str) -> Optional[str]:
    value = args.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidInputError(f"'{key}' must be a string")
    return value.strip() or None


@dataclass
class TaskOutcome:
    result: ToolResult
    session_id: str


class TaskHandler:
    """Runs Task calls for one orchestrator."""

    def __init__(self, executor: "SubagentExecutor", parent_config: AgentConfig) -> None:
        self.executor = executor
        self.parent_config = parent_config

    def parse(self, arguments: Any) -> SubagentConfig:
        if not isinstance(arguments, dict):
            raise InvalidInputError("Task arguments must be a JSON object")
        description = _optional_str(arguments, "description")
        prompt = _optional_str(arguments, "prompt")
        if not description:
            raise InvalidInputError("'description' is required")
        if not prompt:
            raise InvalidInputError("'prompt' is required")

        timeout = arguments.get("timeout")
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                raise InvalidInputError("'timeout' must be a positive number of seconds")
            timeout = float(timeout)

        return SubagentConfig(
            agent_type=SubagentType.parse(_optional_str(arguments, "subagent_type") or "code"),
            description=description,
            prompt=prompt,
            working_dir=self.parent_config.working_directory,
            timeout=timeout,
            continue_session_id=_optional_str(arguments, "session_id"),
            context=_optional_str(arguments, "context"),
            delegation_depth=self.parent_config.delegation_depth + 1,
        )

    @staticmethod
    def forwardable(event: pg.ProgressEvent) -> Optional[str]:
        """The message to surface in the parent for *event*, if any."""
        if isinstance(event, (pg.ToolCallStarted, pg.Failed, pg.Warning)):
            return event.to_message()
        return None

    async def execute(self, arguments: Any,
                      on_progress: Optional[Callable[[pg.ProgressEvent], None]] = None) -> TaskOutcome:
        """Parse *arguments*, run the subagent and format its result.

        Raises :class:`InvalidInputError` for bad arguments and propagates
        executor errors (rate limit, timeout, unknown session or agent).
        """
        config = self.parse(arguments)
        sender, receiver = channel(f"task:{config.description[:40]}")

        async def pump() -> None:
            async for event in receiver:
                if on_progress is None:
                    continue
                try:
                    on_progress(event)
                except Exception:  # noqa: BLE001
                    logger.exception("Progress callback failed")

        pump_task = asyncio.create_task(pump())
        try:
            result = await self.executor.execute(config, sender)
        finally:
            sender.close()
            await pump_task

        files = [fc.path for fc in result.files_modified] or None
        tool_result = ToolResult(result.to_tool_output(), success=result.success, files_touched=files)
        return TaskOutcome(tool_result, result.session_id)
