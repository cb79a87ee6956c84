"""
Generic tool registry implementing the tool capability.

Handlers are registered together with their OpenAI function schema and a
default risk level.  A handler may be a plain function (run in a worker
thread so it cannot block the event loop) or a coroutine function, and may
return either a string or a :class:`ToolResult`.
"""

import asyncio
import functools
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from foreman.core.messages import ToolCall, ToolResult
from foreman.core.types import InvalidInputError, NotFoundError, RiskLevel

logger = logging.getLogger(__name__)

RiskClassifier = Callable[[ToolCall], RiskLevel]


def tool_schema(name: str, description: str, parameters: dict) -> dict:
    """Wrap a function schema in the OpenAI tool envelope."""
    return {
        "type": "function",
        "function": {
            "name":        name,
            "description": description,
            "parameters":  parameters,
        },
    }


@dataclass
class ToolSpec:
    name: str
    schema: dict
    handler: Callable[..., Any]
    risk: RiskLevel = RiskLevel.MEDIUM
    classifier: Optional[RiskClassifier] = None   # overrides ``risk`` per call
    timeout: Optional[float] = None               # seconds; None = no registry-level limit


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, name: str, description: str, parameters: dict,
                 handler: Callable[..., Any], *,
                 risk: RiskLevel = RiskLevel.MEDIUM,
                 classifier: Optional[RiskClassifier] = None,
                 timeout: Optional[float] = None) -> None:
        """Register *handler* under *name*.

        The handler is called with the call's arguments as keyword
        arguments.  Registering an existing name replaces it.
        """
        if name in self._tools:
            logger.debug("Replacing tool %s", name)
        self._tools[name] = ToolSpec(name, tool_schema(name, description, parameters),
                                     handler, risk, classifier, timeout)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def get_definitions(self, allowed: Optional[list[str]] = None,
                        denied: Optional[list[str]] = None) -> list[dict]:
        return [
            entry.schema for name, entry in self._tools.items()
            if (allowed is None or name in allowed) and name not in (denied or ())
        ]

    def assess_risk(self, call: ToolCall) -> RiskLevel:
        entry = self._tools.get(call.name)
        if entry is None:
            return RiskLevel.HIGH
        if entry.classifier is not None:
            return entry.classifier(call)
        return entry.risk

    async def execute(self, call: ToolCall) -> ToolResult:
        entry = self._tools.get(call.name)
        if entry is None:
            raise NotFoundError(f"Unknown tool: {call.name}")
        if not isinstance(call.arguments, dict):
            raise InvalidInputError(f"Arguments for {call.name} must be a JSON object")

        if inspect.iscoroutinefunction(entry.handler):
            pending = entry.handler(**call.arguments)
        else:
            pending = asyncio.get_running_loop().run_in_executor(
                None, functools.partial(entry.handler, **call.arguments),
            )
        if entry.timeout is not None:
            output = await asyncio.wait_for(pending, entry.timeout)
        else:
            output = await pending

        if isinstance(output, ToolResult):
            return output
        return ToolResult.ok(str(output))
