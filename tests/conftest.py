"""Shared fakes: a scripted model client, a small tool registry and helpers."""

import asyncio
import itertools
from typing import Callable, Optional, Union

import pytest

from foreman.core.interfaces import (
    CompletionRequest,
    CompletionResponse,
    Delta,
    Done,
    StreamToolCall,
)
from foreman.core.messages import ToolCall
from foreman.core.tool_registry import ToolRegistry
from foreman.core.types import AgentConfig, RiskLevel, SandboxPolicy, TokenUsage
from foreman.infra.channel import channel

_ids = itertools.count(1)

Step = Union[CompletionResponse, Callable[[CompletionRequest], CompletionResponse], Exception]


def reply(text: str = "", *calls: ToolCall, tokens: int = 10) -> CompletionResponse:
    return CompletionResponse(text=text, tool_calls=list(calls),
                              usage=TokenUsage(input_tokens=tokens, output_tokens=tokens))


def call(name: str, **arguments) -> ToolCall:
    return ToolCall(id=f"call_{next(_ids)}", name=name, arguments=arguments)


class ScriptedClient:
    """Model client that replays a fixed script.

    Each step is a response, a function of the request, or an exception to
    raise.  When the script runs out, ``fallback`` is returned.
    """

    def __init__(self, script: Optional[list[Step]] = None,
                 fallback: Optional[CompletionResponse] = None) -> None:
        self.script = list(script or [])
        self.fallback = fallback or reply("done")
        self.requests: list[CompletionRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def _next(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        await asyncio.sleep(0)
        step = self.script.pop(0) if self.script else self.fallback
        if isinstance(step, Exception):
            raise step
        if callable(step):
            step = step(request)
            if asyncio.iscoroutine(step):
                step = await step
        return step

    async def complete_sync(self, request: CompletionRequest) -> CompletionResponse:
        return await self._next(request)

    async def complete(self, request: CompletionRequest):
        response = await self._next(request)
        if response.text:
            half = len(response.text) // 2
            for piece in (response.text[:half], response.text[half:]):
                if piece:
                    yield Delta(piece)
        for tc in response.tool_calls:
            yield StreamToolCall(tc)
        yield Done(usage=response.usage, tool_calls=tuple(response.tool_calls))


@pytest.fixture
def tools() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        "Read", "Read a file.",
        {"type": "object", "properties": {"path": {"type": "string"}}},
        lambda path="": f"contents of {path}",
        risk=RiskLevel.SAFE,
    )

    async def edit(path: str = "", text: str = "") -> str:
        return f"Edited {path}"

    registry.register(
        "Edit", "Edit a file.",
        {"type": "object", "properties": {"path": {"type": "string"}, "text": {"type": "string"}}},
        edit,
        risk=RiskLevel.MEDIUM,
    )

    def execute(command: str = "") -> str:
        if command == "fail":
            raise RuntimeError("command exited with status 1")
        return f"ran {command}"

    registry.register(
        "Execute", "Run a shell command.",
        {"type": "object", "properties": {"command": {"type": "string"}}},
        execute,
        risk=RiskLevel.HIGH,
    )
    return registry


@pytest.fixture
def agent_config(tmp_path) -> AgentConfig:
    return AgentConfig(
        model="test-model",
        max_tool_iterations=10,
        sandbox_policy=SandboxPolicy.PROMPT,
        streaming=False,
        system_prompt="You are a test agent.",
        working_directory=tmp_path,
    )


@pytest.fixture
def event_channel():
    return channel("test")
