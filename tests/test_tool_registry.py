import asyncio

import pytest

from foreman.core.messages import ToolCall, ToolResult
from foreman.core.tool_registry import ToolRegistry
from foreman.core.types import InvalidInputError, NotFoundError, RiskLevel


async def test_sync_and_async_handlers(tools):
    read = await tools.execute(ToolCall("c1", "Read", {"path": "a.py"}))
    edit = await tools.execute(ToolCall("c2", "Edit", {"path": "a.py"}))
    assert read == ToolResult.ok("contents of a.py")
    assert edit.output == "Edited a.py"


async def test_unknown_tool_and_bad_arguments(tools):
    with pytest.raises(NotFoundError):
        await tools.execute(ToolCall("c1", "Teleport", {}))
    with pytest.raises(InvalidInputError):
        await tools.execute(ToolCall("c1", "Read", ["a.py"]))


async def test_handler_may_return_tool_result():
    registry = ToolRegistry()
    registry.register("Create", "Create a file.", {"type": "object"},
                      lambda path: ToolResult.ok(f"Created: {path}", files_touched=[path]))
    result = await registry.execute(ToolCall("c1", "Create", {"path": "new.py"}))
    assert result.files_touched == ["new.py"]


async def test_registry_timeout():
    async def slow():
        await asyncio.sleep(5)

    registry = ToolRegistry()
    registry.register("Slow", "Sleeps.", {"type": "object"}, slow, timeout=0.05)
    with pytest.raises(asyncio.TimeoutError):
        await registry.execute(ToolCall("c1", "Slow", {}))


def test_risk_assessment(tools):
    tools.register("Shell", "Run.", {"type": "object"}, lambda command="": command,
                   classifier=lambda call: RiskLevel.SAFE if call.arguments.get("command") == "ls"
                   else RiskLevel.HIGH)
    assert tools.assess_risk(ToolCall("c", "Read", {})) is RiskLevel.SAFE
    assert tools.assess_risk(ToolCall("c", "Teleport", {})) is RiskLevel.HIGH
    assert tools.assess_risk(ToolCall("c", "Shell", {"command": "ls"})) is RiskLevel.SAFE
    assert tools.assess_risk(ToolCall("c", "Shell", {"command": "rm"})) is RiskLevel.HIGH


def test_definitions_filtering(tools):
    names = lambda defs: [d["function"]["name"] for d in defs]
    assert names(tools.get_definitions()) == ["Read", "Edit", "Execute"]
    assert names(tools.get_definitions(allowed=["Read", "Edit"], denied=["Edit"])) == ["Read"]
    tools.unregister("Edit")
    assert "Edit" not in tools
    assert tools.names() == ["Read", "Execute"]
