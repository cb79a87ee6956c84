import asyncio
import dataclasses

import pytest

from foreman.core import events as ev
from foreman.core.approval import Abort, AlwaysApprove, Approve, ApproveModified, Reject
from foreman.core.interfaces import Delta, Done, StreamError, StreamToolCall
from foreman.core.messages import Role, ToolCall
from foreman.core.orchestrator import Orchestrator
from foreman.core.types import ProviderError, SandboxPolicy, TurnStatus
from foreman.infra import prompt_loader

from conftest import ScriptedClient, call, reply


def _orchestrator(client, tools, config, event_channel=None, **kwargs):
    sender = event_channel[0] if event_channel else None
    return Orchestrator(client, tools, config, sender, **kwargs)


def _events(event_channel):
    return event_channel[1].drain()


def _approver(*responses):
    seen = []
    queue = list(responses)

    async def callback(pending):
        seen.append(pending)
        return queue.pop(0) if len(queue) > 1 else queue[0]

    callback.seen = seen
    return callback


# ---------------------------------------------------------------------------
# Turn loop
# ---------------------------------------------------------------------------

async def test_plain_reply_completes(tools, agent_config):
    client = ScriptedClient([reply("hello there")])
    orch = _orchestrator(client, tools, agent_config)

    result = await orch.run_turn("hi")

    assert result.status is TurnStatus.COMPLETED
    assert result.response == "hello there"
    assert client.calls == 1
    roles = [m.role for m in orch.messages()]
    assert roles == [Role.SYSTEM, Role.USER, Role.ASSISTANT]


async def test_iteration_limit_stops_without_another_model_call(tools, agent_config):
    config = dataclasses.replace(agent_config, max_tool_iterations=2)
    client = ScriptedClient([
        reply("", call("Read", path="a")),
        reply("", call("Read", path="b")),
    ], fallback=reply("should not be requested"))
    orch = _orchestrator(client, tools, config)

    result = await orch.run_turn("read things")

    assert client.calls == 2
    assert result.status is TurnStatus.COMPLETED
    assert len(result.tool_calls) == 2


async def test_empty_reply_after_tools_requests_exactly_one_summary(tools, agent_config):
    client = ScriptedClient([
        reply("", call("Read", path="a")),
        reply(""),
        reply(""),
    ])
    orch = _orchestrator(client, tools, agent_config)

    result = await orch.run_turn("read a")

    assert client.calls == 3
    nudge = prompt_loader.load("TURN_SUMMARY.txt")
    nudges = [m for m in orch.messages() if m.role is Role.USER and m.content == nudge]
    assert len(nudges) == 1
    assert result.status is TurnStatus.COMPLETED


async def test_summary_nudge_reply_becomes_response(tools, agent_config):
    client = ScriptedClient([
        reply("", call("Read", path="a")),
        reply(""),
        reply("The file contains a greeting."),
    ])
    orch = _orchestrator(client, tools, agent_config)

    result = await orch.run_turn("read a")

    assert result.response == "The file contains a greeting."


async def test_no_summary_nudge_without_tool_batches(tools, agent_config):
    client = ScriptedClient([reply("")])
    orch = _orchestrator(client, tools, agent_config)

    await orch.run_turn("say nothing")

    assert client.calls == 1


async def test_final_response_is_last_non_empty_segment(tools, agent_config):
    client = ScriptedClient([
        reply("Let me look.", call("Read", path="a")),
        reply("All good."),
    ])
    orch = _orchestrator(client, tools, agent_config)

    result = await orch.run_turn("check a")

    assert result.response == "All good."


async def test_tokens_accumulate_across_model_calls(tools, agent_config):
    client = ScriptedClient([
        reply("", call("Read", path="a"), tokens=5),
        reply("done", tokens=7),
    ])
    orch = _orchestrator(client, tools, agent_config)

    result = await orch.run_turn("read")

    assert result.token_usage.input_tokens == 12
    assert result.token_usage.output_tokens == 12


async def test_history_answers_every_tool_call(tools, agent_config):
    client = ScriptedClient([
        reply("", call("Read", path="a"), call("Read", path="b")),
        reply("done"),
    ])
    orch = _orchestrator(client, tools, agent_config)

    await orch.run_turn("read both")

    messages = orch.messages()
    assistant = next(m for m in messages if m.tool_calls)
    answered = [m.tool_call_id for m in messages if m.role is Role.TOOL]
    assert answered == [tc.id for tc in assistant.tool_calls]
    assert orch.history.unanswered == set()


# ---------------------------------------------------------------------------
# Approval flow
# ---------------------------------------------------------------------------

async def test_safe_tool_is_auto_approved(tools, agent_config, event_channel):
    client = ScriptedClient([reply("", call("Read", path="a")), reply("ok")])
    callback = _approver(Reject("should not be asked"))
    orch = _orchestrator(client, tools, agent_config, event_channel, approval_callback=callback)

    result = await orch.run_turn("read")

    assert callback.seen == []
    record = result.tool_calls[0]
    assert record.approved and record.result.success
    assert record.sandbox_used is False
    approved = [e for e in _events(event_channel) if isinstance(e, ev.ToolCallApproved)]
    assert approved[0].automatic is True


async def test_high_risk_tool_prompts_and_runs_sandboxed(tools, agent_config, event_channel):
    client = ScriptedClient([reply("", call("Execute", command="ls")), reply("ok")])
    callback = _approver(Approve())
    orch = _orchestrator(client, tools, agent_config, event_channel, approval_callback=callback)

    result = await orch.run_turn("list")

    assert len(callback.seen) == 1
    assert callback.seen[0].tool_name == "Execute"
    record = result.tool_calls[0]
    assert record.approved and record.sandbox_used
    assert record.result.output == "ran ls"
    kinds = [type(e) for e in _events(event_channel)]
    assert kinds.index(ev.ToolCallPending) < kinds.index(ev.ToolCallStarted)


async def test_rejection_is_fed_back_to_the_model(tools, agent_config, event_channel):
    client = ScriptedClient([reply("", call("Execute", command="rm -rf /")), reply("Understood.")])
    orch = _orchestrator(client, tools, agent_config, event_channel,
                         approval_callback=_approver(Reject("too dangerous")))

    result = await orch.run_turn("clean up")

    record = result.tool_calls[0]
    assert not record.approved
    assert not record.result.success
    assert "too dangerous" in record.result.output
    assert client.calls == 2
    assert result.status is TurnStatus.COMPLETED
    rejected = [e for e in _events(event_channel) if isinstance(e, ev.ToolCallRejected)]
    assert rejected[0].reason == "too dangerous"


async def test_always_approve_skips_later_prompts(tools, agent_config):
    client = ScriptedClient([
        reply("", call("Execute", command="a")),
        reply("", call("Execute", command="b")),
        reply("done"),
    ])
    callback = _approver(AlwaysApprove())
    orch = _orchestrator(client, tools, agent_config, approval_callback=callback)

    result = await orch.run_turn("run twice")

    assert len(callback.seen) == 1
    assert [r.result.output for r in result.tool_calls] == ["ran a", "ran b"]
    assert "Execute" in await orch.gate.always_approved()


async def test_approve_modified_replaces_arguments(tools, agent_config):
    client = ScriptedClient([reply("", call("Execute", command="rm -rf build")), reply("ok")])
    orch = _orchestrator(client, tools, agent_config,
                         approval_callback=_approver(ApproveModified({"command": "ls build"})))

    result = await orch.run_turn("clean")

    record = result.tool_calls[0]
    assert record.arguments == {"command": "ls build"}
    assert record.result.output == "ran ls build"


async def test_abort_skips_rest_of_batch_and_interrupts(tools, agent_config, event_channel):
    client = ScriptedClient([
        reply("", call("Execute", command="a"), call("Read", path="b")),
    ], fallback=reply("should not be requested"))
    orch = _orchestrator(client, tools, agent_config, event_channel, approval_callback=_approver(Abort()))

    result = await orch.run_turn("do it")

    assert result.status is TurnStatus.INTERRUPTED
    assert client.calls == 1
    assert len(result.tool_calls) == 1
    assert not result.tool_calls[0].approved
    assert orch.history.unanswered == set()
    assert any(isinstance(e, ev.TurnInterrupted) for e in _events(event_channel))


async def test_unanswered_approval_times_out_as_rejection(tools, agent_config):
    config = dataclasses.replace(agent_config, approval_timeout=0.05)

    async def never(pending):
        await asyncio.sleep(10)

    client = ScriptedClient([reply("", call("Execute", command="x")), reply("ok")])
    orch = _orchestrator(client, tools, config, approval_callback=never)

    result = await orch.run_turn("run")

    record = result.tool_calls[0]
    assert not record.approved
    assert "Approval timed out" in record.result.output


async def test_dropped_approval_is_treated_as_timeout(tools, agent_config):
    async def drop(pending):
        pending.drop()
        return None

    client = ScriptedClient([reply("", call("Execute", command="x")), reply("ok")])
    orch = _orchestrator(client, tools, agent_config, approval_callback=drop)

    result = await orch.run_turn("run")

    assert "Approval timed out" in result.tool_calls[0].result.output


async def test_host_can_answer_through_pending_request(tools, agent_config):
    async def respond_later(pending):
        asyncio.get_running_loop().call_soon(pending.respond, Approve())
        return None

    client = ScriptedClient([reply("", call("Execute", command="x")), reply("ok")])
    orch = _orchestrator(client, tools, agent_config, approval_callback=respond_later)

    result = await orch.run_turn("run")

    assert result.tool_calls[0].approved


async def test_missing_approval_host_rejects(tools, agent_config):
    client = ScriptedClient([reply("", call("Edit", path="a.py")), reply("ok")])
    orch = _orchestrator(client, tools, agent_config)

    result = await orch.run_turn("edit")

    assert not result.tool_calls[0].approved


@pytest.mark.parametrize("policy,tool,expect_prompt", [
    (SandboxPolicy.FULL, "Edit", False),
    (SandboxPolicy.FULL, "Execute", True),
    (SandboxPolicy.PROMPT, "Edit", True),
    (SandboxPolicy.NONE, "Execute", False),
])
async def test_sandbox_policy_decides_prompting(tools, agent_config, policy, tool, expect_prompt):
    config = dataclasses.replace(agent_config, sandbox_policy=policy)
    client = ScriptedClient([reply("", ToolCall("c1", tool, {})), reply("ok")])
    callback = _approver(Approve())
    orch = _orchestrator(client, tools, config, approval_callback=callback)

    await orch.run_turn("go")

    assert bool(callback.seen) is expect_prompt


# ---------------------------------------------------------------------------
# Soft stops and failures
# ---------------------------------------------------------------------------

async def test_doom_loop_stops_turn_with_partial_result(tools, agent_config, event_channel):
    config = dataclasses.replace(agent_config, max_tool_iterations=20)
    client = ScriptedClient([lambda req: reply("", call("Read", path="same"))] * 6)
    orch = _orchestrator(client, tools, config, event_channel)

    result = await orch.run_turn("loop")

    assert result.status is TurnStatus.INTERRUPTED
    assert client.calls == 3
    assert len(result.tool_calls) == 3
    assert result.token_usage.total_tokens == 60
    loops = [e for e in _events(event_channel) if isinstance(e, ev.LoopDetected)]
    assert loops == [ev.LoopDetected("Read", 3)]


async def test_tool_failure_is_conversational(tools, agent_config, event_channel):
    config = dataclasses.replace(agent_config, sandbox_policy=SandboxPolicy.NONE)
    client = ScriptedClient([reply("", call("Execute", command="fail")), reply("It failed.")])
    orch = _orchestrator(client, tools, config, event_channel)

    result = await orch.run_turn("run")

    record = result.tool_calls[0]
    assert not record.result.success
    assert "exited with status 1" in record.result.output
    assert result.status is TurnStatus.COMPLETED
    errors = [e for e in _events(event_channel) if isinstance(e, ev.Error)]
    assert errors and errors[0].recoverable


async def test_unknown_tool_is_conversational(tools, agent_config):
    client = ScriptedClient([reply("", call("Teleport")), reply("ok")])
    orch = _orchestrator(client, tools, agent_config,
                         approval_callback=_approver(Approve()))

    result = await orch.run_turn("go")

    assert not result.tool_calls[0].result.success
    assert result.status is TurnStatus.COMPLETED


async def test_disallowed_tool_is_not_offered_or_run(tools, agent_config):
    config = dataclasses.replace(agent_config, allowed_tools=["Read"])
    client = ScriptedClient([reply("", call("Execute", command="ls")), reply("ok")])
    callback = _approver(Approve())
    orch = _orchestrator(client, tools, config, approval_callback=callback)

    result = await orch.run_turn("go")

    offered = [d["function"]["name"] for d in client.requests[0].tools]
    assert offered == ["Read"]
    assert callback.seen == []
    assert "not available" in result.tool_calls[0].result.output


async def test_provider_error_propagates_from_process_turn(tools, agent_config):
    client = ScriptedClient([ProviderError("boom")])
    orch = _orchestrator(client, tools, agent_config)

    with pytest.raises(ProviderError):
        await orch.process_turn(orch.new_turn("hi"))


async def test_run_turn_reports_provider_failure(tools, agent_config):
    client = ScriptedClient([RuntimeError("connection reset")])
    orch = _orchestrator(client, tools, agent_config)

    result = await orch.run_turn("hi")

    assert result.status is TurnStatus.FAILED
    assert "connection reset" in result.error


async def test_cancelled_turn_makes_no_model_call(tools, agent_config, event_channel):
    client = ScriptedClient([reply("hi")])
    orch = _orchestrator(client, tools, agent_config, event_channel)
    ctx = orch.new_turn("hi")
    ctx.cancel()

    result = await orch.process_turn(ctx)

    assert result.status is TurnStatus.INTERRUPTED
    assert client.calls == 0
    assert any(isinstance(e, ev.TurnInterrupted) for e in _events(event_channel))


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

async def test_streaming_emits_deltas(tools, agent_config, event_channel):
    config = dataclasses.replace(agent_config, streaming=True)
    client = ScriptedClient([reply("streamed answer")])
    orch = _orchestrator(client, tools, config, event_channel)

    result = await orch.run_turn("hi")

    assert result.response == "streamed answer"
    deltas = [e.text for e in _events(event_channel) if isinstance(e, ev.TextDelta)]
    assert "".join(deltas) == "streamed answer"


class _DuplicatingClient(ScriptedClient):
    async def complete(self, request):
        self.requests.append(request)
        if len(self.requests) == 1:
            tc = ToolCall("dup", "Read", {"path": "a"})
            yield StreamToolCall(tc)
            yield StreamToolCall(tc)
            yield Done(tool_calls=(tc,))
        else:
            yield Delta("done")
            yield Done()


async def test_streaming_ignores_duplicate_tool_call_ids(tools, agent_config):
    config = dataclasses.replace(agent_config, streaming=True)
    orch = _orchestrator(_DuplicatingClient(), tools, config)

    result = await orch.run_turn("read")

    assert len(result.tool_calls) == 1
    assert result.response == "done"


class _FailingStreamClient(ScriptedClient):
    async def complete(self, request):
        self.requests.append(request)
        yield Delta("partial")
        yield StreamError("stream broke")


async def test_stream_error_raises_provider_error(tools, agent_config):
    config = dataclasses.replace(agent_config, streaming=True)
    orch = _orchestrator(_FailingStreamClient(), tools, config)

    with pytest.raises(ProviderError, match="stream broke"):
        await orch.process_turn(orch.new_turn("hi"))


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

async def test_clear_resets_history_approvals_and_loop_window(tools, agent_config):
    client = ScriptedClient([reply("", call("Execute", command="a")), reply("ok")])
    orch = _orchestrator(client, tools, agent_config, approval_callback=_approver(AlwaysApprove()))
    await orch.run_turn("go")
    assert len(orch.detector) == 1

    await orch.clear()

    assert orch.messages() == []
    assert await orch.gate.always_approved() == set()
    assert len(orch.detector) == 0


async def test_task_tool_offered_only_with_executor(tools, agent_config):
    orch = _orchestrator(ScriptedClient(), tools, agent_config)
    assert "Task" not in [d["function"]["name"] for d in orch.tool_definitions()]
