"""
Foreman - autonomous coding agent
Entry point and wiring.

Usage::

    python -m foreman.main "add type hints to utils.py"

Startup sequence:
  1. Load config.yaml
  2. Configure logging
  3. Validate prompt files
  4. Build the OpenAI model client and the tool registry
  5. Load custom agents and build the subagent executor
  6. Start the event printer
  7. Run one turn with a console approval host
"""

import asyncio
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from foreman.backends.openai_client import OpenAIModelClient
from foreman.core import events as ev
from foreman.core.approval import (
    Abort,
    AlwaysApprove,
    ApprovalResponse,
    Approve,
    PendingApproval,
    Reject,
)
from foreman.core.orchestrator import Orchestrator
from foreman.core.subagent import SubagentExecutor
from foreman.core.tool_registry import ToolRegistry
from foreman.infra import config as config_module
from foreman.infra import prompt_loader
from foreman.infra.agent_registry import AgentRegistry
from foreman.infra.channel import Receiver, channel

CONFIG_FILE = Path("config.yaml")
LOG_DIR = Path("logs")


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(cfg: dict) -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    level_name = str((cfg.get("logging") or {}).get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)-20s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    # Console output goes to stderr; stdout carries the agent's reply.
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(fmt)
    console.setLevel(level)

    fh = logging.handlers.TimedRotatingFileHandler(
        LOG_DIR / "foreman.log",
        when="midnight",
        backupCount=14,
        encoding="utf-8",
    )
    fh.setFormatter(fmt)
    fh.setLevel(logging.DEBUG)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(console)
    root.addHandler(fh)


# ---------------------------------------------------------------------------
# Console host
# ---------------------------------------------------------------------------

_ANSWERS = {
    "y": Approve(), "yes": Approve(),
    "a": AlwaysApprove(), "always": AlwaysApprove(),
    "n": Reject("Rejected by user"), "no": Reject("Rejected by user"),
    "q": Abort(), "abort": Abort(),
}


async def console_approval(pending: PendingApproval) -> Optional[ApprovalResponse]:
    print(f"\n[approval] {pending.tool_name} ({pending.risk_level.value} risk)", file=sys.stderr)
    print(f"  arguments: {pending.arguments}", file=sys.stderr)
    while True:
        try:
            answer = await asyncio.to_thread(input, "  [y]es / [a]lways / [n]o / [q] abort turn: ")
        except EOFError:
            return None
        response = _ANSWERS.get(answer.strip().lower())
        if response is not None:
            return response


async def print_events(receiver: Receiver) -> None:
    async for event in receiver:
        if isinstance(event, ev.TextDelta):
            print(event.text, end="", flush=True)
        elif isinstance(event, ev.ToolCallStarted):
            print(f"\n-> {event.tool_name}", file=sys.stderr)
        elif isinstance(event, ev.TaskProgress):
            print(f"   {event.message}", file=sys.stderr)
        elif isinstance(event, ev.LoopDetected):
            print(f"\n[stopped: {event.tool_name} repeated {event.count} times]", file=sys.stderr)
        elif isinstance(event, ev.Error):
            print(f"\n[error] {event.message}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

async def main(instruction: str) -> int:
    cfg = config_module.load_config(CONFIG_FILE)
    setup_logging(cfg)
    logger = logging.getLogger("main")
    logger.info("Foreman starting up")

    prompt_loader.validate_all()

    provider = config_module.build_provider_config(cfg)
    agent_config = config_module.build_agent_config(cfg)
    client = OpenAIModelClient(provider)
    tools = ToolRegistry()

    agents = AgentRegistry(config_module.agent_search_dirs(cfg, agent_config.working_directory))
    agents.load()
    executor = SubagentExecutor(
        client, tools, provider.model,
        agents=agents,
        settings=config_module.build_executor_settings(cfg),
        approval_callback=console_approval,
    )

    sender, receiver = channel("main")
    printer = asyncio.create_task(print_events(receiver))
    orchestrator = Orchestrator(client, tools, agent_config, sender,
                                approval_callback=console_approval,
                                subagents=executor)
    try:
        result = await orchestrator.run_turn(instruction)
    finally:
        orchestrator.close()
        await printer

    print()
    logger.info("Turn finished: %s, %d tool call(s), %d tokens",
                result.status.value, len(result.tool_calls), result.token_usage.total_tokens)
    if result.error:
        print(f"[{result.status.value}] {result.error}", file=sys.stderr)
    return 0 if result.success else 1


def run() -> None:
    """Entry point for the `foreman` console script."""
    instruction = " ".join(sys.argv[1:]).strip()
    if not instruction:
        print("usage: foreman \"<instruction>\"", file=sys.stderr)
        sys.exit(2)
    sys.exit(asyncio.run(main(instruction)))


if __name__ == "__main__":
    run()
