"""Configuration resolution.

Turns the raw ``config.yaml`` mapping into the engine's dataclasses:

  config.yaml value  →  hardcoded default

Sections
--------
- ``llm``        : endpoint, credentials and default model
- ``agent``      : turn-loop settings for the root orchestrator
- ``subagents``  : executor limits, timeouts and custom-agent directories
- ``logging``    : ``level`` only (handlers are set up in ``main``)

Invalid values raise :class:`ConfigError` naming the offending key.
"""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from foreman.core.subagent import ExecutorSettings
from foreman.core.types import AgentConfig, ProviderConfig, SandboxPolicy
from foreman.infra.agent_registry import default_search_dirs

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """A configuration value is missing or invalid."""


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _parse_bool(value: Any, key: str) -> bool:
    """Parse a bool from various representations."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        low = value.lower()
        if low in ("true", "1", "yes", "on"):
            return True
        if low in ("false", "0", "no", "off"):
            return False
    raise ConfigError(f"{key}: cannot parse {value!r} as bool")


def _parse_optional_float(value: Any, key: str) -> Optional[float]:
    """Parse an optional float (None / null / 'null' all mean None)."""
    if value is None or (isinstance(value, str) and value.lower() in ("null", "none", "")):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key}: {value!r} is not a number") from None


def _parse_positive_int(value: Any, key: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key}: {value!r} is not an integer") from None
    if number < 1:
        raise ConfigError(f"{key}: must be at least 1, got {number}")
    return number


def _parse_policy(value: Any, key: str) -> SandboxPolicy:
    try:
        return SandboxPolicy(str(value).lower())
    except ValueError:
        valid = ", ".join(p.value for p in SandboxPolicy)
        raise ConfigError(f"{key}: {value!r} is not one of {valid}") from None


def _section(cfg: dict, name: str) -> dict:
    section = cfg.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"{name}: expected a mapping")
    return section


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_config(path: Path) -> dict:
    """Read *path* as YAML.  A missing file yields an empty config."""
    if not path.exists():
        logger.warning("%s not found, using built-in defaults", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def build_provider_config(cfg: dict) -> ProviderConfig:
    llm = _section(cfg, "llm")
    model = llm.get("model")
    if not model:
        raise ConfigError("llm.model is required")
    return ProviderConfig(
        model=str(model),
        max_tokens=_parse_positive_int(llm.get("max_tokens", 4096), "llm.max_tokens"),
        reasoning=_parse_bool(llm.get("reasoning", False), "llm.reasoning"),
        api_key=str(llm.get("api_key") or ""),
        base_url=str(llm.get("base_url") or ""),
        name=str(llm.get("name") or "default"),
    )


def build_agent_config(cfg: dict, working_directory: Optional[Path] = None) -> AgentConfig:
    llm = _section(cfg, "llm")
    agent = _section(cfg, "agent")
    provider = build_provider_config(cfg)
    return AgentConfig(
        model=provider.model,
        max_tool_iterations=_parse_positive_int(
            agent.get("max_tool_iterations", 25), "agent.max_tool_iterations"),
        max_output_tokens=provider.max_tokens,
        temperature=_parse_optional_float(llm.get("temperature"), "llm.temperature"),
        tool_timeout=_parse_optional_float(agent.get("tool_timeout", 120), "agent.tool_timeout") or 120.0,
        sandbox_policy=_parse_policy(agent.get("sandbox_policy", "prompt"), "agent.sandbox_policy"),
        auto_approve_safe=_parse_bool(agent.get("auto_approve_safe", False), "agent.auto_approve_safe"),
        streaming=_parse_bool(agent.get("streaming", True), "agent.streaming"),
        system_prompt=agent.get("system_prompt") or None,
        approval_timeout=_parse_optional_float(agent.get("approval_timeout"), "agent.approval_timeout"),
        max_delegation_depth=_parse_positive_int(
            agent.get("max_delegation_depth", 2), "agent.max_delegation_depth"),
        working_directory=working_directory or Path.cwd(),
    )


def build_executor_settings(cfg: dict) -> ExecutorSettings:
    agent = _section(cfg, "agent")
    sub = _section(cfg, "subagents")
    defaults = ExecutorSettings()
    return ExecutorSettings(
        max_concurrent=_parse_positive_int(
            sub.get("max_concurrent", defaults.max_concurrent), "subagents.max_concurrent"),
        default_timeout=_parse_optional_float(sub.get("default_timeout"), "subagents.default_timeout"),
        summary_timeout=_parse_optional_float(
            sub.get("summary_timeout", defaults.summary_timeout), "subagents.summary_timeout")
            or defaults.summary_timeout,
        sandbox_policy=_parse_policy(
            sub.get("sandbox_policy", agent.get("sandbox_policy", "prompt")), "subagents.sandbox_policy"),
        tool_timeout=_parse_optional_float(
            sub.get("tool_timeout", defaults.tool_timeout), "subagents.tool_timeout")
            or defaults.tool_timeout,
        max_output_tokens=_parse_positive_int(
            sub.get("max_output_tokens", defaults.max_output_tokens), "subagents.max_output_tokens"),
        max_delegation_depth=_parse_positive_int(
            agent.get("max_delegation_depth", defaults.max_delegation_depth),
            "agent.max_delegation_depth"),
    )


def agent_search_dirs(cfg: dict, project_root: Optional[Path] = None) -> list[Path]:
    """Configured custom-agent directories, followed by the defaults."""
    sub = _section(cfg, "subagents")
    configured = sub.get("agents_dirs") or []
    if isinstance(configured, str):
        configured = [configured]
    dirs = [Path(d).expanduser() for d in configured]
    for d in default_search_dirs(project_root):
        if d not in dirs:
            dirs.append(d)
    return dirs
