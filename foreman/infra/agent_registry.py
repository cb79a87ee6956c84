"""
Custom agent registry.

Custom agents are Markdown files with a YAML frontmatter block::

    ---
    name: migration-helper
    description: Writes database migrations
    model: inherit          # or a concrete model name
    max_turns: 12
    temperature: 0.2
    tools: [Read, Grep, Edit]
    ---
    You write Alembic migrations for this project...

The Markdown body becomes the agent's system prompt.  Directories are
searched in order; the first definition of a name wins.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

INHERIT_MODEL = "inherit"

_FRONTMATTER_RE = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)(.*)\Z", re.DOTALL)


class AgentDefinitionError(ValueError):
    """A custom agent file could not be parsed."""


@dataclass
class CustomAgent:
    name: str
    system_prompt: str
    description: str = ""
    model: str = INHERIT_MODEL
    max_turns: Optional[int] = None
    temperature: Optional[float] = None
    tools: Optional[list[str]] = None      # None = every tool
    hidden: bool = False
    source: Optional[Path] = field(default=None, compare=False)

    @property
    def inherits_model(self) -> bool:
        return not self.model or self.model == INHERIT_MODEL

    def effective_model(self, default: str) -> str:
        return default if self.inherits_model else self.model


def default_search_dirs(project_root: Optional[Path] = None) -> list[Path]:
    root = project_root or Path.cwd()
    return [
        root / ".agents",
        root / ".agent",
        root / ".foreman" / "agents",
        Path.home() / ".foreman" / "agents",
    ]


def split_frontmatter(text: str) -> tuple[dict, str]:
    """Split *text* into its YAML frontmatter mapping and Markdown body."""
    match = _FRONTMATTER_RE.match(text.lstrip("\ufeff"))
    if not match:
        return {}, text.strip()
    try:
        meta = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        raise AgentDefinitionError(f"invalid frontmatter: {exc}") from exc
    if not isinstance(meta, dict):
        raise AgentDefinitionError("frontmatter must be a mapping")
    return meta, match.group(2).strip()


def _tools(value: object) -> Optional[list[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        if value.strip().lower() in ("all", "*"):
            return None
        return [t.strip() for t in value.split(",") if t.strip()]
    if isinstance(value, list):
        return [str(t) for t in value]
    raise AgentDefinitionError("'tools' must be a list or a comma-separated string")


def parse_agent(text: str, default_name: str, source: Optional[Path] = None) -> CustomAgent:
    meta, body = split_frontmatter(text)
    if not body:
        raise AgentDefinitionError("agent has no prompt body")
    max_turns = meta.get("max_turns", meta.get("max_steps"))
    temperature = meta.get("temperature")
    try:
        return CustomAgent(
            name=str(meta.get("name") or default_name).strip().lower(),
            system_prompt=body,
            description=str(meta.get("description") or ""),
            model=str(meta.get("model") or INHERIT_MODEL),
            max_turns=int(max_turns) if max_turns is not None else None,
            temperature=float(temperature) if temperature is not None else None,
            tools=_tools(meta.get("tools")),
            hidden=bool(meta.get("hidden", False)),
            source=source,
        )
    except (TypeError, ValueError) as exc:
        raise AgentDefinitionError(str(exc)) from exc


def load_agent_file(path: Path) -> CustomAgent:
    return parse_agent(path.read_text(encoding="utf-8"), path.stem, source=path)


class AgentRegistry:
    """In-memory name -> :class:`CustomAgent` map."""

    def __init__(self, search_dirs: Optional[list[Path]] = None) -> None:
        self.search_dirs = list(search_dirs) if search_dirs is not None else []
        self._agents: dict[str, CustomAgent] = {}

    def load(self) -> int:
        """Scan the search directories.  Returns the number of agents added."""
        added = 0
        for directory in self.search_dirs:
            if not directory.is_dir():
                continue
            for path in sorted(directory.glob("*.md")):
                try:
                    agent = load_agent_file(path)
                except (OSError, AgentDefinitionError) as exc:
                    logger.warning("Skipping custom agent %s: %s", path, exc)
                    continue
                if agent.name in self._agents:
                    logger.debug("Custom agent %s from %s shadowed by %s",
                                 agent.name, path, self._agents[agent.name].source)
                    continue
                self._agents[agent.name] = agent
                added += 1
        logger.info("Loaded %d custom agent(s) from %d dir(s)", added, len(self.search_dirs))
        return added

    def register(self, agent: CustomAgent) -> None:
        self._agents[agent.name.lower()] = agent

    def get(self, name: str) -> Optional[CustomAgent]:
        return self._agents.get(name.strip().lower())

    def list(self, include_hidden: bool = False) -> list[CustomAgent]:
        return [a for a in self._agents.values() if include_hidden or not a.hidden]

    def list_names(self) -> list[str]:
        return sorted(self._agents)

    def __len__(self) -> int:
        return len(self._agents)
