import pytest

from foreman.infra.agent_registry import (
    AgentDefinitionError,
    AgentRegistry,
    CustomAgent,
    parse_agent,
    split_frontmatter,
)

LINTER = """---
name: Linter
description: Runs the linters
model: inherit
max_steps: 7
temperature: 0.1
tools: Read, Grep
---
You run linters and report findings.
"""


def test_frontmatter_is_parsed():
    agent = parse_agent(LINTER, "fallback")
    assert agent.name == "linter"
    assert agent.description == "Runs the linters"
    assert agent.max_turns == 7
    assert agent.temperature == 0.1
    assert agent.tools == ["Read", "Grep"]
    assert agent.system_prompt == "You run linters and report findings."
    assert agent.effective_model("base-model") == "base-model"


def test_file_without_frontmatter_uses_default_name():
    agent = parse_agent("Just a prompt.", "helper")
    assert agent.name == "helper"
    assert agent.tools is None


@pytest.mark.parametrize("text", [
    "---\nname: empty\n---\n",
    "---\n- a list\n---\nbody",
    "---\nname: [unclosed\n---\nbody",
    "---\nmax_turns: many\n---\nbody",
])
def test_invalid_definitions_raise(text):
    with pytest.raises(AgentDefinitionError):
        parse_agent(text, "x")


def test_tools_all_means_unrestricted():
    agent = parse_agent("---\ntools: all\n---\nbody", "x")
    assert agent.tools is None


def test_split_frontmatter_tolerates_bom():
    meta, body = split_frontmatter("\ufeff---\nname: a\n---\nbody")
    assert meta == {"name": "a"}
    assert body == "body"


def test_explicit_model_is_kept():
    agent = CustomAgent(name="a", system_prompt="p", model="special")
    assert not agent.inherits_model
    assert agent.effective_model("base") == "special"


def test_load_first_definition_wins_and_bad_files_are_skipped(tmp_path):
    project = tmp_path / "project"
    home = tmp_path / "home"
    project.mkdir()
    home.mkdir()
    (project / "linter.md").write_text(LINTER, encoding="utf-8")
    (home / "linter.md").write_text("---\nname: linter\n---\nOther prompt.", encoding="utf-8")
    (home / "broken.md").write_text("---\nname: broken\n---\n", encoding="utf-8")
    (home / "hidden.md").write_text("---\nhidden: true\n---\nSecret.", encoding="utf-8")

    registry = AgentRegistry([project, home, tmp_path / "missing"])
    added = registry.load()

    assert added == 2
    assert registry.get("LINTER").system_prompt.startswith("You run linters")
    assert registry.list_names() == ["hidden", "linter"]
    assert [a.name for a in registry.list()] == ["linter"]
    assert len(registry.list(include_hidden=True)) == 2
