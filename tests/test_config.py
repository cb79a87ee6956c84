import pytest

from foreman.infra import config as config_module
from foreman.infra.config import ConfigError
from foreman.core.types import SandboxPolicy

CONFIG = """
llm:
  model: gpt-test
  max_tokens: 2048
  temperature: 0.3
agent:
  sandbox_policy: FULL
  max_tool_iterations: 12
  streaming: "no"
  approval_timeout: 30
subagents:
  max_concurrent: 5
  default_timeout: null
  agents_dirs: ~/agents
"""


@pytest.fixture
def cfg(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG, encoding="utf-8")
    return config_module.load_config(path)


def test_missing_file_is_empty_config(tmp_path):
    assert config_module.load_config(tmp_path / "nope.yaml") == {}


def test_non_mapping_file_is_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        config_module.load_config(path)


def test_agent_config(cfg, tmp_path):
    agent = config_module.build_agent_config(cfg, tmp_path)
    assert agent.model == "gpt-test"
    assert agent.max_output_tokens == 2048
    assert agent.temperature == 0.3
    assert agent.sandbox_policy is SandboxPolicy.FULL
    assert agent.max_tool_iterations == 12
    assert agent.streaming is False
    assert agent.approval_timeout == 30.0
    assert agent.working_directory == tmp_path


def test_executor_settings(cfg):
    settings = config_module.build_executor_settings(cfg)
    assert settings.max_concurrent == 5
    assert settings.default_timeout is None
    assert settings.sandbox_policy is SandboxPolicy.FULL


def test_model_is_required():
    with pytest.raises(ConfigError, match="llm.model"):
        config_module.build_provider_config({})


@pytest.mark.parametrize("agent,key", [
    ({"sandbox_policy": "sometimes"}, "agent.sandbox_policy"),
    ({"max_tool_iterations": 0}, "agent.max_tool_iterations"),
    ({"streaming": "maybe"}, "agent.streaming"),
])
def test_invalid_values_name_their_key(agent, key):
    with pytest.raises(ConfigError, match=key):
        config_module.build_agent_config({"llm": {"model": "m"}, "agent": agent})


def test_agent_dirs_put_configured_first(cfg, tmp_path):
    dirs = config_module.agent_search_dirs(cfg, tmp_path)
    assert dirs[0].name == "agents"
    assert dirs[0].is_absolute()
    assert tmp_path / ".agents" in dirs
