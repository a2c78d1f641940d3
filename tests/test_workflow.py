"""Tests for workflow loading and agent resolution."""

import pytest
import yaml

from anvil.errors import AgentNotFoundError, AuthInProgressError, NoActiveModelError, NoActiveProviderError
from anvil.models import Modality
from anvil.provider import ProviderKind
from anvil.workflow import DEFAULT_SYSTEM_PROMPT, Workflow, resolve

WORKFLOW = {
    "active_agent": "coder",
    "agents": [
        {
            "id": "coder",
            "model": "claude-sonnet",
            "provider": "anthropic",
            "tools": ["read", "patch", "mcp_*"],
            "custom_rules": ["Run the tests before finishing"],
            "max_requests_per_turn": 20,
            "compact": {"token_threshold": 5000, "model": "claude-haiku"},
            "reasoning": {"enabled": True, "max_tokens": 2048},
        },
        {"id": "reviewer", "model": "gpt-4o", "provider": "local", "system_prompt": "Review code in {cwd}."},
    ],
    "providers": [
        {"id": "anthropic", "kind": "anthropic", "api_key_env": "TEST_ANTHROPIC_KEY"},
        {"id": "local", "kind": "openai", "base_url": "http://localhost:11434/v1", "api_key_env": "TEST_LOCAL_KEY"},
    ],
    "models": [
        {"id": "claude-sonnet", "input_modalities": ["text", "image"], "reasoning_supported": True},
    ],
    "mcp_servers": {"git": {"command": "uvx", "args": ["mcp-server-git"]}},
}


@pytest.fixture
def workflow_file(settings):
    from pathlib import Path

    path = Path(settings.workflow_path)
    path.write_text(yaml.safe_dump(WORKFLOW))
    return path


class TestLoad:
    def test_missing_file_gives_defaults(self, tmp_path):
        workflow = Workflow.load(tmp_path / "none.yaml")
        assert workflow.active_agent == "coder"
        assert workflow.agent().model is None

    def test_yaml_parsed(self, workflow_file):
        workflow = Workflow.load(workflow_file)
        assert [a.id for a in workflow.agents] == ["coder", "reviewer"]
        assert workflow.mcp_servers["git"].is_stdio
        assert workflow.model_entry("claude-sonnet").reasoning_supported
        # unknown models get text-only defaults
        assert workflow.model_entry("other").input_modalities == [Modality.TEXT]

    def test_unknown_agent(self, workflow_file):
        with pytest.raises(AgentNotFoundError):
            Workflow.load(workflow_file).agent("nobody")


class TestResolve:
    def test_full_resolution(self, workflow_file, settings, monkeypatch):
        monkeypatch.setenv("TEST_ANTHROPIC_KEY", "sk-ant-test")
        agent = resolve(Workflow.load(workflow_file), settings)

        assert agent.provider.kind == ProviderKind.ANTHROPIC
        assert agent.provider.api_key == "sk-ant-test"
        assert agent.provider.base_url == settings.anthropic_base_url
        assert agent.max_requests_per_turn == 20
        assert agent.max_tool_failure_per_turn == settings.max_tool_failure_per_turn
        assert agent.compaction.token_threshold == 5000
        assert agent.compaction.retention_window == settings.compaction_retention_window
        assert agent.summary_model == "claude-haiku"
        assert agent.reasoning.enabled and agent.reasoning.max_tokens == 2048
        assert agent.modalities == frozenset({Modality.TEXT, Modality.IMAGE})

    def test_system_prompt_with_rules(self, workflow_file, settings, monkeypatch):
        monkeypatch.setenv("TEST_ANTHROPIC_KEY", "k")
        prompt = resolve(Workflow.load(workflow_file), settings).system_prompt("/repo")
        assert prompt.startswith(DEFAULT_SYSTEM_PROMPT.replace("{cwd}", "/repo"))
        assert prompt.endswith("<custom_rules>\n- Run the tests before finishing\n</custom_rules>")

    def test_other_agent(self, workflow_file, settings, monkeypatch):
        monkeypatch.setenv("TEST_LOCAL_KEY", "local-key")
        agent = resolve(Workflow.load(workflow_file), settings, "reviewer")
        assert agent.provider.base_url == "http://localhost:11434/v1"
        assert agent.system_prompt("/repo") == "Review code in /repo."
        # reasoning ignored for models that do not support it
        assert agent.reasoning is None
        assert agent.summary_model == "gpt-4o"

    def test_missing_credentials(self, workflow_file, settings, monkeypatch):
        monkeypatch.delenv("TEST_ANTHROPIC_KEY", raising=False)
        with pytest.raises(AuthInProgressError):
            resolve(Workflow.load(workflow_file), settings)

    def test_no_providers_at_all(self, settings):
        workflow = Workflow.model_validate({"agents": [{"id": "coder", "model": "m"}]})
        with pytest.raises(NoActiveProviderError):
            resolve(workflow, settings)

    def test_providers_from_vendor_keys(self, settings):
        settings = settings.model_copy(update={"openai_api_key": "sk-openai"})
        workflow = Workflow.model_validate({"agents": [{"id": "coder", "model": "gpt-4o"}]})
        agent = resolve(workflow, settings)
        assert agent.provider.id == "openai"
        assert agent.provider.api_key == "sk-openai"

    def test_no_model(self, settings):
        settings = settings.model_copy(update={"anthropic_api_key": "sk"})
        with pytest.raises(NoActiveModelError):
            resolve(Workflow(), settings)

    def test_global_compaction_model(self, settings):
        settings = settings.model_copy(update={"anthropic_api_key": "sk", "compaction_model": "small"})
        workflow = Workflow.model_validate({"agents": [{"id": "coder", "model": "big"}]})
        assert resolve(workflow, settings).summary_model == "small"

    def test_default_reasoning_effort(self, settings):
        settings = settings.model_copy(update={"anthropic_api_key": "sk", "reasoning_effort": "high"})
        workflow = Workflow.model_validate(
            {
                "agents": [{"id": "coder", "model": "thinker", "reasoning": {"enabled": True}}],
                "models": [{"id": "thinker", "reasoning_supported": True}],
            }
        )
        reasoning = resolve(workflow, settings).reasoning
        assert reasoning.enabled
        assert reasoning.effort == "high"
        assert reasoning.max_tokens is None
