"""Workflow configuration: agents, providers and models, loaded from YAML.

Read once at the start of every turn so edits take effect without a
restart. Resolution failures are turn-fatal.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field

from anvil.compaction import CompactionConfig
from anvil.config import Settings
from anvil.errors import AgentNotFoundError, AuthInProgressError, NoActiveModelError, NoActiveProviderError
from anvil.models import Modality
from anvil.provider.base import ProviderConfig, ProviderKind, ReasoningConfig
from anvil.tools.mcp import McpServerConfig

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a coding agent working in {cwd}. Use the tools to inspect and change "
    "the code. Read before you write, keep changes minimal, and say what you did."
)


class ModelEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    input_modalities: list[Modality] = Field(default_factory=lambda: [Modality.TEXT])
    tools_supported: bool = True
    reasoning_supported: bool = False


class ProviderEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    kind: ProviderKind
    base_url: str | None = None
    api_key_env: str | None = None  # name of the env var holding the key
    headers: dict[str, str] = Field(default_factory=dict)


class CompactSettings(BaseModel):
    """Per-agent overrides of the global compaction settings."""

    enabled: bool | None = None
    token_threshold: int | None = None
    retention_window: int | None = None
    eviction_window: float | None = Field(None, gt=0, le=1)
    model: str | None = None


class AgentReasoning(BaseModel):
    enabled: bool = False
    effort: Literal["none", "low", "medium", "high"] | None = None
    max_tokens: int | None = None


class Agent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    model: str | None = None
    provider: str | None = None
    system_prompt: str | None = None
    tools: list[str] | None = None  # globs; None = all registered tools
    custom_rules: list[str] = Field(default_factory=list)
    max_requests_per_turn: int | None = Field(None, ge=1)
    max_tool_failure_per_turn: int | None = Field(None, ge=1)
    max_tokens: int | None = None
    temperature: float | None = None
    compact: CompactSettings | None = None
    reasoning: AgentReasoning | None = None


class Workflow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    agents: list[Agent] = Field(default_factory=lambda: [Agent(id="coder")])
    active_agent: str = "coder"
    providers: list[ProviderEntry] = Field(default_factory=list)
    models: list[ModelEntry] = Field(default_factory=list)
    mcp_servers: dict[str, McpServerConfig] = Field(default_factory=dict)

    @classmethod
    def load(cls, path: str | Path) -> Workflow:
        path = Path(path).expanduser()
        if not path.exists():
            logger.info("No workflow file at %s, using defaults", path)
            return cls()
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return cls.model_validate(data)

    def agent(self, agent_id: str | None = None) -> Agent:
        agent_id = agent_id or self.active_agent
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        raise AgentNotFoundError(agent_id)

    def model_entry(self, model_id: str) -> ModelEntry:
        for entry in self.models:
            if entry.id == model_id:
                return entry
        return ModelEntry(id=model_id)

    def provider_entry(self, agent: Agent) -> ProviderEntry:
        if agent.provider is None:
            if not self.providers:
                raise NoActiveProviderError()
            return self.providers[0]
        for entry in self.providers:
            if entry.id == agent.provider:
                return entry
        raise NoActiveProviderError()


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


@dataclass
class ResolvedAgent:
    """Everything a turn needs, fully validated."""

    agent: Agent
    provider: ProviderConfig
    model: ModelEntry
    compaction: CompactionConfig
    reasoning: ReasoningConfig | None
    max_requests_per_turn: int
    max_tool_failure_per_turn: int
    max_tokens: int
    summary_model: str

    @property
    def modalities(self) -> frozenset[Modality]:
        return frozenset(self.model.input_modalities)

    def system_prompt(self, cwd: str) -> str:
        prompt = (self.agent.system_prompt or DEFAULT_SYSTEM_PROMPT).replace("{cwd}", cwd)
        if self.agent.custom_rules:
            rules = "\n".join(f"- {rule}" for rule in self.agent.custom_rules)
            prompt = f"{prompt}\n\n<custom_rules>\n{rules}\n</custom_rules>"
        return prompt


def _api_key(entry: ProviderEntry, settings: Settings) -> str:
    if entry.api_key_env:
        return os.environ.get(entry.api_key_env, "")
    if entry.kind == ProviderKind.ANTHROPIC:
        return settings.anthropic_api_key
    return settings.openai_api_key


def _base_url(entry: ProviderEntry, settings: Settings) -> str:
    if entry.base_url:
        return entry.base_url
    if entry.kind == ProviderKind.ANTHROPIC:
        return settings.anthropic_base_url
    return settings.openai_base_url


def default_providers(settings: Settings) -> list[ProviderEntry]:
    """Providers implied by whichever vendor keys are set."""
    entries = []
    if settings.anthropic_api_key:
        entries.append(ProviderEntry(id="anthropic", kind=ProviderKind.ANTHROPIC))
    if settings.openai_api_key:
        entries.append(ProviderEntry(id="openai", kind=ProviderKind.OPENAI))
    return entries


def resolve(workflow: Workflow, settings: Settings, agent_id: str | None = None) -> ResolvedAgent:
    """Pick the agent and its provider/model.

    Raises AgentNotFoundError, NoActiveProviderError, NoActiveModelError,
    or AuthInProgressError when the provider has no credentials yet.
    """
    agent = workflow.agent(agent_id)
    if not workflow.providers:
        workflow = workflow.model_copy(update={"providers": default_providers(settings)})
    entry = workflow.provider_entry(agent)

    if not agent.model:
        raise NoActiveModelError()

    api_key = _api_key(entry, settings)
    if not api_key:
        raise AuthInProgressError()

    provider = ProviderConfig(
        id=entry.id,
        kind=entry.kind,
        base_url=_base_url(entry, settings),
        api_key=api_key,
        headers=dict(entry.headers),
    )

    compaction = CompactionConfig.from_settings(settings)
    if agent.compact is not None:
        overrides = agent.compact.model_dump(exclude_none=True, exclude={"model"})
        compaction = CompactionConfig(**{**compaction.__dict__, **overrides})

    model = workflow.model_entry(agent.model)
    reasoning = None
    if agent.reasoning is not None and model.reasoning_supported:
        effort = agent.reasoning.effort
        if effort is None and agent.reasoning.max_tokens is None:
            effort = settings.reasoning_effort
        reasoning = ReasoningConfig(
            enabled=agent.reasoning.enabled,
            effort=effort,
            max_tokens=agent.reasoning.max_tokens,
        )

    return ResolvedAgent(
        agent=agent,
        provider=provider,
        model=model,
        compaction=compaction,
        reasoning=reasoning,
        max_requests_per_turn=agent.max_requests_per_turn or settings.max_requests_per_turn,
        max_tool_failure_per_turn=agent.max_tool_failure_per_turn or settings.max_tool_failure_per_turn,
        max_tokens=agent.max_tokens or settings.max_tokens,
        summary_model=(agent.compact and agent.compact.model) or settings.compaction_model or agent.model,
    )
