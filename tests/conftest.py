"""Shared fixtures: isolated settings, a scripted provider, and agent/registry builders."""

import asyncio
from collections.abc import Iterable
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from anvil.compaction import CompactionConfig
from anvil.config import Settings
from anvil.models import ChatCompletionMessage, FinishReason, ToolCall, Usage
from anvil.policy import PolicyService
from anvil.provider.base import ChatRequest, ProviderConfig, ProviderKind
from anvil.storage.conversations import ConversationStore
from anvil.storage.database import Database
from anvil.tools import SnapshotStore, ToolRegistry, register_builtin_tools
from anvil.workflow import Agent, ModelEntry, ResolvedAgent

# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------


class ScriptedProvider:
    """Returns queued replies in order and records every request it receives.

    A queued exception is raised instead of returned.
    """

    def __init__(self, replies: Iterable[ChatCompletionMessage | BaseException] = ()) -> None:
        self.replies = list(replies)
        self.requests: list[ChatRequest] = []

    async def chat(self, request: ChatRequest) -> ChatCompletionMessage:
        self.requests.append(request)
        if not self.replies:
            raise AssertionError("ScriptedProvider ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


class BlockingProvider:
    """Never answers until released."""

    def __init__(self) -> None:
        self.called = asyncio.Event()
        self.release = asyncio.Event()

    async def chat(self, request: ChatRequest) -> ChatCompletionMessage:
        self.called.set()
        await self.release.wait()
        return text_reply("released")


def text_reply(content: str, prompt_tokens: int = 100) -> ChatCompletionMessage:
    return ChatCompletionMessage(
        content=content,
        usage=Usage(prompt_tokens=prompt_tokens, completion_tokens=10, total_tokens=prompt_tokens + 10),
        finish_reason=FinishReason.STOP,
    )


def tool_reply(*calls: tuple[str, str, dict], content: str = "") -> ChatCompletionMessage:
    return ChatCompletionMessage(
        content=content,
        tool_calls=[ToolCall(call_id=cid, name=name, arguments=args) for cid, name, args in calls],
        usage=Usage(prompt_tokens=100, completion_tokens=20, total_tokens=120),
        finish_reason=FinishReason.TOOL_CALLS,
    )


def make_agent(
    *,
    tools: list[str] | None = None,
    max_requests_per_turn: int = 10,
    max_tool_failure_per_turn: int = 3,
    compaction: CompactionConfig | None = None,
    modalities: list[str] | None = None,
) -> ResolvedAgent:
    agent = Agent(id="coder", model="test-model", provider="test", tools=tools)
    model = ModelEntry(id="test-model", input_modalities=modalities or ["text"])
    return ResolvedAgent(
        agent=agent,
        provider=ProviderConfig(id="test", kind=ProviderKind.OPENAI, base_url="http://provider.test", api_key="k"),
        model=model,
        compaction=compaction or CompactionConfig(enabled=False),
        reasoning=None,
        max_requests_per_turn=max_requests_per_turn,
        max_tool_failure_per_turn=max_tool_failure_per_turn,
        max_tokens=1024,
        summary_model="test-model",
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    return Settings(
        _env_file=None,
        cwd=str(tmp_path / "work"),
        policy_path=str(tmp_path / "permissions.yaml"),
        snapshot_dir=str(tmp_path / "snapshots"),
        workflow_path=str(tmp_path / "anvil.yaml"),
        mcp_config_path=str(tmp_path / ".mcp.json"),
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'anvil.db'}",
        retry_initial_backoff_ms=1,
        retry_max_delay_s=0.01,
    )


@pytest.fixture
def workdir(settings):
    path = Path(settings.cwd)
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest_asyncio.fixture
async def database(settings):
    async with Database(settings) as db:
        yield db


@pytest.fixture
def store(database):
    return ConversationStore(database)


@pytest_asyncio.fixture
async def registry(settings, workdir):
    """Built-in tools behind the default policy; fetches always 404."""
    registry = ToolRegistry(PolicyService(settings.policy_path))
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    register_builtin_tools(registry, settings, SnapshotStore(settings.snapshot_dir), http)
    yield registry
    await http.aclose()
