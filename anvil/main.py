"""Agent runtime entry point.

Wiring order:
  Settings -> Database -> ConversationStore -> PolicyService -> ToolRegistry
  -> built-in tools / MCP gateway -> SessionManager -> App -> Uvicorn

Components are created inside the Starlette lifespan so they share
uvicorn's event loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from anvil.api.sessions import OrchestratorFactory, SessionManager
from anvil.compaction import TokenEstimator
from anvil.config import Settings
from anvil.events import DecisionChannel, EventHandler
from anvil.orchestrator import Orchestrator
from anvil.policy.service import PolicyService
from anvil.provider.base import ProviderConfig
from anvil.provider.client import ProviderClient
from anvil.provider.retry import RetryConfig
from anvil.storage.conversations import ConversationStore
from anvil.storage.database import Database
from anvil.tools.builtin import register_builtin_tools
from anvil.tools.mcp import McpConfig, McpGateway
from anvil.tools.registry import ToolRegistry
from anvil.tools.snapshots import SnapshotStore
from anvil.workflow import Workflow, resolve

logger = logging.getLogger(__name__)


class ProviderPool:
    """ProviderClients keyed by provider config, created on first use."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._clients: dict[tuple[str, str, str], ProviderClient] = {}
        self._lock = asyncio.Lock()

    async def get(self, config: ProviderConfig) -> ProviderClient:
        key = (config.id, config.base_url, config.api_key)
        async with self._lock:
            client = self._clients.get(key)
            if client is None:
                client = ProviderClient(config, self._settings)
                await client.start()
                self._clients[key] = client
            return client

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()


def make_orchestrator_factory(
    settings: Settings,
    registry: ToolRegistry,
    store: ConversationStore,
    providers: ProviderPool,
    gateway: McpGateway | None,
) -> OrchestratorFactory:
    """Build orchestrators per turn. The workflow file is re-read every turn."""
    estimator = TokenEstimator()
    retry = RetryConfig.from_settings(settings)

    async def factory(emit: EventHandler, channel: DecisionChannel) -> Orchestrator:
        workflow = await asyncio.to_thread(Workflow.load, settings.workflow_path)
        agent = resolve(workflow, settings)
        client = await providers.get(agent.provider)
        if gateway is not None:
            await gateway.register_tools(registry)
        return Orchestrator(
            chat=client.chat,
            registry=registry,
            agent=agent,
            cwd=settings.cwd,
            retry=retry,
            emit=emit,
            channel=channel,
            persist=store.save,
            estimator=estimator,
            summary_max_tokens=settings.compaction_max_summary_tokens,
        )

    return factory


def load_mcp_config(settings: Settings) -> McpConfig:
    """.mcp.json servers, plus those declared in the workflow (workflow wins)."""
    config = McpConfig.load(settings.mcp_config_path)
    workflow = Workflow.load(settings.workflow_path)
    return McpConfig(servers={**config.servers, **workflow.mcp_servers})


async def create_components(settings: Settings) -> dict:
    """Build every long-lived component, keyed by name for the lifespan."""
    database = Database(settings)
    await database.connect()
    store = ConversationStore(database)

    policy = PolicyService(settings.policy_path)
    registry = ToolRegistry(policy, timeout=settings.tool_timeout, restricted=settings.restricted)

    # fetch tool client; never carries provider credentials
    web_http = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.fetch_timeout, connect=10.0),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )
    register_builtin_tools(registry, settings, SnapshotStore(settings.snapshot_dir), web_http)

    gateway = None
    if settings.mcp_enabled:
        mcp_config = await asyncio.to_thread(load_mcp_config, settings)
        if mcp_config.servers:
            gateway = McpGateway(mcp_config, startup_timeout=settings.mcp_startup_timeout)

    providers = ProviderPool(settings)
    sessions = SessionManager(
        store,
        make_orchestrator_factory(settings, registry, store, providers, gateway),
    )

    return {
        "database": database,
        "store": store,
        "policy": policy,
        "registry": registry,
        "web_http": web_http,
        "gateway": gateway,
        "providers": providers,
        "sessions": sessions,
    }


async def shutdown_components(components: dict) -> None:
    """Stop turns first, then close clients and the database."""
    logger.info("Shutting down...")

    sessions = components.get("sessions")
    if sessions:
        await sessions.close()

    providers = components.get("providers")
    if providers:
        await providers.close()

    gateway = components.get("gateway")
    if gateway:
        await gateway.close()

    web_http = components.get("web_http")
    if web_http:
        await web_http.aclose()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components live for the duration of the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info("Agent runtime started (cwd=%s, restricted=%s)", settings.cwd, settings.restricted)
        yield
        await shutdown_components(components)

    from anvil.api.rest import create_app

    return create_app(
        sessions=_lazy_component(components, "sessions"),
        database=_lazy_component(components, "database"),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Forwards attribute access to a component created later by the lifespan."""

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized - lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point - parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Workflow: %s", settings.workflow_path)
    logger.info("Permissions: %s (restricted=%s)", settings.policy_path, settings.restricted)
    logger.info("MCP: %s", "enabled" if settings.mcp_enabled else "disabled")

    if not settings.anthropic_api_key and not settings.openai_api_key:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor OPENAI_API_KEY is set - "
            "turns will fail unless the workflow names another key variable"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
