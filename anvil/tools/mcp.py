"""MCP gateway: external tool servers exposed as registry tools.

Servers are declared in a JSON file (`{"mcpServers": {name: {...}}}`).
Connections are opened lazily on first use, keyed by server name, and
reused for every later call. Each connection lives in its own background
task so the transport's context managers are entered and exited by the
same task.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamablehttp_client
from pydantic import BaseModel, ConfigDict, Field

from anvil.models import ToolCall, ToolDefinition, ToolOutput
from anvil.policy.schemas import ExecuteOperation
from anvil.tools.registry import Tool, ToolCallContext, ToolRegistry

logger = logging.getLogger(__name__)

_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")
_MAX_TOOL_NAME = 64


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class McpServerConfig(BaseModel):
    """Either a stdio command or a remote url (SSE or streamable HTTP)."""

    model_config = ConfigDict(extra="ignore")

    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    transport: str | None = None  # "sse" or "http" for url servers
    disable: bool = False

    @property
    def is_stdio(self) -> bool:
        return self.command is not None


class McpConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    servers: dict[str, McpServerConfig] = Field(default_factory=dict, alias="mcpServers")

    @classmethod
    def load(cls, path: str | Path) -> McpConfig:
        path = Path(path).expanduser()
        if not path.exists():
            return cls()
        return cls.model_validate(json.loads(path.read_text(encoding="utf-8")))


def tool_name_for(server: str, tool: str) -> str:
    """Registry name for an MCP tool; cannot collide with built-ins."""
    name = f"mcp_{_NAME_UNSAFE.sub('_', server)}_tool_{_NAME_UNSAFE.sub('_', tool)}"
    return name[:_MAX_TOOL_NAME]


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class McpClient:
    """A live session with one server."""

    def __init__(self, server: str, session: ClientSession) -> None:
        self.server = server
        self._session = session

    async def list_tools(self) -> list[ToolDefinition]:
        result = await self._session.list_tools()
        definitions = []
        for tool in result.tools:
            schema = tool.inputSchema if isinstance(tool.inputSchema, dict) else {"type": "object"}
            definitions.append(ToolDefinition(name=tool.name, description=tool.description or "", input_schema=schema))
        return definitions

    async def call(self, call: ToolCall) -> ToolOutput:
        arguments = call.arguments if isinstance(call.arguments, dict) else {}
        result = await self._session.call_tool(call.name, arguments=arguments)
        parts: list[str] = []
        for block in result.content or []:
            text = getattr(block, "text", None)
            if isinstance(text, str):
                parts.append(text)
            else:
                parts.append(json.dumps(block.model_dump(mode="json")))
        structured = getattr(result, "structuredContent", None)
        if not parts and structured:
            parts.append(json.dumps(structured))
        return ToolOutput(text="\n".join(parts), is_error=bool(result.isError))


Connector = Callable[[str, McpServerConfig, dict[str, str], float], Awaitable["McpConnection"]]


class McpConnection:
    """Background task that owns one server's transport and session."""

    def __init__(self, server: str, config: McpServerConfig, env_vars: dict[str, str]) -> None:
        self.server = server
        self._config = config
        self._env = env_vars
        self._ready: asyncio.Future[McpClient] | None = None
        self.client: McpClient | None = None
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def open(self, timeout: float) -> McpClient:
        self._ready = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run(), name=f"mcp-{self.server}")
        self.client = await asyncio.wait_for(asyncio.shield(self._ready), timeout=timeout)
        return self.client

    async def _run(self) -> None:
        try:
            async with AsyncExitStack() as stack:
                streams = await stack.enter_async_context(self._transport())
                session = await stack.enter_async_context(ClientSession(streams[0], streams[1]))
                await session.initialize()
                self._ready.set_result(McpClient(self.server, session))
                logger.info("MCP server '%s' connected", self.server)
                await self._stop.wait()
        except Exception as e:
            logger.error("MCP server '%s' failed: %s", self.server, e)
            if not self._ready.done():
                self._ready.set_exception(e)

    def _transport(self):
        config = self._config
        if config.is_stdio:
            params = StdioServerParameters(
                command=config.command,
                args=config.args,
                env={**self._env, **config.env},
            )
            return stdio_client(params)
        if config.transport == "http":
            return streamablehttp_client(config.url, headers=config.headers or None)
        return sse_client(config.url, headers=config.headers or None)

    async def close(self) -> None:
        self._stop.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except TimeoutError:
                self._task.cancel()
            self._task = None


async def connect(server: str, config: McpServerConfig, env_vars: dict[str, str], timeout: float) -> McpConnection:
    connection = McpConnection(server, config, env_vars)
    await connection.open(timeout)
    return connection


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class McpGateway:
    """Lazily connects to configured servers and routes tool calls to them."""

    def __init__(
        self,
        config: McpConfig,
        *,
        connector: Connector = connect,
        env_vars: dict[str, str] | None = None,
        startup_timeout: float = 20.0,
    ) -> None:
        self._servers = {name: cfg for name, cfg in config.servers.items() if not cfg.disable}
        self._connector = connector
        self._env = dict(os.environ) if env_vars is None else env_vars
        self._startup_timeout = startup_timeout
        self._connections: dict[str, McpConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in self._servers}
        # registry name -> (server, tool name on that server)
        self._routes: dict[str, tuple[str, str]] = {}
        self._discovered = False

    @property
    def servers(self) -> list[str]:
        return list(self._servers)

    async def client(self, server: str) -> McpClient:
        if server not in self._servers:
            raise KeyError(f"MCP server '{server}' is not configured")
        async with self._locks[server]:
            connection = self._connections.get(server)
            if connection is None:
                connection = await self._connector(server, self._servers[server], self._env, self._startup_timeout)
                self._connections[server] = connection
            return connection.client

    async def register_tools(self, registry: ToolRegistry) -> list[str]:
        """Connect to every server once and register its tools. Idempotent."""
        if self._discovered:
            return list(self._routes)
        for server in self._servers:
            try:
                client = await self.client(server)
                definitions = await client.list_tools()
            except Exception as e:
                logger.warning("Skipping MCP server '%s': %s", server, e)
                continue
            for definition in definitions:
                name = tool_name_for(server, definition.name)
                self._routes[name] = (server, definition.name)
                registry.register(self._tool(name, server, definition))
        self._discovered = True
        logger.info("Registered %d MCP tools from %d servers", len(self._routes), len(self._servers))
        return list(self._routes)

    def _tool(self, name: str, server: str, definition: ToolDefinition) -> Tool:
        exposed = ToolDefinition(
            name=name,
            description=definition.description,
            input_schema=definition.input_schema,
            side_effecting=True,
        )

        async def handler(ctx: ToolCallContext, **arguments: Any) -> ToolOutput:
            await ctx.send_title("MCP", name)
            return await self.call(name, arguments)

        def operation(arguments: dict[str, Any], cwd: str) -> ExecuteOperation:
            return ExecuteOperation(command=f"{server}/{definition.name}", cwd=cwd)

        try:
            Draft202012Validator.check_schema(definition.input_schema)
            validator = Draft202012Validator(definition.input_schema)
        except SchemaError:
            logger.warning("MCP tool %s has an invalid schema; accepting any object", name)
            validator = Draft202012Validator({"type": "object"})
        return Tool(exposed, handler, operation=operation, validator=validator)

    async def call(self, name: str, arguments: dict[str, Any]) -> ToolOutput:
        server, tool = self._routes[name]
        client = await self.client(server)
        return await client.call(ToolCall(call_id="", name=tool, arguments=arguments))

    async def close(self) -> None:
        for server, connection in list(self._connections.items()):
            await connection.close()
            logger.info("MCP server '%s' disconnected", server)
        self._connections.clear()
