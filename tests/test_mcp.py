"""Tests for the MCP gateway with a fake connector (no real servers)."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from anvil.models import ToolCall, ToolDefinition, ToolOutput
from anvil.policy import ExecuteOperation
from anvil.tools import (
    PERMISSION_DENIED,
    McpConfig,
    McpGateway,
    McpServerConfig,
    ToolCallContext,
    ToolRegistry,
    tool_name_for,
)


class FakeClient:
    def __init__(self, tools: list[ToolDefinition]) -> None:
        self.tools = tools
        self.calls: list[ToolCall] = []

    async def list_tools(self) -> list[ToolDefinition]:
        return self.tools

    async def call(self, call: ToolCall) -> ToolOutput:
        self.calls.append(call)
        return ToolOutput(text=f"{call.name}:{json.dumps(call.arguments, sort_keys=True)}")


class FakeConnection:
    def __init__(self, client: FakeClient) -> None:
        self.client = client
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _gateway(servers: dict[str, list[ToolDefinition]], failing: set[str] = frozenset()):
    connects: list[str] = []
    connections: dict[str, FakeConnection] = {}

    async def connector(server, config, env, timeout):
        connects.append(server)
        if server in failing:
            raise ConnectionError(f"{server} unreachable")
        connections[server] = FakeConnection(FakeClient(servers[server]))
        return connections[server]

    config = McpConfig(servers={name: McpServerConfig(command="fake") for name in servers})
    return McpGateway(config, connector=connector, env_vars={}), connects, connections


_ECHO = ToolDefinition(
    name="echo",
    description="Echo text",
    input_schema={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
)


class TestConfig:
    def test_load_mcp_json(self, tmp_path):
        path = tmp_path / ".mcp.json"
        path.write_text(
            json.dumps(
                {
                    "mcpServers": {
                        "git": {"command": "uvx", "args": ["mcp-server-git"]},
                        "web": {"url": "https://mcp.example.com/sse"},
                        "off": {"command": "x", "disable": True},
                    }
                }
            )
        )
        config = McpConfig.load(path)
        assert config.servers["git"].is_stdio
        assert not config.servers["web"].is_stdio
        assert McpGateway(config, env_vars={}).servers == ["git", "web"]

    def test_missing_file(self, tmp_path):
        assert McpConfig.load(tmp_path / "none.json").servers == {}

    def test_tool_names_sanitized(self):
        assert tool_name_for("my.server", "do thing") == "mcp_my_server_tool_do_thing"
        assert len(tool_name_for("s" * 50, "t" * 50)) == 64


class TestGateway:
    @pytest.mark.asyncio
    async def test_register_and_call(self):
        gateway, connects, connections = _gateway({"util": [_ECHO]})
        registry = ToolRegistry()
        names = await gateway.register_tools(registry)
        assert names == ["mcp_util_tool_echo"]

        output = await registry.execute(
            ToolCall(call_id="c1", name="mcp_util_tool_echo", arguments={"text": "hi"}),
            ToolCallContext(cwd="/tmp"),
        )
        assert output.text == 'echo:{"text": "hi"}'
        assert connections["util"].client.calls[0].name == "echo"
        assert connects == ["util"]

    @pytest.mark.asyncio
    async def test_register_is_idempotent(self):
        gateway, connects, _ = _gateway({"util": [_ECHO]})
        registry = ToolRegistry()
        await gateway.register_tools(registry)
        await gateway.register_tools(registry)
        assert connects == ["util"]

    @pytest.mark.asyncio
    async def test_failing_server_skipped(self):
        gateway, _, _ = _gateway({"util": [_ECHO], "down": [_ECHO]}, failing={"down"})
        registry = ToolRegistry()
        names = await gateway.register_tools(registry)
        assert names == ["mcp_util_tool_echo"]
        assert "mcp_down_tool_echo" not in registry.names()

    @pytest.mark.asyncio
    async def test_arguments_validated_against_server_schema(self):
        gateway, _, connections = _gateway({"util": [_ECHO]})
        registry = ToolRegistry()
        await gateway.register_tools(registry)
        output = await registry.execute(
            ToolCall(call_id="c1", name="mcp_util_tool_echo", arguments={}), ToolCallContext(cwd="/tmp")
        )
        assert output.is_error
        assert connections["util"].client.calls == []

    @pytest.mark.asyncio
    async def test_invalid_schema_accepts_any_object(self):
        broken = ToolDefinition(name="odd", description="", input_schema={"type": "not-a-type"})
        gateway, _, _ = _gateway({"util": [broken]})
        registry = ToolRegistry()
        await gateway.register_tools(registry)
        output = await registry.execute(
            ToolCall(call_id="c1", name="mcp_util_tool_odd", arguments={"anything": 1}), ToolCallContext(cwd="/tmp")
        )
        assert not output.is_error

    @pytest.mark.asyncio
    async def test_close_disconnects(self):
        gateway, _, connections = _gateway({"util": [_ECHO]})
        await gateway.register_tools(ToolRegistry())
        await gateway.close()
        assert connections["util"].closed

    @pytest.mark.asyncio
    async def test_unknown_server(self):
        gateway, _, _ = _gateway({"util": [_ECHO]})
        with pytest.raises(KeyError):
            await gateway.client("other")

    @pytest.mark.asyncio
    async def test_startup_timeout_reaches_connector(self):
        seen: list[float] = []

        async def connector(server, config, env, timeout):
            seen.append(timeout)
            return FakeConnection(FakeClient([_ECHO]))

        config = McpConfig(servers={"util": McpServerConfig(command="fake")})
        gateway = McpGateway(config, connector=connector, env_vars={}, startup_timeout=7.5)
        await gateway.client("util")
        assert seen == [7.5]


class TestPolicy:
    @pytest.mark.asyncio
    async def test_denied_tool_never_reaches_server(self):
        gateway, _, connections = _gateway({"util": [_ECHO]})
        policy = MagicMock()
        policy.check = AsyncMock(return_value=False)
        registry = ToolRegistry(policy)
        await gateway.register_tools(registry)

        output = await registry.execute(
            ToolCall(call_id="c1", name="mcp_util_tool_echo", arguments={"text": "hi"}),
            ToolCallContext(cwd="/work"),
        )
        assert output.text == PERMISSION_DENIED
        assert connections["util"].client.calls == []
        assert policy.check.await_args.args[0] == ExecuteOperation(command="util/echo", cwd="/work")

    @pytest.mark.asyncio
    async def test_allowed_tool_runs(self):
        gateway, _, connections = _gateway({"util": [_ECHO]})
        policy = MagicMock()
        policy.check = AsyncMock(return_value=True)
        registry = ToolRegistry(policy)
        await gateway.register_tools(registry)

        output = await registry.execute(
            ToolCall(call_id="c1", name="mcp_util_tool_echo", arguments={"text": "hi"}),
            ToolCallContext(cwd="/work"),
        )
        assert output.text == 'echo:{"text": "hi"}'
        assert len(connections["util"].client.calls) == 1
