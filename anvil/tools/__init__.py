"""Tools - registry/executor, built-in tools, snapshots and the MCP gateway."""

from anvil.tools.builtin import IMAGE_EXTENSIONS, register_builtin_tools, resolve_path
from anvil.tools.mcp import McpConfig, McpGateway, McpServerConfig, tool_name_for
from anvil.tools.registry import PERMISSION_DENIED, Tool, ToolCallContext, ToolRegistry, filter_allowed
from anvil.tools.snapshots import Snapshot, SnapshotError, SnapshotStore
from anvil.tools.truncation import clip_lines, format_shell_output, truncate_fetch_content

__all__ = [
    "IMAGE_EXTENSIONS",
    "McpConfig",
    "McpGateway",
    "McpServerConfig",
    "PERMISSION_DENIED",
    "Snapshot",
    "SnapshotError",
    "SnapshotStore",
    "Tool",
    "ToolCallContext",
    "ToolRegistry",
    "clip_lines",
    "filter_allowed",
    "format_shell_output",
    "register_builtin_tools",
    "resolve_path",
    "tool_name_for",
    "truncate_fetch_content",
]
