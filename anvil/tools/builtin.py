"""Built-in tools: read, write, patch, remove, undo, shell, fetch.

Handlers are closures registered by register_builtin_tools(). Each receives
the ToolCallContext first and the validated arguments as keyword args, and
returns a ToolOutput. File-mutating handlers snapshot the file before
touching it so `undo` can restore it.
"""

from __future__ import annotations

import asyncio
import html as html_module
import logging
import mimetypes
import re
from pathlib import Path
from typing import Any

import httpx

from anvil.config import Settings
from anvil.models import Modality, ToolDefinition, ToolOutput
from anvil.policy.schemas import ExecuteOperation, FetchOperation, ReadOperation, WriteOperation
from anvil.tools.registry import Tool, ToolCallContext, ToolRegistry
from anvil.tools.snapshots import SnapshotError, SnapshotStore
from anvil.tools.truncation import format_shell_output, truncate_fetch_content

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp", ".svg", ".pdf"})
_USER_AGENT = "anvil/0.1 (coding agent)"


def resolve_path(path: str, cwd: str) -> Path:
    """Absolute, normalized path; relative paths are taken from `cwd`."""
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = Path(cwd) / candidate
    return candidate.resolve()


def _extract_readable(html: str) -> str:
    """Strip markup from an HTML page, keeping visible text."""
    text = re.sub(
        r"<(script|style|noscript|nav|header|footer)[^>]*>.*?</\1>",
        "",
        html,
        flags=re.DOTALL | re.IGNORECASE,
    )
    text = re.sub(r"<!--.*?-->", "", text, flags=re.DOTALL)
    text = re.sub(r"<br\s*/?>|</p>|</div>|</h[1-6]>|</li>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html_module.unescape(text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

_READ_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "File path, absolute or relative to the working directory"},
        "start_line": {"type": "integer", "minimum": 1, "description": "First line to read (1-based)"},
        "end_line": {"type": "integer", "minimum": 1, "description": "Last line to read (inclusive)"},
    },
    "required": ["path"],
    "additionalProperties": False,
}

_WRITE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "File path to create or overwrite"},
        "content": {"type": "string", "description": "Full file content"},
        "overwrite": {"type": "boolean", "default": False, "description": "Allow replacing an existing file"},
    },
    "required": ["path", "content"],
    "additionalProperties": False,
}

_PATCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string"},
        "search": {"type": "string", "minLength": 1, "description": "Exact text to find"},
        "replace": {"type": "string", "description": "Replacement text"},
        "replace_all": {"type": "boolean", "default": False},
    },
    "required": ["path", "search", "replace"],
    "additionalProperties": False,
}

_PATH_ONLY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"path": {"type": "string"}},
    "required": ["path"],
    "additionalProperties": False,
}

_SHELL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "command": {"type": "string", "minLength": 1, "description": "Shell command to run"},
        "cwd": {"type": "string", "description": "Working directory (defaults to the session's)"},
    },
    "required": ["command"],
    "additionalProperties": False,
}

_FETCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "url": {"type": "string", "pattern": "^https?://", "description": "http(s) URL to fetch"},
        "raw": {"type": "boolean", "default": False, "description": "Return the body without HTML extraction"},
    },
    "required": ["url"],
    "additionalProperties": False,
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(
    registry: ToolRegistry,
    settings: Settings,
    snapshots: SnapshotStore,
    http: httpx.AsyncClient,
) -> None:
    """Create tool closures over settings, snapshot store and HTTP client."""

    async def read(ctx: ToolCallContext, path: str, start_line: int | None = None, end_line: int | None = None) -> ToolOutput:
        target = resolve_path(path, ctx.cwd)
        if not target.exists():
            return ToolOutput.error(f"File not found: {target}")
        if not target.is_file():
            return ToolOutput.error(f"Not a file: {target}")

        size = target.stat().st_size
        if target.suffix.lower() in IMAGE_EXTENSIONS:
            mime = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
            return ToolOutput(text=f"Binary file {target} ({mime}, {size:,} bytes)", title="Read", subtitle=str(target))
        if size > settings.max_file_size:
            return ToolOutput.error(
                f"File too large: {size:,} bytes (limit: {settings.max_file_size:,} bytes). "
                "Read a line range instead."
            )

        content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
        lines = content.splitlines()
        total = len(lines)
        start = start_line or 1
        end = min(end_line or total, total, start + settings.max_read_size - 1)
        if total and start > total:
            return ToolOutput.error(f"start_line {start} is past the end of the file ({total} lines)")
        if end_line is not None and end_line < start:
            return ToolOutput.error(f"end_line {end_line} is before start_line {start}")

        body = "\n".join(f"{n:>6}\t{lines[n - 1]}" for n in range(start, end + 1))
        header = f"<file path=\"{target}\" lines=\"{start}-{end}\" total_lines=\"{total}\">"
        return ToolOutput(text=f"{header}\n{body}\n</file>" if total else f"{header}\n(empty file)\n</file>", title="Read", subtitle=str(target))

    async def write(ctx: ToolCallContext, path: str, content: str, overwrite: bool = False) -> ToolOutput:
        target = resolve_path(path, ctx.cwd)
        if target.exists() and not overwrite:
            return ToolOutput.error(f"File already exists: {target}. Set overwrite=true to replace it.")
        await snapshots.insert_snapshot(target)
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")
        if ctx.metrics is not None:
            ctx.metrics.record_file_change(str(target))
        return ToolOutput(text=f"Wrote {len(content)} chars to {target}", title="Write", subtitle=str(target))

    async def patch(ctx: ToolCallContext, path: str, search: str, replace: str, replace_all: bool = False) -> ToolOutput:
        target = resolve_path(path, ctx.cwd)
        if not target.is_file():
            return ToolOutput.error(f"File not found: {target}")
        content = await asyncio.to_thread(target.read_text, encoding="utf-8")
        count = content.count(search)
        if count == 0:
            return ToolOutput.error(f"Search text not found in {target}")
        if count > 1 and not replace_all:
            return ToolOutput.error(
                f"Search text matches {count} times in {target}; make it unique or set replace_all=true"
            )
        updated = content.replace(search, replace) if replace_all else content.replace(search, replace, 1)
        await snapshots.insert_snapshot(target)
        await asyncio.to_thread(target.write_text, updated, encoding="utf-8")
        if ctx.metrics is not None:
            ctx.metrics.record_file_change(str(target))
        replaced = count if replace_all else 1
        return ToolOutput(text=f"Replaced {replaced} occurrence(s) in {target}", title="Patch", subtitle=str(target))

    async def remove(ctx: ToolCallContext, path: str) -> ToolOutput:
        target = resolve_path(path, ctx.cwd)
        if not target.is_file():
            return ToolOutput.error(f"File not found: {target}")
        await snapshots.insert_snapshot(target)
        await asyncio.to_thread(target.unlink)
        if ctx.metrics is not None:
            ctx.metrics.record_file_change(str(target))
        return ToolOutput(text=f"Removed {target}", title="Remove", subtitle=str(target))

    async def undo(ctx: ToolCallContext, path: str) -> ToolOutput:
        target = resolve_path(path, ctx.cwd)
        try:
            await snapshots.undo_snapshot(target)
        except SnapshotError as e:
            return ToolOutput.error(str(e))
        if ctx.metrics is not None:
            ctx.metrics.record_file_change(str(target))
        return ToolOutput(text=f"Restored previous version of {target}", title="Undo", subtitle=str(target))

    async def shell(ctx: ToolCallContext, command: str, cwd: str | None = None) -> ToolOutput:
        workdir = resolve_path(cwd, ctx.cwd) if cwd else Path(ctx.cwd)
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workdir),
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Timeout or turn cancellation: do not leave the process running
            proc.kill()
            await proc.wait()
            raise
        text = format_shell_output(
            command,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            proc.returncode,
            prefix_lines=settings.stdout_max_prefix_lines,
            suffix_lines=settings.stdout_max_suffix_lines,
            max_line_length=settings.stdout_max_line_length,
        )
        return ToolOutput(text=text, is_error=proc.returncode != 0, title="Execute", subtitle=command)

    async def fetch(ctx: ToolCallContext, url: str, raw: bool = False) -> ToolOutput:
        try:
            response = await http.get(url, headers={"User-Agent": _USER_AGENT}, follow_redirects=True)
        except httpx.TimeoutException:
            return ToolOutput.error(f"Fetch timed out for: {url}")
        except httpx.HTTPError as e:
            return ToolOutput.error(f"Could not fetch {url}: {e}")

        if response.status_code >= 400:
            return ToolOutput.error(f"Fetch failed for {url}: HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "")
        is_text = any(t in content_type for t in ("text/", "application/json", "application/xml", "application/xhtml"))
        if content_type and not is_text:
            return ToolOutput.error(f"Cannot extract text from binary content (content-type: {content_type})")

        body = response.text
        if not raw and "html" in content_type:
            body = _extract_readable(body)

        limit = settings.fetch_truncation_limit
        text = truncate_fetch_content(body, limit)
        header = f"URL: {url}\nContent-Type: {content_type or 'unknown'}"
        if len(body) > limit:
            header += f"\nTruncated: showing first {limit} of {len(body)} characters"
        return ToolOutput(text=f"{header}\n\n{text}", title="Fetch", subtitle=url)

    # -- operations for the policy gate --

    def read_op(args: dict[str, Any], cwd: str) -> ReadOperation:
        path = str(resolve_path(args["path"], cwd))
        return ReadOperation(path=path, cwd=cwd, message=f"Read file: {path}")

    def write_op(verb: str):
        def factory(args: dict[str, Any], cwd: str) -> WriteOperation:
            path = str(resolve_path(args["path"], cwd))
            return WriteOperation(path=path, cwd=cwd, message=f"{verb} file: {path}")

        return factory

    def shell_op(args: dict[str, Any], cwd: str) -> ExecuteOperation:
        workdir = str(resolve_path(args["cwd"], cwd)) if args.get("cwd") else cwd
        return ExecuteOperation(command=args["command"], cwd=workdir)

    def fetch_op(args: dict[str, Any], cwd: str) -> FetchOperation:
        return FetchOperation(url=args["url"], cwd=cwd, message=f"Fetch: {args['url']}")

    def read_modalities(args: dict[str, Any]) -> frozenset[Modality]:
        if Path(args["path"]).suffix.lower() in IMAGE_EXTENSIONS:
            return frozenset({Modality.IMAGE})
        return frozenset({Modality.TEXT})

    tools = [
        Tool(
            ToolDefinition("read", "Read a text file, optionally a 1-based line range.", _READ_SCHEMA),
            read,
            operation=read_op,
            modalities=read_modalities,
        ),
        Tool(
            ToolDefinition("write", "Create a file or overwrite it with new content.", _WRITE_SCHEMA, side_effecting=True),
            write,
            operation=write_op("Create/overwrite"),
        ),
        Tool(
            ToolDefinition("patch", "Replace an exact text fragment in a file.", _PATCH_SCHEMA, side_effecting=True),
            patch,
            operation=write_op("Modify"),
        ),
        Tool(
            ToolDefinition("remove", "Delete a file.", _PATH_ONLY_SCHEMA, side_effecting=True),
            remove,
            operation=write_op("Remove"),
        ),
        Tool(
            ToolDefinition("undo", "Revert the last change made to a file by write, patch or remove.", _PATH_ONLY_SCHEMA, side_effecting=True),
            undo,
            operation=write_op("Undo changes to"),
        ),
        Tool(
            ToolDefinition("shell", "Run a shell command and return its output.", _SHELL_SCHEMA, side_effecting=True),
            shell,
            operation=shell_op,
        ),
        Tool(
            ToolDefinition("fetch", "Fetch a URL and return its readable text.", _FETCH_SCHEMA),
            fetch,
            operation=fetch_op,
        ),
    ]
    for tool in tools:
        registry.register(tool)
    logger.debug("Registered %d built-in tools", len(tools))
