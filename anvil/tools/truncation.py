"""Output truncation for fetch and shell results."""

from __future__ import annotations

from dataclasses import dataclass


def truncate_fetch_content(content: str, limit: int) -> str:
    """First `limit` characters of `content`; shorter content is returned unchanged."""
    if limit < 0:
        raise ValueError(f"limit must be >= 0, got {limit}")
    return content[:limit]


@dataclass
class ClippedText:
    text: str
    total_lines: int
    omitted_lines: int = 0
    clipped_lines: int = 0

    @property
    def truncated(self) -> bool:
        return bool(self.omitted_lines or self.clipped_lines)


def clip_lines(text: str, prefix_lines: int, suffix_lines: int, max_line_length: int) -> ClippedText:
    """Keep the head and tail of `text`, dropping the middle and shortening long lines."""
    lines = text.splitlines()
    total = len(lines)
    omitted = 0
    if total > prefix_lines + suffix_lines:
        omitted = total - prefix_lines - suffix_lines
        tail = lines[total - suffix_lines :] if suffix_lines else []
        lines = [*lines[:prefix_lines], f"... [{omitted} lines omitted] ...", *tail]

    clipped = 0
    out: list[str] = []
    for line in lines:
        if len(line) > max_line_length:
            clipped += 1
            line = line[:max_line_length] + f"... [{len(line) - max_line_length} more chars]"
        out.append(line)
    return ClippedText(text="\n".join(out), total_lines=total, omitted_lines=omitted, clipped_lines=clipped)


def format_shell_output(
    command: str,
    stdout: str,
    stderr: str,
    exit_code: int | None,
    *,
    prefix_lines: int,
    suffix_lines: int,
    max_line_length: int,
) -> str:
    """Render a command result for the model, truncating each stream independently."""
    parts = [f"<command>{command}</command>"]
    if exit_code is not None:
        parts.append(f"<exit_code>{exit_code}</exit_code>")
    for name, stream in (("stdout", stdout), ("stderr", stderr)):
        if not stream:
            continue
        clipped = clip_lines(stream, prefix_lines, suffix_lines, max_line_length)
        attrs = f' total_lines="{clipped.total_lines}"'
        if clipped.truncated:
            attrs += ' truncated="true"'
        parts.append(f"<{name}{attrs}>\n{clipped.text}\n</{name}>")
    return "\n".join(parts)
