"""Fold streamed MessageDeltas into one ChatCompletionMessage.

Each stream gets its own accumulator; there is no shared buffer. Fragments
are concatenated in arrival order so tool-call argument JSON is whole by the
time the stream ends.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterable, Iterable
from dataclasses import dataclass, field

from anvil.errors import EmptyCompletionError
from anvil.models import (
    ChatCompletionMessage,
    MessageDelta,
    ReasoningDetail,
    ToolCall,
    ToolCallPart,
    Usage,
)

logger = logging.getLogger(__name__)


@dataclass
class _PendingCall:
    call_id: str | None = None
    name: str | None = None
    argument_parts: list[str] = field(default_factory=list)


@dataclass
class _PendingReasoning:
    type: str = "reasoning.text"
    text_parts: list[str] = field(default_factory=list)
    signature: str | None = None


class StreamAccumulator:
    """Incremental fold state for one stream."""

    def __init__(self) -> None:
        self._content: list[str] = []
        self._reasoning: list[str] = []
        self._details: dict[int, _PendingReasoning] = {}
        self._calls: dict[int, _PendingCall] = {}
        self._usage = Usage()
        self._finish_reason = None

    def feed(self, delta: MessageDelta) -> None:
        if delta.content:
            self._content.append(delta.content)
        if delta.reasoning:
            self._reasoning.append(delta.reasoning)
        for detail in delta.reasoning_details:
            pending = self._details.setdefault(detail.index, _PendingReasoning(type=detail.type))
            if detail.text:
                pending.text_parts.append(detail.text)
            if detail.signature:
                pending.signature = detail.signature
        for part in delta.tool_call_parts:
            self._feed_tool_part(part)
        if delta.usage is not None:
            self._usage = self._usage + delta.usage
        if delta.finish_reason is not None:
            self._finish_reason = delta.finish_reason

    def _feed_tool_part(self, part: ToolCallPart) -> None:
        pending = self._calls.setdefault(part.index, _PendingCall())
        if part.call_id:
            pending.call_id = part.call_id
        if part.name:
            pending.name = part.name
        if part.arguments_part:
            pending.argument_parts.append(part.arguments_part)

    def finish(self) -> ChatCompletionMessage:
        """Build the final message. Raises EmptyCompletionError if nothing arrived."""
        usage = self._usage
        if usage.total_tokens == 0:
            usage.total_tokens = usage.prompt_tokens + usage.completion_tokens

        message = ChatCompletionMessage(
            content="".join(self._content),
            tool_calls=[self._build_call(p) for _, p in sorted(self._calls.items()) if p.name],
            usage=usage,
            finish_reason=self._finish_reason,
            reasoning="".join(self._reasoning),
            reasoning_details=[
                ReasoningDetail(text="".join(d.text_parts), type=d.type, signature=d.signature, index=i)
                for i, d in sorted(self._details.items())
            ],
        )
        if message.is_empty():
            raise EmptyCompletionError()
        return message

    @staticmethod
    def _build_call(pending: _PendingCall) -> ToolCall:
        raw = "".join(pending.argument_parts).strip()
        arguments: dict | str
        if not raw:
            arguments = {}
        else:
            try:
                arguments = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Tool call %s has malformed arguments: %.200s", pending.name, raw)
                arguments = raw
        return ToolCall(
            call_id=pending.call_id or f"call_{uuid.uuid4().hex[:24]}",
            name=pending.name or "",
            arguments=arguments,
        )


def accumulate(deltas: Iterable[MessageDelta]) -> ChatCompletionMessage:
    acc = StreamAccumulator()
    for delta in deltas:
        acc.feed(delta)
    return acc.finish()


async def accumulate_stream(deltas: AsyncIterable[MessageDelta]) -> ChatCompletionMessage:
    acc = StreamAccumulator()
    async for delta in deltas:
        acc.feed(delta)
    return acc.finish()
