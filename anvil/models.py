"""Canonical, vendor-independent data model.

Everything that crosses the provider boundary or lives in a Context is one
of these dataclasses. Vendor adapters translate to and from them; nothing
downstream of the adapters sees a vendor shape.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Modality(StrEnum):
    TEXT = "text"
    IMAGE = "image"


class FinishReason(StrEnum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"

    @classmethod
    def from_vendor(cls, value: str | None) -> FinishReason | None:
        """Map a vendor stop/finish reason onto the canonical set."""
        if not value:
            return None
        return _FINISH_REASON_ALIASES.get(value)


_FINISH_REASON_ALIASES: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "max_tokens": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "tool_use": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
    "refusal": FinishReason.CONTENT_FILTER,
}


# ---------------------------------------------------------------------------
# Tool calls and outputs
# ---------------------------------------------------------------------------


@dataclass
class ToolCall:
    """A complete tool invocation issued by the model.

    `arguments` is the raw string when the streamed JSON did not parse; the
    registry rejects it as a call-argument error.
    """

    call_id: str
    name: str
    arguments: dict[str, Any] | str = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"call_id": self.call_id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        return cls(call_id=data["call_id"], name=data["name"], arguments=data.get("arguments") or {})


@dataclass
class ToolCallPart:
    """A streamed fragment of a tool call.

    `index` identifies which call the fragment belongs to; id and name usually
    arrive only on the first fragment.
    """

    index: int = 0
    call_id: str | None = None
    name: str | None = None
    arguments_part: str = ""


@dataclass
class ToolOutput:
    """Result payload of one tool execution, with optional display hints."""

    text: str
    is_error: bool = False
    title: str | None = None
    subtitle: str | None = None

    @classmethod
    def error(cls, message: str) -> ToolOutput:
        return cls(text=message, is_error=True)


@dataclass
class ToolResult:
    call_id: str
    name: str
    output: ToolOutput

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "name": self.name,
            "text": self.output.text,
            "is_error": self.output.is_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolResult:
        return cls(
            call_id=data["call_id"],
            name=data["name"],
            output=ToolOutput(text=data.get("text", ""), is_error=data.get("is_error", False)),
        )


@dataclass
class ToolDefinition:
    """What the model is told about a tool, plus what the gate needs to know."""

    name: str
    description: str
    input_schema: dict[str, Any]
    modalities: frozenset[Modality] = frozenset({Modality.TEXT})
    side_effecting: bool = False


# ---------------------------------------------------------------------------
# Usage and reasoning
# ---------------------------------------------------------------------------


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0
    cost: float | None = None

    def __add__(self, other: Usage) -> Usage:
        cost = None
        if self.cost is not None or other.cost is not None:
            cost = (self.cost or 0.0) + (other.cost or 0.0)
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cached_tokens=self.cached_tokens + other.cached_tokens,
            cost=cost,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cached_tokens": self.cached_tokens,
            "cost": self.cost,
        }


@dataclass
class ReasoningDetail:
    """A reasoning/thinking fragment; signature is vendor-opaque."""

    text: str = ""
    type: str = "reasoning.text"
    signature: str | None = None
    index: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text, "signature": self.signature, "index": self.index}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReasoningDetail:
        return cls(
            text=data.get("text", ""),
            type=data.get("type", "reasoning.text"),
            signature=data.get("signature"),
            index=data.get("index", 0),
        )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass
class MessageDelta:
    """One decoded streaming event, already in canonical terms."""

    content: str = ""
    reasoning: str = ""
    reasoning_details: list[ReasoningDetail] = field(default_factory=list)
    tool_call_parts: list[ToolCallPart] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: FinishReason | None = None


@dataclass
class ChatCompletionMessage:
    """Canonical model reply."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    finish_reason: FinishReason | None = None
    reasoning: str = ""
    reasoning_details: list[ReasoningDetail] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.content.strip() or self.tool_calls or self.reasoning or self.reasoning_details)


@dataclass
class ContextMessage:
    """One entry of a Context.

    A TOOL message carries exactly one ToolResult; an ASSISTANT message may
    carry tool calls. Other roles carry text only.
    """

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_result: ToolResult | None = None
    reasoning_details: list[ReasoningDetail] = field(default_factory=list)
    model: str | None = None

    @classmethod
    def system(cls, content: str) -> ContextMessage:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> ContextMessage:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: list[ToolCall] | None = None,
        reasoning_details: list[ReasoningDetail] | None = None,
        model: str | None = None,
    ) -> ContextMessage:
        return cls(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=list(tool_calls or []),
            reasoning_details=list(reasoning_details or []),
            model=model,
        )

    @classmethod
    def tool(cls, result: ToolResult) -> ContextMessage:
        return cls(role=Role.TOOL, content=result.output.text, tool_result=result)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def is_tool_result(self) -> bool:
        return self.role == Role.TOOL

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [c.to_dict() for c in self.tool_calls]
        if self.tool_result is not None:
            data["tool_result"] = self.tool_result.to_dict()
        if self.reasoning_details:
            data["reasoning_details"] = [r.to_dict() for r in self.reasoning_details]
        if self.model:
            data["model"] = self.model
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextMessage:
        result = data.get("tool_result")
        return cls(
            role=Role(data["role"]),
            content=data.get("content", ""),
            tool_calls=[ToolCall.from_dict(c) for c in data.get("tool_calls", [])],
            tool_result=ToolResult.from_dict(result) if result else None,
            reasoning_details=[ReasoningDetail.from_dict(r) for r in data.get("reasoning_details", [])],
            model=data.get("model"),
        )


@dataclass
class Context:
    """Ordered message history for one conversation.

    Append-only during a turn; only compaction rewrites it.
    """

    conversation_id: str | None = None
    messages: list[ContextMessage] = field(default_factory=list)
    usage: Usage | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "messages": [m.to_dict() for m in self.messages],
            "usage": self.usage.to_dict() if self.usage else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Context:
        usage = data.get("usage")
        return cls(
            conversation_id=data.get("conversation_id"),
            messages=[ContextMessage.from_dict(m) for m in data.get("messages", [])],
            usage=Usage(**usage) if usage else None,
        )


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@dataclass
class ConversationMetrics:
    started_at: datetime | None = None
    finished_at: datetime | None = None
    tool_calls: int = 0
    files_changed: list[str] = field(default_factory=list)

    def record_file_change(self, path: str) -> None:
        if path not in self.files_changed:
            self.files_changed.append(path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "tool_calls": self.tool_calls,
            "files_changed": list(self.files_changed),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationMetrics:
        started = data.get("started_at")
        finished = data.get("finished_at")
        return cls(
            started_at=datetime.fromisoformat(started) if started else None,
            finished_at=datetime.fromisoformat(finished) if finished else None,
            tool_calls=data.get("tool_calls", 0),
            files_changed=list(data.get("files_changed", [])),
        )


@dataclass
class Conversation:
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    context: Context | None = None
    metrics: ConversationMetrics = field(
        default_factory=lambda: ConversationMetrics(started_at=datetime.now(UTC))
    )
    title: str | None = None


def set_conversation_id(conversation: Conversation) -> Conversation:
    """Stamp the conversation's id onto its context, creating one if absent.

    Idempotent: applying it twice yields the same conversation as applying it once.
    """
    context = conversation.context or Context()
    return replace(conversation, context=replace(context, conversation_id=conversation.id))
