"""Context compaction: replace old history with one summary message.

The evicted range starts at the first assistant message and stops short of
the most recent messages. Its end is moved back until it sits on a turn
edge, so a tool call and its results are always on the same side of the
boundary. The summary comes from the model when possible and from a local
digest when the model call fails.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Any, Protocol

from anvil.config import Settings
from anvil.models import Context, ContextMessage, ReasoningDetail, Role

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """\
You are a conversation summarizer for a coding agent. Output ONLY a structured summary.
Keep exact file paths, function names, commands and error messages.

## Goal
[1-2 sentences]

## Progress
- [Completed work, files changed, commands run and their outcome]

## Key Decisions
- [Decision and rationale]

## Critical Context
- [Paths, errors, APIs, anything the agent must not forget]

## Next Steps
1. [Ordered list]
"""

_SUMMARY_OPEN = "<summary>"
_SUMMARY_CLOSE = "</summary>"


class Summarizer(Protocol):
    """Produces summary text for a slice of history (provider call behind retry)."""

    async def __call__(self, system_prompt: str, transcript: str) -> str: ...


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """chars/4 heuristic, calibrated against reported prompt tokens (EMA, alpha=0.1)."""

    def __init__(self) -> None:
        self._ratio: float = 0.25
        self._samples: int = 0

    @property
    def ratio(self) -> float:
        return self._ratio

    @property
    def samples(self) -> int:
        return self._samples

    def estimate(self, text: str) -> int:
        return max(1, int(len(text) * self._ratio))

    @staticmethod
    def message_chars(message: ContextMessage) -> int:
        chars = len(message.content)
        for call in message.tool_calls:
            chars += len(call.name) + len(json.dumps(call.arguments))
        for detail in message.reasoning_details:
            chars += len(detail.text)
        return chars

    def context_chars(self, context: Context) -> int:
        return sum(self.message_chars(m) for m in context.messages)

    def estimate_context(self, context: Context) -> int:
        return sum(int(self.message_chars(m) * self._ratio) + 4 for m in context.messages)

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


# ------------------------------------------------------------------
# Boundary selection
# ------------------------------------------------------------------


@dataclass
class CompactionConfig:
    enabled: bool = True
    token_threshold: int = 100_000
    retention_window: int = 6
    eviction_window: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> CompactionConfig:
        return cls(
            enabled=settings.compaction_enabled,
            token_threshold=settings.compaction_token_threshold,
            retention_window=settings.compaction_retention_window,
            eviction_window=settings.compaction_eviction_window,
        )


def find_eviction_range(
    messages: list[ContextMessage], retention_window: int, eviction_window: float
) -> tuple[int, int] | None:
    """Inclusive (start, end) of the messages to summarize, or None.

    The end is the smaller of the retention bound (keep the last N messages)
    and the eviction bound (a fraction of all messages), then stepped back
    until it ends a turn: not on a message with tool calls, and not right
    before a tool result.
    """
    start = next((i for i, m in enumerate(messages) if m.role == Role.ASSISTANT), None)
    if start is None:
        return None

    total = len(messages)
    retain_end = total - retention_window - 1
    evict_end = start + max(1, math.ceil(total * eviction_window)) - 1
    end = min(retain_end, evict_end)

    while end >= start and (
        messages[end].has_tool_calls or (end + 1 < total and messages[end + 1].is_tool_result)
    ):
        end -= 1

    if end < start:
        return None
    return start, end


def tool_pairing_intact(messages: list[ContextMessage]) -> bool:
    """Every tool call has a result after it, and every result follows its call."""
    seen_calls: set[str] = set()
    results: set[str] = set()
    for message in messages:
        for call in message.tool_calls:
            seen_calls.add(call.call_id)
        if message.tool_result is not None:
            if message.tool_result.call_id not in seen_calls:
                return False
            results.add(message.tool_result.call_id)
    return seen_calls <= results


def serialize_for_summary(messages: list[ContextMessage]) -> str:
    """Readable transcript of a history slice."""
    lines = []
    for message in messages:
        if message.role == Role.TOOL and message.tool_result is not None:
            status = "error" if message.tool_result.output.is_error else "ok"
            lines.append(f"**Tool result ({message.tool_result.name}, {status}):** {message.content}")
            continue
        role = message.role.value.capitalize()
        text = message.content
        for call in message.tool_calls:
            text += f"\n[tool call {call.name} {json.dumps(call.arguments)}]"
        lines.append(f"**{role}:** {text}")
    return "\n\n".join(lines)


def local_summary(messages: list[ContextMessage]) -> str:
    """Deterministic digest used when the model cannot summarize."""
    lines = [f"{len(messages)} earlier messages were compacted."]
    for message in messages:
        if message.role == Role.TOOL and message.tool_result is not None:
            status = "failed" if message.tool_result.output.is_error else "succeeded"
            lines.append(f"- tool {message.tool_result.name} {status}")
        elif message.tool_calls:
            names = ", ".join(c.name for c in message.tool_calls)
            lines.append(f"- assistant called: {names}")
        elif message.content:
            snippet = message.content.strip().replace("\n", " ")[:200]
            lines.append(f"- {message.role.value}: {snippet}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# Manager
# ------------------------------------------------------------------


class CompactionManager:
    """Decides when to compact and rewrites the Context when it does."""

    def __init__(
        self,
        config: CompactionConfig,
        summarize: Summarizer,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self.config = config
        self._summarize = summarize
        self.estimator = estimator or TokenEstimator()

    def token_usage(self, context: Context) -> int:
        """Best available size of the context in tokens."""
        estimate = self.estimator.estimate_context(context)
        if context.usage is not None and context.usage.prompt_tokens:
            return max(estimate, context.usage.prompt_tokens)
        return estimate

    def should_compact(self, context: Context) -> bool:
        if not self.config.enabled:
            return False
        return self.token_usage(context) > self.config.token_threshold

    async def compact(self, context: Context) -> Context:
        """Return a new Context with the eviction range replaced by a summary.

        The input context is not modified. Returns it unchanged when there
        is nothing that can be evicted.
        """
        messages = context.messages
        bounds = find_eviction_range(messages, self.config.retention_window, self.config.eviction_window)
        if bounds is None:
            logger.info("Compaction skipped: no evictable range in %d messages", len(messages))
            return context

        start, end = bounds
        evicted = messages[start : end + 1]
        if not tool_pairing_intact(evicted):
            logger.error("Compaction skipped: range %d-%d would split a tool call from its result", start, end)
            return context
        started = time.monotonic()

        try:
            summary = (await self._summarize(SUMMARY_SYSTEM_PROMPT, serialize_for_summary(evicted))).strip()
            if not summary:
                raise ValueError("empty summary")
        except Exception as e:
            logger.error("Compaction summary failed: %s - using local digest", e)
            summary = local_summary(evicted)

        survivors = [self._copy(m) for m in messages[end + 1 :]]
        self._carry_reasoning(evicted, survivors)

        summary_message = ContextMessage.user(
            f"{_SUMMARY_OPEN}\nSummary of earlier conversation:\n\n{summary}\n{_SUMMARY_CLOSE}"
        )
        compacted = replace(
            context,
            messages=[*messages[:start], summary_message, *survivors],
            usage=None,
        )

        logger.info(
            "Compacted conversation %s: %d messages -> %d (evicted %d-%d, %d ms)",
            context.conversation_id,
            len(messages),
            len(compacted.messages),
            start,
            end,
            int((time.monotonic() - started) * 1000),
        )
        return compacted

    @staticmethod
    def _copy(message: ContextMessage) -> ContextMessage:
        return replace(message, reasoning_details=list(message.reasoning_details))

    @staticmethod
    def _carry_reasoning(evicted: list[ContextMessage], survivors: list[ContextMessage]) -> None:
        """Move the last evicted reasoning onto the first surviving assistant message."""
        last: list[ReasoningDetail] = []
        for message in evicted:
            if message.reasoning_details:
                last = message.reasoning_details
        if not last:
            return
        for message in survivors:
            if message.role == Role.ASSISTANT:
                if not message.reasoning_details:
                    message.reasoning_details = list(last)
                return


def summarize_with(call: Any, model: str, max_tokens: int) -> Summarizer:
    """Adapter: a `chat(ChatRequest)` coroutine function -> Summarizer."""
    from anvil.provider.base import ChatRequest

    async def summarize(system_prompt: str, transcript: str) -> str:
        request = ChatRequest(
            model=model,
            messages=[ContextMessage.system(system_prompt), ContextMessage.user(transcript)],
            max_tokens=max_tokens,
        )
        reply = await call(request)
        return reply.content

    return summarize
