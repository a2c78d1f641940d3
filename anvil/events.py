"""Progress events and the human decision channel.

The orchestrator never talks to a UI directly. It emits ChatEvents through
an injected async callable, and when a Confirm is needed it yields a
PendingDecision on the DecisionChannel and awaits the driver's answer.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    TEXT = "text"
    REASONING = "reasoning"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_END = "tool_call_end"
    TITLE = "title"
    RETRY_ATTEMPT = "retry_attempt"
    USAGE = "usage"
    COMPACTION = "compaction"
    CONFIRM_REQUEST = "confirm_request"
    POLICY_UPDATED = "policy_updated"
    INTERRUPT = "interrupt"
    TASK_COMPLETE = "task_complete"
    ERROR = "error"


@dataclass
class ChatEvent:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    conversation_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "conversation_id": self.conversation_id,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[ChatEvent], Awaitable[None]]


async def discard_event(event: ChatEvent) -> None:
    """Default sink when nobody is listening."""
    logger.debug("Discarding event %s", event.type)


class EventStream:
    """Single-consumer queue of ChatEvents for one running turn.

    The producer calls emit(); the consumer iterates until close().
    """

    _CLOSED = object()

    def __init__(self, conversation_id: str | None = None, max_queue: int = 1000) -> None:
        self.conversation_id = conversation_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_queue)
        self._closed = False

    async def emit(self, event: ChatEvent) -> None:
        if self._closed:
            logger.debug("Event after close dropped: %s", event.type)
            return
        if event.conversation_id is None:
            event.conversation_id = self.conversation_id
        await self._queue.put(event)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(self._CLOSED)

    async def __aiter__(self) -> AsyncIterator[ChatEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


# ---------------------------------------------------------------------------
# Human decisions
# ---------------------------------------------------------------------------


class ConfirmChoice(StrEnum):
    ACCEPT = "accept"
    REJECT = "reject"
    ACCEPT_AND_REMEMBER = "accept_and_remember"


@dataclass
class PendingDecision:
    """A Confirm waiting on the driver. Resolved exactly once."""

    decision_id: str
    operation: dict[str, Any]
    future: asyncio.Future[ConfirmChoice]


class DecisionChannel:
    """Request/response channel between the tool gate and the driver.

    request() publishes a CONFIRM_REQUEST event and suspends until resolve()
    is called with the same decision id. Cancelling the waiting task
    abandons the decision.
    """

    def __init__(self, emit: EventHandler = discard_event) -> None:
        self._emit = emit
        self._pending: dict[str, PendingDecision] = {}

    def bind(self, emit: EventHandler) -> None:
        """Route confirm requests to a new sink (one per turn)."""
        self._emit = emit

    async def request(self, operation: dict[str, Any]) -> ConfirmChoice:
        loop = asyncio.get_running_loop()
        decision = PendingDecision(
            decision_id=str(uuid.uuid4()),
            operation=operation,
            future=loop.create_future(),
        )
        self._pending[decision.decision_id] = decision
        try:
            await self._emit(
                ChatEvent(
                    type=EventType.CONFIRM_REQUEST,
                    data={"decision_id": decision.decision_id, "operation": operation},
                )
            )
            return await decision.future
        finally:
            self._pending.pop(decision.decision_id, None)

    def resolve(self, decision_id: str, choice: ConfirmChoice) -> bool:
        """Answer a pending decision. Returns False if it is unknown or already settled."""
        decision = self._pending.get(decision_id)
        if decision is None or decision.future.done():
            return False
        decision.future.set_result(choice)
        return True

    def pending(self) -> list[PendingDecision]:
        return list(self._pending.values())
