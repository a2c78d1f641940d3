"""SessionManager - one running turn per conversation.

Each turn runs in its own task and publishes progress on an EventStream.
Turns on different conversations run in parallel; a second turn on a busy
conversation is refused. The decision channel of a running turn is kept
here so the HTTP layer can answer Confirm requests.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import httpx

from anvil.errors import AnvilError
from anvil.events import ChatEvent, ConfirmChoice, DecisionChannel, EventHandler, EventStream, EventType
from anvil.models import Conversation
from anvil.orchestrator import Orchestrator
from anvil.storage.conversations import ConversationStore

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[EventHandler, DecisionChannel], Awaitable[Orchestrator]]


class ConversationNotFoundError(LookupError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class TurnInProgressError(RuntimeError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"A turn is already running for conversation {conversation_id}")
        self.conversation_id = conversation_id


class SessionManager:
    def __init__(self, store: ConversationStore, factory: OrchestratorFactory) -> None:
        self._store = store
        self._factory = factory
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._channels: dict[str, DecisionChannel] = {}

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create(self, title: str | None = None) -> Conversation:
        conversation = Conversation(title=title)
        await self._store.save(conversation)
        logger.info("Created conversation %s", conversation.id)
        return conversation

    async def get(self, conversation_id: str) -> Conversation:
        conversation = await self._store.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def list_conversations(self, limit: int = 50) -> list[dict]:
        return await self._store.list_recent(limit)

    async def delete(self, conversation_id: str) -> None:
        """Cancel any running turn, then remove the conversation."""
        task = self._tasks.get(conversation_id)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if not await self._store.delete(conversation_id):
            raise ConversationNotFoundError(conversation_id)
        self._locks.pop(conversation_id, None)

    def is_running(self, conversation_id: str) -> bool:
        return conversation_id in self._tasks

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def start_turn(self, conversation_id: str, message: str) -> EventStream:
        """Start a turn in the background and return its event stream.

        Raises ConversationNotFoundError or TurnInProgressError.
        """
        if conversation_id in self._tasks:
            raise TurnInProgressError(conversation_id)
        conversation = await self.get(conversation_id)
        # Re-check: another request may have started while we were loading
        if conversation_id in self._tasks:
            raise TurnInProgressError(conversation_id)

        stream = EventStream(conversation_id)
        channel = DecisionChannel(stream.emit)
        self._channels[conversation_id] = channel
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        task = asyncio.create_task(
            self._run(conversation, message, stream, channel, lock),
            name=f"turn-{conversation_id}",
        )
        self._tasks[conversation_id] = task
        task.add_done_callback(lambda _: self._forget(conversation_id, stream))
        return stream

    def _forget(self, conversation_id: str, stream: EventStream) -> None:
        self._tasks.pop(conversation_id, None)
        self._channels.pop(conversation_id, None)
        # A task cancelled before its first step never ran its finally block
        asyncio.get_running_loop().create_task(stream.close())

    async def _run(
        self,
        conversation: Conversation,
        message: str,
        stream: EventStream,
        channel: DecisionChannel,
        lock: asyncio.Lock,
    ) -> None:
        orchestrator: Orchestrator | None = None
        async with lock:
            try:
                orchestrator = await self._factory(stream.emit, channel)
                await orchestrator.run(conversation, message)
            except asyncio.CancelledError:
                logger.info("Turn cancelled: conversation=%s", conversation.id)
                await stream.emit(ChatEvent(type=EventType.INTERRUPT, data={"reason": "cancelled"}))
                raise
            except (AnvilError, httpx.HTTPError) as e:
                # Fatal turn errors; the orchestrator has already reported those it raised
                if orchestrator is None:
                    logger.error("Turn setup failed: conversation=%s: %s", conversation.id, e)
                    await stream.emit(ChatEvent(type=EventType.ERROR, data={"message": str(e), "error": type(e).__name__}))
            except Exception as e:
                logger.exception("Turn crashed: conversation=%s", conversation.id)
                await stream.emit(ChatEvent(type=EventType.ERROR, data={"message": str(e), "error": type(e).__name__}))
            finally:
                if orchestrator is not None and orchestrator.conversation is not None:
                    await self._store.save(orchestrator.conversation)
                await stream.close()

    def cancel(self, conversation_id: str) -> bool:
        task = self._tasks.get(conversation_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def resolve(self, conversation_id: str, decision_id: str, choice: ConfirmChoice) -> bool:
        channel = self._channels.get(conversation_id)
        if channel is None:
            return False
        return channel.resolve(decision_id, choice)

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
