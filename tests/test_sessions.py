"""Tests for SessionManager: background turns, streaming, cancellation and decisions."""

import asyncio

import pytest

from anvil.api.sessions import ConversationNotFoundError, SessionManager, TurnInProgressError
from anvil.errors import AuthInProgressError
from anvil.events import ConfirmChoice, EventType
from anvil.orchestrator import Orchestrator
from anvil.provider import RetryConfig


from tests.conftest import BlockingProvider, ScriptedProvider, make_agent, text_reply, tool_reply


def _factory(provider, registry, workdir, store):
    async def factory(emit, channel):
        return Orchestrator(
            chat=provider.chat,
            registry=registry,
            agent=make_agent(),
            cwd=str(workdir),
            retry=RetryConfig(initial_backoff_ms=1, jitter=False),
            emit=emit,
            channel=channel,
            persist=store.save,
        )

    return factory


class TestConversations:
    @pytest.mark.asyncio
    async def test_create_get_list_delete(self, store):
        sessions = SessionManager(store, factory=None)
        conversation = await sessions.create(title="First")
        assert (await sessions.get(conversation.id)).title == "First"
        assert [c["id"] for c in await sessions.list_conversations()] == [conversation.id]
        await sessions.delete(conversation.id)
        with pytest.raises(ConversationNotFoundError):
            await sessions.get(conversation.id)
        with pytest.raises(ConversationNotFoundError):
            await sessions.delete(conversation.id)


class TestTurns:
    @pytest.mark.asyncio
    async def test_turn_streams_and_persists(self, store, registry, workdir):
        provider = ScriptedProvider([text_reply("Hello there")])
        sessions = SessionManager(store, _factory(provider, registry, workdir, store))
        conversation = await sessions.create()

        stream = await sessions.start_turn(conversation.id, "hi")
        events = [event async for event in stream]

        assert [e.type for e in events][-1] == EventType.TASK_COMPLETE
        assert any(e.type == EventType.TEXT and e.data["content"] == "Hello there" for e in events)
        assert all(e.conversation_id == conversation.id for e in events)
        saved = await sessions.get(conversation.id)
        assert [m.content for m in saved.context.messages][-2:] == ["hi", "Hello there"]
        await asyncio.sleep(0)
        assert not sessions.is_running(conversation.id)

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, store):
        sessions = SessionManager(store, factory=None)
        with pytest.raises(ConversationNotFoundError):
            await sessions.start_turn("missing", "hi")

    @pytest.mark.asyncio
    async def test_second_turn_refused_while_running(self, store, registry, workdir):
        provider = BlockingProvider()
        sessions = SessionManager(store, _factory(provider, registry, workdir, store))
        conversation = await sessions.create()
        stream = await sessions.start_turn(conversation.id, "one")
        await provider.called.wait()

        with pytest.raises(TurnInProgressError):
            await sessions.start_turn(conversation.id, "two")

        provider.release.set()
        assert [e async for e in stream][-1].type == EventType.TASK_COMPLETE

    @pytest.mark.asyncio
    async def test_cancel(self, store, registry, workdir):
        provider = BlockingProvider()
        sessions = SessionManager(store, _factory(provider, registry, workdir, store))
        conversation = await sessions.create()
        stream = await sessions.start_turn(conversation.id, "hang")
        await provider.called.wait()

        assert sessions.cancel(conversation.id) is True
        events = [e async for e in stream]
        assert events[-1].type == EventType.INTERRUPT
        assert events[-1].data == {"reason": "cancelled"}
        await asyncio.sleep(0)
        assert sessions.cancel(conversation.id) is False
        # the user message committed at turn start survives
        saved = await sessions.get(conversation.id)
        assert saved.context.messages[-1].content == "hang"

    @pytest.mark.asyncio
    async def test_confirm_answered_through_manager(self, store, registry, workdir):
        provider = ScriptedProvider(
            [tool_reply(("c1", "write", {"path": "out.txt", "content": "data"})), text_reply("written")]
        )
        sessions = SessionManager(store, _factory(provider, registry, workdir, store))
        conversation = await sessions.create()
        stream = await sessions.start_turn(conversation.id, "write out.txt")

        types = []
        async for event in stream:
            types.append(event.type)
            if event.type == EventType.CONFIRM_REQUEST:
                assert event.data["operation"]["kind"] == "write"
                assert sessions.resolve(conversation.id, event.data["decision_id"], ConfirmChoice.ACCEPT)

        assert types[-1] == EventType.TASK_COMPLETE
        assert (workdir / "out.txt").read_text() == "data"
        assert sessions.resolve(conversation.id, "stale", ConfirmChoice.ACCEPT) is False

    @pytest.mark.asyncio
    async def test_setup_failure_reported(self, store):
        async def factory(emit, channel):
            raise AuthInProgressError()

        sessions = SessionManager(store, factory)
        conversation = await sessions.create()
        events = [e async for e in await sessions.start_turn(conversation.id, "hi")]
        assert [e.type for e in events] == [EventType.ERROR]
        assert events[0].data["error"] == "AuthInProgressError"

    @pytest.mark.asyncio
    async def test_close_cancels_running_turns(self, store, registry, workdir):
        provider = BlockingProvider()
        sessions = SessionManager(store, _factory(provider, registry, workdir, store))
        conversation = await sessions.create()
        stream = await sessions.start_turn(conversation.id, "hang")
        await provider.called.wait()
        await sessions.close()
        assert [e async for e in stream][-1].type == EventType.INTERRUPT
