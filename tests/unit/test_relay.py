"""
Unit tests for MessageRelay
"""

import pytest

from errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from notifier import RANDOM_CHAT_MESSAGE, RANDOM_CHAT_STOPPED_TYPING, RANDOM_CHAT_TYPING
from schemas import SessionStatus


async def _pair(service, topic="books"):
    await service.start_search("alice", topic)
    summary = await service.start_search("bob", topic)
    return summary.session_id


@pytest.mark.unit
@pytest.mark.asyncio
class TestSendMessage:

    async def test_message_is_stored_and_pushed_to_partner(self, service, store, connect, clock):
        alice_conn = connect("alice")
        bob_conn = connect("bob")
        session_id = await _pair(service)

        message = await service.send_message(session_id, "alice", "  hi there  ")

        assert message.content == "hi there"
        assert message.sender_id == "alice"
        assert message.timestamp == clock.now
        stored = store.get(session_id).messages[-1]
        assert stored.content == "hi there"
        assert not stored.is_system

        pushed = bob_conn.events(RANDOM_CHAT_MESSAGE)
        assert len(pushed) == 1
        assert pushed[0]["session_id"] == session_id
        assert pushed[0]["message"]["content"] == "hi there"
        assert pushed[0]["message"]["sender_id"] == "alice"
        assert alice_conn.events(RANDOM_CHAT_MESSAGE) == []

    async def test_updates_last_activity(self, service, store, clock):
        session_id = await _pair(service)
        clock.advance(42)
        await service.send_message(session_id, "bob", "hello")
        assert store.get(session_id).updated_at == clock.now

    async def test_message_order_is_preserved(self, service, store):
        session_id = await _pair(service)
        for i in range(5):
            await service.send_message(session_id, "alice" if i % 2 else "bob", f"m{i}")
        contents = [m.content for m in store.get(session_id).messages if not m.is_system]
        assert contents == ["m0", "m1", "m2", "m3", "m4"]

    @pytest.mark.parametrize("content", ["", "   ", "x" * 1001])
    async def test_invalid_content(self, service, store, content):
        session_id = await _pair(service)
        before = len(store.get(session_id).messages)

        with pytest.raises(ValidationError):
            await service.send_message(session_id, "alice", content)
        assert len(store.get(session_id).messages) == before

    async def test_max_length_accepted(self, service):
        session_id = await _pair(service)
        message = await service.send_message(session_id, "alice", "x" * 1000)
        assert len(message.content) == 1000

    async def test_non_participant_forbidden(self, service, store):
        session_id = await _pair(service)
        before = len(store.get(session_id).messages)

        with pytest.raises(ForbiddenError):
            await service.send_message(session_id, "mallory", "hi")
        assert len(store.get(session_id).messages) == before

    async def test_searching_session_rejected(self, service, store):
        summary = await service.start_search("alice", "books")

        with pytest.raises(InvalidStateError):
            await service.send_message(summary.session_id, "alice", "anyone?")
        assert len(store.get(summary.session_id).messages) == 1

    async def test_ended_session_rejected(self, service, store):
        session_id = await _pair(service)
        await service.end_chat(session_id, "bob")
        before = len(store.get(session_id).messages)

        with pytest.raises(InvalidStateError):
            await service.send_message(session_id, "alice", "still there?")
        assert len(store.get(session_id).messages) == before
        assert store.get(session_id).status == SessionStatus.ENDED

    async def test_unknown_session(self, service):
        with pytest.raises(NotFoundError):
            await service.send_message("chat_0_missing", "alice", "hi")

    async def test_offline_partner_does_not_fail_send(self, service, store):
        session_id = await _pair(service)
        await service.send_message(session_id, "alice", "are you there")
        assert store.get(session_id).messages[-1].content == "are you there"


@pytest.mark.unit
@pytest.mark.asyncio
class TestTypingRelay:

    async def test_typing_events_reach_partner(self, service, connect):
        bob_conn = connect("bob")
        session_id = await _pair(service)

        assert await service.relay.relay_typing(session_id, "alice", True)
        assert await service.relay.relay_typing(session_id, "alice", False)

        assert bob_conn.events(RANDOM_CHAT_TYPING) == [{"session_id": session_id, "user_id": "alice"}]
        assert len(bob_conn.events(RANDOM_CHAT_STOPPED_TYPING)) == 1

    async def test_typing_from_outsider_is_ignored(self, service, connect):
        bob_conn = connect("bob")
        session_id = await _pair(service)

        assert not await service.relay.relay_typing(session_id, "mallory", True)
        assert not await service.relay.relay_typing("chat_0_missing", "alice", True)
        assert bob_conn.events(RANDOM_CHAT_TYPING) == []
