"""
Unit tests for MatchmakingEngine

Tests:
- Waiting session creation and idempotent re-search
- Exact-topic matching and partner_found events
- Fallback matching across topics after the fallback window
- Conflict and lazy reaping of stale active sessions
- Concurrent searches
"""

import asyncio

import pytest

from errors import ConflictError, ValidationError
from notifier import PARTNER_FOUND
from schemas import SessionStatus, Topic


@pytest.mark.unit
@pytest.mark.asyncio
class TestStartSearch:

    async def test_first_searcher_waits(self, service, store):
        summary = await service.start_search("alice", "books")

        assert summary.status == SessionStatus.SEARCHING
        assert summary.partner is None
        session = store.get(summary.session_id)
        assert [p.user_id for p in session.participants] == ["alice"]
        assert session.messages[0].is_system
        assert "books" in session.messages[0].content

    async def test_session_id_format(self, service):
        summary = await service.start_search("alice", "books")
        prefix, millis, suffix = summary.session_id.split("_")
        assert prefix == "chat"
        assert millis.isdigit()
        assert len(suffix) == 9

    async def test_repeat_search_while_waiting_is_noop(self, service, store):
        first = await service.start_search("alice", "books")
        second = await service.start_search("alice", "music")

        assert second.session_id == first.session_id
        assert second.status == SessionStatus.SEARCHING
        assert len(store.all()) == 1

    async def test_invalid_topic(self, service, store):
        with pytest.raises(ValidationError):
            await service.start_search("alice", "cooking")
        assert store.all() == []

    async def test_exact_topic_match(self, service, store, connect):
        alice_conn = connect("alice")
        bob_conn = connect("bob")

        waiting = await service.start_search("alice", "books")
        matched = await service.start_search("bob", Topic.BOOKS)

        assert matched.session_id == waiting.session_id
        assert matched.status == SessionStatus.ACTIVE
        assert matched.partner.id == "alice"
        assert matched.partner.name == "Anonymous"

        session = store.get(waiting.session_id)
        assert [p.user_id for p in session.participants] == ["alice", "bob"]
        assert session.messages[-1].is_system
        assert session.messages[-1].content.startswith("Partner found!")

        assert alice_conn.events(PARTNER_FOUND) == [{
            "session_id": waiting.session_id,
            "topic": "books",
            "fallback": False,
            "partner": {"id": "bob", "is_anonymous": True},
        }]
        assert bob_conn.events(PARTNER_FOUND)[0]["partner"]["id"] == "alice"

    async def test_does_not_match_other_topic_before_fallback(self, service, clock):
        await service.start_search("alice", "movies")
        clock.advance(30)
        summary = await service.start_search("bob", "books")

        assert summary.status == SessionStatus.SEARCHING
        assert summary.partner is None

    async def test_fallback_match_after_window(self, service, store, clock):
        movies = await service.start_search("alice", "movies")

        clock.advance(30)
        early = await service.start_search("bob", "books")
        assert early.status == SessionStatus.SEARCHING
        await service.end_chat(early.session_id, "bob")

        clock.advance(35)
        late = await service.start_search("carol", "books")

        assert late.session_id == movies.session_id
        assert late.status == SessionStatus.ACTIVE
        session = store.get(movies.session_id)
        assert session.topic == Topic.MOVIES
        assert '"movies"' in session.messages[-1].content
        assert "couldn't find anyone" in session.messages[-1].content

    async def test_exact_match_preferred_over_fallback(self, service, clock):
        await service.start_search("alice", "movies")
        clock.advance(10)
        bob = await service.start_search("bob", "books")
        assert bob.status == SessionStatus.SEARCHING

        clock.advance(80)
        summary = await service.start_search("carol", "books")

        assert summary.session_id == bob.session_id
        assert summary.partner.id == "bob"

    async def test_never_matches_self(self, service, clock):
        first = await service.start_search("alice", "books")
        clock.advance(120)
        again = await service.start_search("alice", "books")
        assert again.session_id == first.session_id
        assert again.status == SessionStatus.SEARCHING

    async def test_conflict_when_recently_active(self, service, clock):
        await service.start_search("alice", "books")
        active = await service.start_search("bob", "books")
        clock.advance(60)

        with pytest.raises(ConflictError) as exc_info:
            await service.start_search("alice", "books")
        assert exc_info.value.session_id == active.session_id

    async def test_stale_active_session_is_reaped(self, service, store, clock):
        await service.start_search("alice", "books")
        active = await service.start_search("bob", "books")

        clock.advance(121)
        summary = await service.start_search("alice", "books")

        old = store.get(active.session_id)
        assert old.status == SessionStatus.ENDED
        assert old.ended_at == clock.now
        assert summary.session_id != active.session_id
        assert summary.status == SessionStatus.SEARCHING

    async def test_message_activity_keeps_session_fresh(self, service, clock):
        await service.start_search("alice", "books")
        active = await service.start_search("bob", "books")

        clock.advance(100)
        await service.send_message(active.session_id, "bob", "still here")
        clock.advance(100)

        with pytest.raises(ConflictError):
            await service.start_search("alice", "books")

    async def test_concurrent_searches_pair_everyone_once(self, service, store):
        users = [f"user{i}" for i in range(9)]

        await asyncio.gather(*(service.start_search(u, "music") for u in users))

        sessions = store.all()
        active = [s for s in sessions if s.status == SessionStatus.ACTIVE]
        searching = [s for s in sessions if s.status == SessionStatus.SEARCHING]
        assert len(active) == len(users) // 2
        assert len(searching) == 1
        for s in active:
            ids = [p.user_id for p in s.participants]
            assert len(ids) == 2 and len(set(ids)) == 2

        seen = [p.user_id for s in sessions for p in s.participants]
        assert sorted(seen) == sorted(users)
