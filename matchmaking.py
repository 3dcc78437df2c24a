"""
Matchmaking for anonymous random chats

start_search pairs the caller with a waiting session on the same topic, or,
once a waiting session has aged past the fallback window, with a session on
any topic. When neither exists the caller becomes the waiting session.

Joining a waiting session is a conditional update on the store (still
searching, still exactly one participant). Losing that race is not an
error: the caller simply opens its own search.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import settings
from errors import ConflictError, ValidationError
from notifier import PARTNER_FOUND, Notifier
from schemas import (
    ChatMessage,
    Participant,
    RandomChat,
    SessionStatus,
    SessionSummary,
    Topic,
    to_summary,
    utc_now,
)
from session_store import SessionStore

logger = logging.getLogger(__name__)

MATCH_MESSAGE = "Partner found! Say hello! 👋"
FALLBACK_MATCH_MESSAGE = (
    "We couldn't find anyone for your topic, so we connected you with someone "
    "interested in \"{topic}\". Say hello! 👋"
)
SEARCHING_MESSAGE = "Looking for someone interested in {topic}..."


def parse_topic(value) -> Topic:
    if isinstance(value, Topic):
        return value
    try:
        return Topic(value)
    except ValueError:
        allowed = ", ".join(t.value for t in Topic)
        raise ValidationError(f"Invalid topic '{value}'. Must be one of: {allowed}")


class MatchmakingEngine:
    def __init__(
        self,
        store: SessionStore,
        notifier: Notifier,
        stale_after: Optional[timedelta] = None,
        fallback_after: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.notifier = notifier
        self.stale_after = stale_after or timedelta(seconds=settings.STALE_SESSION_SECONDS)
        self.fallback_after = fallback_after or timedelta(seconds=settings.FALLBACK_MATCH_SECONDS)
        self.clock = clock

    async def start_search(self, user_id: str, topic, is_anonymous: bool = True) -> SessionSummary:
        """
        Find a partner for user_id or start waiting for one

        Args:
            user_id: Authenticated caller
            topic: One of the Topic values
            is_anonymous: Participant anonymity flag

        Returns:
            SessionSummary with status "searching" or "active" (partner set)

        Raises:
            ValidationError: Unknown topic
            ConflictError: Caller already has a recent active session
        """
        topic = parse_topic(topic)
        now = self.clock()

        existing = self.store.find_open_for_user(user_id)
        if existing is not None:
            if existing.status == SessionStatus.SEARCHING:
                return to_summary(existing, user_id, message="Already searching for a partner...")
            if now - existing.updated_at <= self.stale_after:
                raise ConflictError("You are already in a chat session", session_id=existing.session_id)
            self._reap(existing, now)

        candidate = self.store.find_waiting(user_id, topic=topic)
        fallback = False
        if candidate is None:
            candidate = self.store.find_waiting(user_id, started_before=now - self.fallback_after)
            fallback = candidate is not None

        if candidate is not None:
            matched = await self._join(candidate, user_id, is_anonymous, fallback, now)
            if matched is not None:
                return to_summary(matched, user_id, message="Partner found!")
            logger.warning(
                f"Lost match race for session {candidate.session_id}, "
                f"user {user_id} opens a new search"
            )

        session = self.open_search(user_id, topic, is_anonymous)
        return to_summary(session, user_id, message="Searching for a partner...")

    def open_search(self, user_id: str, topic: Topic, is_anonymous: bool = True, text: Optional[str] = None) -> RandomChat:
        """Create a waiting session owned by user_id without looking for a partner"""
        now = self.clock()
        session = RandomChat(
            topic=topic,
            status=SessionStatus.SEARCHING,
            participants=[Participant(user_id=user_id, is_anonymous=is_anonymous, joined_at=now)],
            messages=[ChatMessage.system(text or SEARCHING_MESSAGE.format(topic=topic.value), now)],
            is_anonymous=is_anonymous,
            started_at=now,
            updated_at=now,
        )
        self.store.insert(session)
        logger.info(f"Session {session.session_id} created: {user_id} searching for {topic.value}")
        return session

    async def _join(self, candidate: RandomChat, user_id: str, is_anonymous: bool, fallback: bool, now: datetime) -> Optional[RandomChat]:
        if fallback:
            text = FALLBACK_MATCH_MESSAGE.format(topic=candidate.topic.value)
        else:
            text = MATCH_MESSAGE

        matched = self.store.add_second_participant(
            candidate.session_id,
            Participant(user_id=user_id, is_anonymous=is_anonymous, joined_at=now),
            ChatMessage.system(text, now),
            now,
        )
        if matched is None:
            return None

        waiting_user = matched.participants[0].user_id
        logger.info(
            f"Session {matched.session_id} matched {waiting_user} with {user_id}"
            f"{' (fallback from ' + matched.topic.value + ')' if fallback else ''}"
        )

        for viewer, partner in ((waiting_user, user_id), (user_id, waiting_user)):
            await self.notifier.emit(viewer, PARTNER_FOUND, {
                "session_id": matched.session_id,
                "topic": matched.topic.value,
                "fallback": fallback,
                "partner": {"id": partner, "is_anonymous": True},
            })
        return matched

    def _reap(self, session: RandomChat, now: datetime) -> None:
        ended = self.store.end_session(session.session_id, SessionStatus.ACTIVE, now)
        if ended is not None:
            logger.info(
                f"Reaped stale session {session.session_id} "
                f"(idle since {session.updated_at.isoformat()})"
            )
