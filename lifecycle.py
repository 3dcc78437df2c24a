"""
Ending, skipping and reporting random chats

Transitions are conditional on the status observed just before the write,
so a session that changed underneath (matched, ended by the partner) is
re-read instead of overwritten.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from matchmaking import MatchmakingEngine
from moderation import ModerationService
from notifier import RANDOM_CHAT_ENDED, Notifier
from schemas import (
    RANDOM_CHAT_REPORT_REASONS,
    ChatMessage,
    RandomChat,
    ReportedItemType,
    ReportReason,
    SessionStatus,
    SessionSummary,
    to_summary,
    utc_now,
)
from session_store import SessionStore

logger = logging.getLogger(__name__)

ENDED_MESSAGE = "Chat ended."
SKIPPED_MESSAGE = "Chat ended - partner skipped."
PARTNER_LEFT_NOTICE = "Your chat partner has left the conversation."
NEW_SEARCH_MESSAGE = "Looking for a new partner interested in {topic}..."

MAX_END_ATTEMPTS = 3


class LifecycleManager:
    def __init__(
        self,
        store: SessionStore,
        notifier: Notifier,
        matchmaking: MatchmakingEngine,
        moderation: ModerationService,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.notifier = notifier
        self.matchmaking = matchmaking
        self.moderation = moderation
        self.clock = clock

    def _load_for(self, session_id: str, user_id: str) -> RandomChat:
        session = self.store.get(session_id)
        if session is None:
            raise NotFoundError("Chat session not found", session_id=session_id)
        if not session.has_participant(user_id):
            raise ForbiddenError("You are not a participant of this chat", session_id=session_id)
        return session

    async def _notify_partner_left(self, session: RandomChat, user_id: str) -> None:
        for p in session.participants:
            if p.user_id != user_id:
                await self.notifier.emit(p.user_id, RANDOM_CHAT_ENDED, {
                    "session_id": session.session_id,
                    "message": PARTNER_LEFT_NOTICE,
                })

    async def end_chat(self, session_id: str, user_id: str) -> Optional[RandomChat]:
        """
        End a searching or active session on behalf of user_id

        Idempotent: an unknown or already ended session is a successful no-op
        (returns the session as stored, or None when unknown).

        Raises:
            ForbiddenError: user_id is not a participant
        """
        for _ in range(MAX_END_ATTEMPTS):
            session = self.store.get(session_id)
            if session is None:
                logger.info(f"end_chat on unknown session {session_id} by {user_id}, nothing to do")
                return None
            if not session.has_participant(user_id):
                raise ForbiddenError("You are not a participant of this chat", session_id=session_id)
            if session.status == SessionStatus.ENDED:
                return session

            was_active = session.status == SessionStatus.ACTIVE
            now = self.clock()
            ended = self.store.end_session(
                session_id,
                session.status,
                now,
                leaving_user_id=user_id,
                system_message=ChatMessage.system(ENDED_MESSAGE, now) if was_active else None,
            )
            if ended is None:
                continue

            logger.info(f"Session {session_id} ended by {user_id} (was {session.status.value})")
            if was_active:
                await self._notify_partner_left(ended, user_id)
            return ended

        return self.store.get(session_id)

    async def skip_partner(self, session_id: str, user_id: str) -> SessionSummary:
        """
        End an active chat and immediately open a new search on its topic

        The new session is created directly, without matching, so the user
        just skipped cannot be paired straight back.

        Raises:
            NotFoundError, ForbiddenError
            InvalidStateError: Session is not active
        """
        session = self._load_for(session_id, user_id)
        if session.status != SessionStatus.ACTIVE:
            raise InvalidStateError(f"Chat session is {session.status.value}", session_id=session_id)

        now = self.clock()
        ended = self.store.end_session(
            session_id,
            SessionStatus.ACTIVE,
            now,
            leaving_user_id=user_id,
            system_message=ChatMessage.system(SKIPPED_MESSAGE, now),
        )
        if ended is None:
            raise InvalidStateError("Chat session is no longer active", session_id=session_id)

        await self._notify_partner_left(ended, user_id)

        me = ended.participant(user_id)
        fresh = self.matchmaking.open_search(
            user_id,
            ended.topic,
            is_anonymous=me.is_anonymous,
            text=NEW_SEARCH_MESSAGE.format(topic=ended.topic.value),
        )
        logger.info(f"Session {session_id} skipped by {user_id}, new search {fresh.session_id}")
        return to_summary(fresh, user_id, message="Skipped partner, searching for new one...")

    def report_session(self, session_id: str, reporter_id: str, reason, description: str) -> str:
        """
        Report the other participant of a session to moderation

        Allowed after the session ended; the session itself is never changed.

        Returns:
            Id of the created report

        Raises:
            ValidationError: Unknown reason, bad description, or nobody to report
            NotFoundError, ForbiddenError
            ConflictError: Already reported by this user
        """
        try:
            reason = ReportReason(reason)
        except ValueError:
            reason = None
        if reason not in RANDOM_CHAT_REPORT_REASONS:
            allowed = ", ".join(sorted(r.value for r in RANDOM_CHAT_REPORT_REASONS))
            raise ValidationError(f"Invalid reason. Must be one of: {allowed}", session_id=session_id)

        session = self._load_for(session_id, reporter_id)
        reported = session.partner_of(reporter_id)
        if reported is None:
            raise ValidationError("No other participant found to report", session_id=session_id)

        return self.moderation.submit_report(
            reporter_id=reporter_id,
            reported_item_type=ReportedItemType.USER,
            reported_item_id=reported.user_id,
            reason=reason,
            description=description,
            context=session_id,
        )
