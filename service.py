"""
Random chat service wiring

Builds the core components around one store and one notifier and adds the
read-side queries clients use to reconcile state after missed events.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from config import settings
from errors import ForbiddenError, NotFoundError, ValidationError
from lifecycle import LifecycleManager
from matchmaking import MatchmakingEngine
from moderation import ModerationService, ReportStore, get_report_store
from notifier import Notifier
from relay import MessageRelay
from schemas import MessagePage, RandomChat, SessionSummary, SessionView, to_summary, to_view, utc_now
from session_store import SessionStore, get_session_store

logger = logging.getLogger(__name__)

MAX_HISTORY = 50


class RandomChatService:
    def __init__(
        self,
        store: SessionStore,
        notifier: Notifier,
        report_store: ReportStore,
        clock: Callable[[], datetime] = utc_now,
        stale_after: Optional[timedelta] = None,
        fallback_after: Optional[timedelta] = None
    ):
        self.store = store
        self.notifier = notifier
        self.moderation = ModerationService(report_store)
        self.matchmaking = MatchmakingEngine(
            store, notifier, stale_after=stale_after, fallback_after=fallback_after, clock=clock
        )
        self.relay = MessageRelay(store, notifier, clock=clock)
        self.lifecycle = LifecycleManager(store, notifier, self.matchmaking, self.moderation, clock=clock)

    # Commands

    async def start_search(self, user_id: str, topic, is_anonymous: bool = True) -> SessionSummary:
        return await self.matchmaking.start_search(user_id, topic, is_anonymous)

    async def send_message(self, session_id: str, user_id: str, content: str):
        return await self.relay.send_message(session_id, user_id, content)

    async def end_chat(self, session_id: str, user_id: str) -> Optional[RandomChat]:
        return await self.lifecycle.end_chat(session_id, user_id)

    async def skip_partner(self, session_id: str, user_id: str) -> SessionSummary:
        return await self.lifecycle.skip_partner(session_id, user_id)

    def report_session(self, session_id: str, reporter_id: str, reason, description: str) -> str:
        return self.lifecycle.report_session(session_id, reporter_id, reason, description)

    # Queries

    def get_session(self, session_id: str, user_id: str) -> SessionView:
        session = self.store.get(session_id)
        # Sessions are invisible to anyone outside them
        if session is None or not session.has_participant(user_id):
            raise NotFoundError("Chat session not found", session_id=session_id)
        return to_view(session, user_id)

    def get_active_session(self, user_id: str) -> Optional[SessionView]:
        session = self.store.find_open_for_user(user_id)
        if session is None:
            return None
        return to_view(session, user_id)

    def get_messages(self, session_id: str, user_id: str, offset: int = 0, limit: Optional[int] = None) -> MessagePage:
        limit = limit or settings.MESSAGE_PAGE_SIZE
        if offset < 0 or limit < 1 or limit > settings.MESSAGE_PAGE_SIZE * 4:
            raise ValidationError("Invalid offset or limit", session_id=session_id)

        session = self.store.get(session_id)
        if session is None:
            raise NotFoundError("Chat session not found", session_id=session_id)
        if not session.has_participant(user_id):
            raise ForbiddenError("You are not a participant of this chat", session_id=session_id)

        total, messages = self.store.get_messages(session_id, offset, limit)
        return MessagePage(session_id=session_id, offset=offset, limit=limit, total=total, messages=messages)

    def get_history(self, user_id: str, limit: int = 20) -> List[SessionSummary]:
        limit = max(1, min(limit, MAX_HISTORY))
        return [to_summary(s, user_id) for s in self.store.list_for_user(user_id, limit)]


def build_service(notifier: Optional[Notifier] = None) -> RandomChatService:
    """Create the service on the configured backends"""
    return RandomChatService(
        store=get_session_store(),
        notifier=notifier or Notifier(),
        report_store=get_report_store(),
    )
