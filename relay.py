"""
Message relay for active random chats

Messages are persisted first and then pushed to the partner's channel. The
stored message sequence is the record; a client that missed the push
re-fetches the session.
"""

import logging
from datetime import datetime
from typing import Callable

from config import settings
from errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from notifier import RANDOM_CHAT_MESSAGE, RANDOM_CHAT_STOPPED_TYPING, RANDOM_CHAT_TYPING, Notifier
from schemas import ChatMessage, RandomChat, SessionStatus, utc_now
from session_store import SessionStore

logger = logging.getLogger(__name__)


class MessageRelay:
    def __init__(
        self,
        store: SessionStore,
        notifier: Notifier,
        max_length: int = settings.MAX_MESSAGE_LENGTH,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.notifier = notifier
        self.max_length = max_length
        self.clock = clock

    def _require_active_participant(self, session_id: str, user_id: str) -> RandomChat:
        session = self.store.get(session_id)
        if session is None:
            raise NotFoundError("Chat session not found", session_id=session_id)
        if not session.has_participant(user_id):
            raise ForbiddenError("You are not a participant of this chat", session_id=session_id)
        if session.status != SessionStatus.ACTIVE:
            raise InvalidStateError(f"Chat session is {session.status.value}", session_id=session_id)
        return session

    async def send_message(self, session_id: str, sender_id: str, content: str) -> ChatMessage:
        """
        Append a participant message and push it to the partner

        Raises:
            ValidationError: Empty or over-long content
            NotFoundError: Unknown session
            ForbiddenError: Sender is not a participant
            InvalidStateError: Session is not active
        """
        content = (content or "").strip()
        if not content:
            raise ValidationError("Message content cannot be empty", session_id=session_id)
        if len(content) > self.max_length:
            raise ValidationError(
                f"Message too long (max {self.max_length} characters)", session_id=session_id
            )

        self._require_active_participant(session_id, sender_id)

        now = self.clock()
        message = ChatMessage(sender_id=sender_id, content=content, timestamp=now)
        updated = self.store.append_message(session_id, message, now)
        if updated is None:
            # Ended between the check and the write
            raise InvalidStateError("Chat session is no longer active", session_id=session_id)

        for p in updated.participants:
            if p.user_id != sender_id:
                await self.notifier.emit(p.user_id, RANDOM_CHAT_MESSAGE, {
                    "session_id": session_id,
                    "message": message.model_dump(mode="json"),
                })
        return message

    async def relay_typing(self, session_id: str, user_id: str, typing: bool) -> bool:
        """
        Forward a typing indicator to the partner

        Returns False, without raising, when the sender may not relay into
        this session.
        """
        session = self.store.get(session_id)
        if session is None or session.status != SessionStatus.ACTIVE or not session.has_participant(user_id):
            return False
        partner = session.partner_of(user_id)
        event = RANDOM_CHAT_TYPING if typing else RANDOM_CHAT_STOPPED_TYPING
        await self.notifier.emit(partner.user_id, event, {"session_id": session_id, "user_id": user_id})
        return True
