"""
Database Schemas

MongoDB collection schemas for the random chat service, as Pydantic models.
Model name is converted to lowercase / snake case for the collection name:
- RandomChat -> "random_chat" collection (participants and messages embedded)
- Report -> "report" collection

Request and response payloads of the HTTP API live at the bottom of the file.
"""

import random
import string
import time
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"chat_{int(time.time() * 1000)}_{suffix}"


class Topic(str, Enum):
    GENERAL = "general"
    BOOKS = "books"
    MOVIES = "movies"
    MUSIC = "music"
    TECHNOLOGY = "technology"
    TRAVEL = "travel"
    FOOD = "food"
    SPORTS = "sports"
    ART = "art"
    PHILOSOPHY = "philosophy"


class SessionStatus(str, Enum):
    SEARCHING = "searching"
    ACTIVE = "active"
    ENDED = "ended"


OPEN_STATUSES = (SessionStatus.SEARCHING, SessionStatus.ACTIVE)


class ReportReason(str, Enum):
    """Moderation categories shared with the report collaborator"""
    SPAM = "spam"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    HARASSMENT = "harassment"
    HATE_SPEECH = "hate_speech"
    VIOLENCE = "violence"
    MISINFORMATION = "misinformation"
    COPYRIGHT_VIOLATION = "copyright_violation"
    OTHER = "other"


# Reasons a participant may pick when reporting a random chat partner
RANDOM_CHAT_REPORT_REASONS = frozenset({
    ReportReason.SPAM,
    ReportReason.INAPPROPRIATE_CONTENT,
    ReportReason.HARASSMENT,
    ReportReason.HATE_SPEECH,
    ReportReason.VIOLENCE,
    ReportReason.OTHER,
})


class ReportedItemType(str, Enum):
    POST = "post"
    COMMENT = "comment"
    CHAT_MESSAGE = "chat_message"
    USER = "user"


class ReportStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class Participant(BaseModel):
    """Membership record embedded in a session"""
    user_id: str = Field(..., description="Authenticated user id")
    is_anonymous: bool = Field(True, description="Hide the user's identity from the partner")
    joined_at: datetime = Field(default_factory=utc_now)
    left_at: Optional[datetime] = Field(None, description="Set when the user ends or skips the chat")


class ChatMessage(BaseModel):
    """Embedded message, immutable once appended"""
    sender_id: Optional[str] = Field(None, description="Sender user id, null for system messages")
    content: str = Field(..., min_length=1, max_length=1000)
    timestamp: datetime = Field(default_factory=utc_now)
    is_system: bool = Field(False, description="Status narration not attributed to a participant")

    @classmethod
    def system(cls, content: str, timestamp: Optional[datetime] = None) -> "ChatMessage":
        return cls(content=content, timestamp=timestamp or utc_now(), is_system=True)


class RandomChat(BaseModel):
    """
    Random chat sessions collection schema
    Collection name: "random_chat"
    """
    session_id: str = Field(default_factory=new_session_id, description="Opaque unique session id")
    topic: Topic = Field(..., description="Conversation topic")
    status: SessionStatus = Field(SessionStatus.SEARCHING)
    participants: List[Participant] = Field(default_factory=list, max_length=2)
    messages: List[ChatMessage] = Field(default_factory=list)
    is_anonymous: bool = Field(True)
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: Optional[datetime] = Field(None)
    updated_at: datetime = Field(default_factory=utc_now, description="Last mutation time")

    def participant(self, user_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def has_participant(self, user_id: str) -> bool:
        return self.participant(user_id) is not None

    def partner_of(self, user_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.user_id != user_id:
                return p
        return None


class Report(BaseModel):
    """
    Reports collection schema
    Collection name: "report"
    """
    reporter_id: str = Field(..., description="User who filed the report")
    reported_item_type: ReportedItemType = Field(...)
    reported_item_id: str = Field(..., description="Id of the reported user, post, comment or message")
    reason: ReportReason = Field(...)
    description: str = Field(..., max_length=500)
    status: ReportStatus = Field(ReportStatus.PENDING)
    context: Optional[str] = Field(None, description="Where the report was filed from, e.g. a chat session id")
    created_at: datetime = Field(default_factory=utc_now)


# Request payloads

class StartSearchRequest(BaseModel):
    topic: str
    is_anonymous: bool = True


class SendMessageRequest(BaseModel):
    session_id: str
    content: str


class SessionActionRequest(BaseModel):
    session_id: str


class ReportSessionRequest(BaseModel):
    session_id: str
    reason: str
    description: str


# Response payloads

class PartnerView(BaseModel):
    id: str
    name: str = "Anonymous"
    is_anonymous: bool = True


class SessionSummary(BaseModel):
    session_id: str
    status: SessionStatus
    topic: Topic
    partner: Optional[PartnerView] = None
    message: Optional[str] = None


class SessionView(BaseModel):
    session_id: str
    status: SessionStatus
    topic: Topic
    is_anonymous: bool
    messages: List[ChatMessage]
    partner: Optional[PartnerView] = None
    started_at: datetime
    ended_at: Optional[datetime] = None


class MessagePage(BaseModel):
    session_id: str
    offset: int
    limit: int
    total: int
    messages: List[ChatMessage]


def partner_view(session: RandomChat, viewer_id: str) -> Optional[PartnerView]:
    # Partners are always presented anonymously
    partner = session.partner_of(viewer_id)
    if partner is None:
        return None
    return PartnerView(id=partner.user_id)


def to_summary(session: RandomChat, viewer_id: str, message: Optional[str] = None) -> SessionSummary:
    return SessionSummary(
        session_id=session.session_id,
        status=session.status,
        topic=session.topic,
        partner=partner_view(session, viewer_id),
        message=message,
    )


def to_view(session: RandomChat, viewer_id: str) -> SessionView:
    return SessionView(
        session_id=session.session_id,
        status=session.status,
        topic=session.topic,
        is_anonymous=session.is_anonymous,
        messages=session.messages,
        partner=partner_view(session, viewer_id),
        started_at=session.started_at,
        ended_at=session.ended_at,
    )
