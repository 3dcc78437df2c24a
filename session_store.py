"""
Persistence of random chat sessions

SessionStore defines the document-store contract the core relies on. Every
mutating method is a single conditional update: the guard (expected status,
participant count, membership) is evaluated atomically with the write, and
the method returns the updated session or None when the guard did not hold.
Callers never read a session and then write it back unconditionally.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.collection import Collection

import database
from config import settings
from schemas import OPEN_STATUSES, ChatMessage, Participant, RandomChat, SessionStatus, Topic

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Abstract base class for session storage backends"""

    @abstractmethod
    def insert(self, session: RandomChat) -> RandomChat:
        """Persist a new session"""
        pass

    @abstractmethod
    def get(self, session_id: str) -> Optional[RandomChat]:
        pass

    @abstractmethod
    def find_open_for_user(self, user_id: str) -> Optional[RandomChat]:
        """Return a searching or active session that lists user_id as a participant"""
        pass

    @abstractmethod
    def find_waiting(
        self,
        exclude_user_id: str,
        topic: Optional[Topic] = None,
        started_before: Optional[datetime] = None
    ) -> Optional[RandomChat]:
        """
        Find the oldest searching session with exactly one participant

        Args:
            exclude_user_id: Sessions containing this user are skipped
            topic: Restrict to this topic (any topic when None)
            started_before: Only sessions whose started_at is strictly older

        Returns:
            RandomChat or None
        """
        pass

    @abstractmethod
    def add_second_participant(
        self,
        session_id: str,
        participant: Participant,
        system_message: ChatMessage,
        now: datetime
    ) -> Optional[RandomChat]:
        """
        Join participant to a waiting session and activate it

        Succeeds only while the session is still searching with exactly one
        participant. Returns None when another matcher got there first.
        """
        pass

    @abstractmethod
    def append_message(self, session_id: str, message: ChatMessage, now: datetime) -> Optional[RandomChat]:
        """Append message if the session is active and the sender is a participant"""
        pass

    @abstractmethod
    def end_session(
        self,
        session_id: str,
        expected_status: SessionStatus,
        now: datetime,
        leaving_user_id: Optional[str] = None,
        system_message: Optional[ChatMessage] = None
    ) -> Optional[RandomChat]:
        """
        Move a session to ended if its status is still expected_status

        Args:
            session_id: Session to end
            expected_status: Status observed by the caller
            now: Transition time (ended_at, updated_at, left_at)
            leaving_user_id: Participant whose left_at is stamped
            system_message: Optional narration appended in the same update

        Returns:
            The ended session, or None if the status changed meanwhile
            or expected_status is already ended
        """
        pass

    @abstractmethod
    def get_messages(self, session_id: str, offset: int, limit: int) -> Optional[Tuple[int, List[ChatMessage]]]:
        """Return (total, page) of the session's messages, or None if unknown"""
        pass

    @abstractmethod
    def list_for_user(self, user_id: str, limit: int) -> List[RandomChat]:
        """Recent sessions of user_id, newest first, without messages"""
        pass


def _to_document(model) -> dict:
    return model.model_dump(mode="python")


class MongoSessionStore(SessionStore):
    """SessionStore backed by a pymongo collection"""

    def __init__(self, collection: Collection):
        self.collection = collection
        self.collection.create_index([("session_id", ASCENDING)], unique=True)
        self.collection.create_index([("status", ASCENDING), ("topic", ASCENDING)])
        self.collection.create_index([("participants.user_id", ASCENDING)])

    def _load(self, doc: Optional[dict]) -> Optional[RandomChat]:
        if doc is None:
            return None
        return RandomChat.model_validate(doc)

    def insert(self, session: RandomChat) -> RandomChat:
        self.collection.insert_one(_to_document(session))
        return session

    def get(self, session_id: str) -> Optional[RandomChat]:
        return self._load(self.collection.find_one({"session_id": session_id}))

    def find_open_for_user(self, user_id: str) -> Optional[RandomChat]:
        return self._load(self.collection.find_one({
            "participants.user_id": user_id,
            "status": {"$in": [s.value for s in OPEN_STATUSES]},
        }))

    def find_waiting(self, exclude_user_id, topic=None, started_before=None):
        filt = {
            "status": SessionStatus.SEARCHING.value,
            "participants": {"$size": 1},
            "participants.user_id": {"$ne": exclude_user_id},
        }
        if topic is not None:
            filt["topic"] = topic.value
        if started_before is not None:
            filt["started_at"] = {"$lt": started_before}
        return self._load(self.collection.find_one(filt, sort=[("started_at", ASCENDING)]))

    def add_second_participant(self, session_id, participant, system_message, now):
        doc = self.collection.find_one_and_update(
            {
                "session_id": session_id,
                "status": SessionStatus.SEARCHING.value,
                "participants": {"$size": 1},
                "participants.user_id": {"$ne": participant.user_id},
            },
            {
                "$push": {
                    "participants": _to_document(participant),
                    "messages": _to_document(system_message),
                },
                "$set": {"status": SessionStatus.ACTIVE.value, "updated_at": now},
            },
            return_document=ReturnDocument.AFTER,
        )
        return self._load(doc)

    def append_message(self, session_id, message, now):
        doc = self.collection.find_one_and_update(
            {
                "session_id": session_id,
                "status": SessionStatus.ACTIVE.value,
                "participants.user_id": message.sender_id,
            },
            {
                "$push": {"messages": _to_document(message)},
                "$set": {"updated_at": now},
            },
            return_document=ReturnDocument.AFTER,
        )
        return self._load(doc)

    def end_session(self, session_id, expected_status, now, leaving_user_id=None, system_message=None):
        # ended is terminal
        if expected_status not in OPEN_STATUSES:
            return None
        update = {
            "$set": {
                "status": SessionStatus.ENDED.value,
                "ended_at": now,
                "updated_at": now,
            }
        }
        kwargs = {}
        if leaving_user_id is not None:
            update["$set"]["participants.$[leaver].left_at"] = now
            kwargs["array_filters"] = [{"leaver.user_id": leaving_user_id}]
        if system_message is not None:
            update["$push"] = {"messages": _to_document(system_message)}

        doc = self.collection.find_one_and_update(
            {"session_id": session_id, "status": SessionStatus(expected_status).value},
            update,
            return_document=ReturnDocument.AFTER,
            **kwargs,
        )
        return self._load(doc)

    def get_messages(self, session_id, offset, limit):
        counted = list(self.collection.aggregate([
            {"$match": {"session_id": session_id}},
            {"$project": {"total": {"$size": "$messages"}}},
        ]))
        if not counted:
            return None
        doc = self.collection.find_one(
            {"session_id": session_id},
            {"messages": {"$slice": [offset, limit]}},
        )
        if doc is None:
            return None
        messages = [ChatMessage.model_validate(m) for m in doc.get("messages", [])]
        return counted[0]["total"], messages

    def list_for_user(self, user_id, limit):
        cursor = (
            self.collection.find({"participants.user_id": user_id}, {"messages": 0})
            .sort("started_at", DESCENDING)
            .limit(limit)
        )
        return [RandomChat.model_validate(doc) for doc in cursor]


class InMemorySessionStore(SessionStore):
    """
    Process-local SessionStore

    The lock stands in for the database's single-document atomicity: each
    method evaluates its guard and applies its write while holding it.
    """

    def __init__(self):
        self._sessions: Dict[str, RandomChat] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _copy(session: Optional[RandomChat]) -> Optional[RandomChat]:
        return copy.deepcopy(session) if session is not None else None

    def insert(self, session):
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Duplicate session_id: {session.session_id}")
            self._sessions[session.session_id] = copy.deepcopy(session)
        return session

    def get(self, session_id):
        with self._lock:
            return self._copy(self._sessions.get(session_id))

    def find_open_for_user(self, user_id):
        with self._lock:
            for session in self._sessions.values():
                if session.status in OPEN_STATUSES and session.has_participant(user_id):
                    return self._copy(session)
        return None

    def find_waiting(self, exclude_user_id, topic=None, started_before=None):
        with self._lock:
            candidates = [
                s for s in self._sessions.values()
                if s.status == SessionStatus.SEARCHING
                and len(s.participants) == 1
                and not s.has_participant(exclude_user_id)
                and (topic is None or s.topic == topic)
                and (started_before is None or s.started_at < started_before)
            ]
            if not candidates:
                return None
            return self._copy(min(candidates, key=lambda s: s.started_at))

    def add_second_participant(self, session_id, participant, system_message, now):
        with self._lock:
            session = self._sessions.get(session_id)
            if (
                session is None
                or session.status != SessionStatus.SEARCHING
                or len(session.participants) != 1
                or session.has_participant(participant.user_id)
            ):
                return None
            session.participants.append(copy.deepcopy(participant))
            session.messages.append(copy.deepcopy(system_message))
            session.status = SessionStatus.ACTIVE
            session.updated_at = now
            return self._copy(session)

    def append_message(self, session_id, message, now):
        with self._lock:
            session = self._sessions.get(session_id)
            if (
                session is None
                or session.status != SessionStatus.ACTIVE
                or not session.has_participant(message.sender_id)
            ):
                return None
            session.messages.append(copy.deepcopy(message))
            session.updated_at = now
            return self._copy(session)

    def end_session(self, session_id, expected_status, now, leaving_user_id=None, system_message=None):
        if expected_status not in OPEN_STATUSES:
            return None
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status != expected_status:
                return None
            session.status = SessionStatus.ENDED
            session.ended_at = now
            session.updated_at = now
            if leaving_user_id is not None:
                for p in session.participants:
                    if p.user_id == leaving_user_id:
                        p.left_at = now
            if system_message is not None:
                session.messages.append(copy.deepcopy(system_message))
            return self._copy(session)

    def get_messages(self, session_id, offset, limit):
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            page = session.messages[offset:offset + limit]
            return len(session.messages), copy.deepcopy(page)

    def list_for_user(self, user_id, limit):
        with self._lock:
            mine = [s for s in self._sessions.values() if s.has_participant(user_id)]
            mine.sort(key=lambda s: s.started_at, reverse=True)
            return [s.model_copy(update={"messages": []}, deep=True) for s in mine[:limit]]

    def all(self) -> List[RandomChat]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._sessions.values()]


def get_session_store() -> SessionStore:
    """
    Create the session store selected by settings.SESSION_STORE

    Raises:
        ValueError: If SESSION_STORE is not "mongo" or "memory"
    """
    backend_type = settings.SESSION_STORE.lower()

    if backend_type == "memory":
        logger.info("Using in-memory session store")
        return InMemorySessionStore()

    elif backend_type == "mongo":
        if database.db is None:
            raise ValueError("SESSION_STORE=mongo requires DATABASE_URL")
        logger.info(f"Using MongoDB session store: {settings.DATABASE_NAME}.random_chat")
        return MongoSessionStore(database.db["random_chat"])

    else:
        raise ValueError(
            f"Invalid SESSION_STORE: {backend_type}. Must be 'mongo' or 'memory'"
        )
