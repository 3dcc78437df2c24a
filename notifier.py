"""
Per-user realtime event channels

Each user owns one logical channel. A channel fans out to every connection
the user currently has open (WebSocket tabs, SSE streams). Delivery is
best-effort and at-most-once: nothing is queued for offline users and a
failing connection is dropped instead of failing the caller.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Set

logger = logging.getLogger(__name__)

PARTNER_FOUND = "partner_found"
RANDOM_CHAT_MESSAGE = "random_chat_message"
RANDOM_CHAT_ENDED = "random_chat_ended"
RANDOM_CHAT_TYPING = "random_chat_typing"
RANDOM_CHAT_STOPPED_TYPING = "random_chat_stopped_typing"


class Connection(Protocol):
    async def send_text(self, data: str) -> None: ...


class QueueConnection:
    """
    SSE subscriber: frames are queued and drained by the stream generator

    A subscriber that falls maxsize frames behind is closed. The failed send
    gets it dropped from its channel, and the generator ends the stream once
    the backlog is drained so the client reconnects.
    """

    def __init__(self, maxsize: int = 100):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise ConnectionError("Subscriber closed")
        try:
            self.queue.put_nowait(data)
        except asyncio.QueueFull:
            self.closed = True
            raise

    @property
    def finished(self) -> bool:
        return self.closed and self.queue.empty()


class Notifier:
    def __init__(self):
        self.channels: Dict[str, Set[Connection]] = {}

    def connect(self, user_id: str, connection: Connection) -> None:
        self.channels.setdefault(user_id, set()).add(connection)
        logger.info(f"User {user_id} connected. Connections for user: {len(self.channels[user_id])}")

    def disconnect(self, user_id: str, connection: Connection) -> None:
        conns = self.channels.get(user_id)
        if not conns:
            return
        conns.discard(connection)
        if not conns:
            del self.channels[user_id]
        logger.info(f"User {user_id} disconnected")

    def connection_count(self, user_id: str) -> int:
        return len(self.channels.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return self.connection_count(user_id) > 0

    async def emit(self, user_id: str, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Send one event to every connection of user_id

        Returns:
            Number of connections the frame was handed to
        """
        conns = self.channels.get(user_id)
        if not conns:
            logger.debug(f"Dropping {event} for offline user {user_id}")
            return 0

        frame = json.dumps({
            "type": event,
            "data": payload or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }, default=str)

        delivered = 0
        dead = []
        for conn in list(conns):
            try:
                await conn.send_text(frame)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping connection of user {user_id} after failed {event}: {e}")
                dead.append(conn)

        for conn in dead:
            self.disconnect(user_id, conn)
        return delivered
