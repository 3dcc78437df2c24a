"""
Exceptions raised by the random chat core

Every error here is a deterministic, locally detected condition (caller
misuse or an expected race). They are returned to the caller as-is and
never retried.
"""

from typing import Optional

from fastapi import status


class RandomChatError(Exception):
    """Base exception for random chat operations"""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id

    def to_dict(self) -> dict:
        body = {"detail": self.message}
        if self.session_id:
            body["session_id"] = self.session_id
        return body


class ValidationError(RandomChatError):
    """Malformed topic, content or report fields"""
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(RandomChatError):
    """Caller already has a live session, or a duplicate report"""
    status_code = status.HTTP_409_CONFLICT


class NotFoundError(RandomChatError):
    """No session for this id and participant"""
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(RandomChatError):
    """Actor is not a participant of the session"""
    status_code = status.HTTP_403_FORBIDDEN


class InvalidStateError(RandomChatError):
    """Operation not valid for the session's current status"""
    status_code = status.HTTP_409_CONFLICT
