"""User-facing error taxonomy for a chat session.

Network and timing failures are translated into one of these kinds before
they reach presentation code. Only ``ConnectionLost`` is recoverable; the
others end the current operation (and, for membership errors, the session).
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Kinds of failure surfaced to the presentation layer."""
    CONNECTION_LOST = "connection_lost"
    RATE_LIMITED = "rate_limited"
    ACCESS_DENIED = "access_denied"
    NOT_FOUND = "not_found"
    MEDIA_SEND_FAILED = "media_send_failed"


class ChatSessionError(Exception):
    """Base exception for translated session errors."""
    kind: ErrorKind = ErrorKind.CONNECTION_LOST
    recoverable: bool = False
    default_message: str = "Something went wrong"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message or self.default_message
        self.status_code = status_code
        super().__init__(self.message)


class ConnectionLost(ChatSessionError):
    """Transport dropped; the transport keeps retrying in the background."""
    kind = ErrorKind.CONNECTION_LOST
    recoverable = True
    default_message = "Connection lost"


class RateLimited(ChatSessionError):
    """The server kept rejecting us after the single delayed retry."""
    kind = ErrorKind.RATE_LIMITED
    default_message = "Too many requests. Please wait a moment and try again."


class AccessDenied(ChatSessionError):
    """Membership check failed; must not be retried."""
    kind = ErrorKind.ACCESS_DENIED
    default_message = "Access denied to this room."


class NotFound(ChatSessionError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Room not found. Please check the room ID."


class MediaSendFailed(ChatSessionError):
    """Voice upload failed; the message stays in the timeline as failed."""
    kind = ErrorKind.MEDIA_SEND_FAILED
    default_message = "Failed to send voice message"


def error_for_status(status_code: Optional[int], message: Optional[str] = None) -> ChatSessionError:
    """Map an HTTP-like status class onto the session error taxonomy.

    Args:
        status_code: Response status, or None when no response arrived.
        message: Optional override for the user-facing message.

    Returns:
        The matching ChatSessionError instance (not raised).
    """
    if status_code is None or status_code >= 500:
        return ConnectionLost(message, status_code=status_code)
    if status_code == 404:
        return NotFound(message, status_code=status_code)
    if status_code == 429:
        return RateLimited(message, status_code=status_code)
    # 403 and every other client error: membership cannot be established
    return AccessDenied(message, status_code=status_code)
