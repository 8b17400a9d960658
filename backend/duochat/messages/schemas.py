"""Message data model for the client-side timeline.

A message has two identities: the local id assigned when this client
creates it, and the server id assigned once the server persists it. The
server id, once known, is the canonical id for every later lookup.
"""
from __future__ import annotations

import itertools
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, Literal, Optional, Set, Union

from pydantic import BaseModel, Field, PrivateAttr, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps from the server as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class MessageStatus(str, Enum):
    """Delivery lifecycle as seen by the message's sender."""

    SENDING   = "sending"    # optimistic, not yet accepted by the transport
    SENT      = "sent"       # transport accepted / server saved
    DELIVERED = "delivered"  # reached the peer's client
    SEEN      = "seen"       # peer viewed it
    FAILED    = "failed"     # terminal; kept in the timeline


# Order of the non-terminal statuses; FAILED has no rank.
STATUS_RANK: Dict[MessageStatus, int] = {
    MessageStatus.SENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.SEEN: 3,
}


# ---------------------------------------------------------------------------
# Content variants
# ---------------------------------------------------------------------------


class TextContent(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class VoiceContent(BaseModel):
    """Voice note; ``media_ref`` starts as a local ``blob:`` ref, then a URL."""

    kind: Literal["voice"] = "voice"
    media_ref: str
    duration: float = Field(..., ge=0, description="Length in seconds")


MessageContent = Annotated[Union[TextContent, VoiceContent], Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """One entry of a room timeline.

    Attributes:
        local_id: Client-assigned id (None for messages that arrived from the
            server already carrying a server id).
        server_id: Durable id assigned by the server.
        room_id: Room the message belongs to.
        sender_id: Author's user id.
        content: Text or voice payload.
        created_at: Creation time (UTC).
        status: Lifecycle status from the sender's perspective.
        delivered_at: When the peer's client received it.
        seen_at: When the peer first viewed it.
        seen_by: User ids that have viewed it; never contains ``sender_id``.
        discarded: A failed message the user chose to hide.
    """

    local_id:     Optional[str] = None
    server_id:    Optional[str] = None
    room_id:      str
    sender_id:    str
    content:      MessageContent
    created_at:   datetime = Field(default_factory=utcnow)
    status:       MessageStatus = MessageStatus.SENDING
    delivered_at: Optional[datetime] = None
    seen_at:      Optional[datetime] = None
    seen_by:      Set[str] = Field(default_factory=set)
    discarded:    bool = False

    # Stable identity of the timeline slot, independent of id reconciliation.
    _key: str = PrivateAttr(default_factory=lambda: uuid.uuid4().hex)

    @field_validator("created_at", "delivered_at", "seen_at")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def id(self) -> str:
        """Canonical id: the server id once assigned, else the local id."""
        return self.server_id or self.local_id or self._key

    @property
    def key(self) -> str:
        return self._key

    @property
    def is_voice(self) -> bool:
        return isinstance(self.content, VoiceContent)

    def status_for(self, viewer_id: str) -> Optional[MessageStatus]:
        """Status badge to show *viewer_id*; only the sender sees one."""
        if self.sender_id != viewer_id:
            return None
        return self.status


# ---------------------------------------------------------------------------
# Media collaborator types
# ---------------------------------------------------------------------------


@dataclass
class VoiceClip:
    """Opaque recorded audio handed over by the capture layer."""
    data: bytes
    mime_type: str = "audio/webm"

    @property
    def extension(self) -> str:
        return self.mime_type.split("/")[-1].split(";")[0] or "bin"


@dataclass
class VoiceUploadResult:
    file_url: str
    message_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Local ids
# ---------------------------------------------------------------------------


class LocalIdFactory:
    """Issues temporary ids: ``tmp-<ms>-<seq>-<salt>``.

    The millisecond prefix keeps ids roughly monotonic, the counter makes
    them unique within the session and the salt keeps two clients from
    colliding. An id is never issued twice.
    """

    def __init__(self, prefix: str = "tmp") -> None:
        self._prefix = prefix
        self._counter = itertools.count(1)
        self._salt = secrets.token_hex(3)

    def __call__(self) -> str:
        millis = int(time.time() * 1000)
        return f"{self._prefix}-{millis}-{next(self._counter)}-{self._salt}"
