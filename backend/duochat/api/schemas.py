"""Response models for the REST collaborator."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from duochat.connection.events import Identifier
from duochat.messages.schemas import (
    Message,
    MessageStatus,
    TextContent,
    VoiceContent,
    utcnow,
)

VOICE_MESSAGE_TYPES = ("voice", "audio")


class RoomInfo(BaseModel):
    """A two-party room; ``user2_id`` stays empty until someone joins."""
    model_config = ConfigDict(extra="ignore")

    room_id: str
    room_name: Optional[str] = None
    user1_id: Optional[Identifier] = None
    user2_id: Optional[Identifier] = None

    def has_member(self, user_id: str) -> bool:
        return user_id in (self.user1_id, self.user2_id)

    def peer_of(self, user_id: str) -> Optional[str]:
        """The other participant, if the room has one."""
        if self.user1_id == user_id:
            return self.user2_id
        if self.user2_id == user_id:
            return self.user1_id
        return None


class HistoryMessage(BaseModel):
    """One persisted message as returned by the history endpoint."""
    model_config = ConfigDict(extra="ignore")

    id: Identifier
    room_id: Optional[str] = None
    sender_id: Identifier
    content: Optional[str] = None
    message_type: str = "text"
    created_at: datetime = Field(default_factory=utcnow)
    seen_at: Optional[datetime] = None
    seen_by_user_id: Optional[Identifier] = None
    file_url: Optional[str] = None
    duration: Optional[float] = None

    def to_message(self, room_id: str, viewer_id: str) -> Message:
        """Build a timeline entry as *viewer_id* should see it.

        Own messages are ``seen`` when the record carries a seen time and a
        reader other than the sender, ``delivered`` otherwise. Anything in
        history has reached the peer.
        """
        if self.message_type in VOICE_MESSAGE_TYPES and self.file_url:
            content = VoiceContent(media_ref=self.file_url, duration=max(0.0, self.duration or 0.0))
        else:
            content = TextContent(text=self.content or "")

        seen_by = set()
        if self.seen_by_user_id and self.seen_by_user_id != self.sender_id:
            seen_by.add(self.seen_by_user_id)

        own = self.sender_id == viewer_id
        seen = own and bool(self.seen_at and seen_by)
        status = MessageStatus.SEEN if seen else MessageStatus.DELIVERED
        return Message(
            server_id=self.id,
            room_id=self.room_id or room_id,
            sender_id=self.sender_id,
            content=content,
            created_at=self.created_at,
            status=status,
            delivered_at=self.created_at,
            seen_at=self.seen_at if seen_by else None,
            seen_by=seen_by,
        )


class HistoryResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool = True
    messages: List[HistoryMessage] = Field(default_factory=list)
    error: Optional[str] = None
