"""Socket event contract: names, inbound models and outbound payloads.

Inbound payloads are validated once, here, into a closed union of pydantic
models discriminated by event name. Everything downstream of
``parse_event`` works with these models and never touches raw dicts.

Inbound events:
    chat-message, voice-message, message-saved, message-seen,
    message-status-update, broadcast-message-seen, message-seen-confirmed,
    user-typing, user-live-typing, user-stopped-live-typing,
    room-participants, user-online, user-offline, online-users

Outbound events:
    join-room, leave-room, chat-message, voice-message, typing,
    live-typing, message-delivered, message-seen (+ redundant variants)
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
)

from duochat.messages.schemas import MessageStatus, utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# Event names
# =============================================================================


class EventName(str, Enum):
    """Every event name used on the shared connection."""
    # Lifecycle
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    CONNECT_ERROR = "connect_error"
    # Rooms
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    ROOM_PARTICIPANTS = "room-participants"
    # Messages
    CHAT_MESSAGE = "chat-message"
    VOICE_MESSAGE = "voice-message"
    MESSAGE_SAVED = "message-saved"
    MESSAGE_DELIVERED = "message-delivered"
    MESSAGE_SEEN = "message-seen"
    MESSAGE_STATUS_UPDATE = "message-status-update"
    BROADCAST_MESSAGE_SEEN = "broadcast-message-seen"
    MESSAGE_SEEN_CONFIRMED = "message-seen-confirmed"
    # Typing
    TYPING = "typing"
    USER_TYPING = "user-typing"
    LIVE_TYPING = "live-typing"
    USER_LIVE_TYPING = "user-live-typing"
    USER_STOPPED_LIVE_TYPING = "user-stopped-live-typing"
    # Presence
    USER_ONLINE = "user-online"
    USER_OFFLINE = "user-offline"
    ONLINE_USERS = "online-users"


class LiveTypingAction(str, Enum):
    TYPING = "typing"
    BACKSPACE = "backspace"
    DELETE = "delete"
    START_TYPING = "start_typing"
    STOP_TYPING = "stop_typing"


# Events that carry a "seen" fact without necessarily naming the status.
SEEN_EVENTS = (
    EventName.MESSAGE_SEEN.value,
    EventName.BROADCAST_MESSAGE_SEEN.value,
    EventName.MESSAGE_SEEN_CONFIRMED.value,
)

# Outbound seen notification plus its redundant copies.
SEEN_NOTIFICATION_EVENTS = (
    EventName.MESSAGE_SEEN,
    EventName.MESSAGE_STATUS_UPDATE,
    EventName.BROADCAST_MESSAGE_SEEN,
)


# =============================================================================
# Field coercion
# =============================================================================


def _coerce_id(value: Any) -> Any:
    """Server ids arrive as numbers or strings; we always compare strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    return value


def _as_id_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [_coerce_id(item) for item in value]
    return [_coerce_id(value)]


Identifier = Annotated[str, BeforeValidator(_coerce_id)]
IdentifierList = Annotated[List[Identifier], BeforeValidator(_as_id_list)]


class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# =============================================================================
# Inbound: messages
# =============================================================================


class ChatMessageReceived(_Event):
    """A text message broadcast to the room (possibly our own echo)."""
    event: Literal["chat-message"] = "chat-message"
    roomId: Optional[str] = None
    message: str
    userId: Identifier
    messageId: Optional[Identifier] = Field(
        default=None, validation_alias=AliasChoices("messageId", "id")
    )
    tempId: Optional[Identifier] = None
    timestamp: Optional[datetime] = None


class VoiceMessageReceived(_Event):
    event: Literal["voice-message"] = "voice-message"
    roomId: Optional[str] = None
    userId: Identifier
    messageId: Optional[Identifier] = Field(
        default=None, validation_alias=AliasChoices("messageId", "id")
    )
    tempId: Optional[Identifier] = None
    fileUrl: str
    duration: float = 0.0
    timestamp: Optional[datetime] = None


class MessageSaved(_Event):
    """Server persisted a message we sent: maps our temp id to its real id."""
    event: Literal["message-saved"] = "message-saved"
    tempId: Identifier
    realId: Identifier = Field(validation_alias=AliasChoices("realId", "messageId"))


class MessageStatusChanged(_Event):
    """Status or seen notification for one message.

    The same fact may arrive under several event names; applying it more
    than once is harmless.
    """
    event: Literal[
        "message-seen",
        "message-status-update",
        "broadcast-message-seen",
        "message-seen-confirmed",
    ]
    messageId: Identifier
    userId: Optional[Identifier] = None
    senderId: Optional[Identifier] = None
    roomId: Optional[str] = None
    status: Optional[MessageStatus] = None
    seenBy: IdentifierList = Field(default_factory=list)

    @property
    def effective_status(self) -> Optional[MessageStatus]:
        if self.status is not None:
            return self.status
        if self.event in SEEN_EVENTS:
            return MessageStatus.SEEN
        return None

    @property
    def reporters(self) -> List[str]:
        """Users asserting they saw the message."""
        if self.seenBy:
            return list(self.seenBy)
        return [self.userId] if self.userId else []


# =============================================================================
# Inbound: typing
# =============================================================================


class UserTyping(_Event):
    event: Literal["user-typing"] = "user-typing"
    roomId: Optional[str] = None
    userId: Identifier
    isTyping: bool = True


class UserLiveTyping(_Event):
    event: Literal["user-live-typing"] = "user-live-typing"
    roomId: Optional[str] = None
    userId: Identifier
    content: Optional[str] = None
    cursorPosition: Optional[int] = Field(default=None, ge=0)
    action: LiveTypingAction = LiveTypingAction.TYPING
    timestamp: Optional[datetime] = None


class UserStoppedLiveTyping(_Event):
    event: Literal["user-stopped-live-typing"] = "user-stopped-live-typing"
    roomId: Optional[str] = None
    userId: Identifier


# =============================================================================
# Inbound: rooms and presence
# =============================================================================


class RoomParticipants(_Event):
    event: Literal["room-participants"] = "room-participants"
    roomId: str
    count: int = 0


class UserOnline(_Event):
    event: Literal["user-online"] = "user-online"
    userId: Identifier


class UserOffline(_Event):
    event: Literal["user-offline"] = "user-offline"
    userId: Identifier


class OnlineUsers(_Event):
    event: Literal["online-users"] = "online-users"
    users: IdentifierList = Field(default_factory=list)


InboundEvent = Annotated[
    Union[
        ChatMessageReceived,
        VoiceMessageReceived,
        MessageSaved,
        MessageStatusChanged,
        UserTyping,
        UserLiveTyping,
        UserStoppedLiveTyping,
        RoomParticipants,
        UserOnline,
        UserOffline,
        OnlineUsers,
    ],
    Field(discriminator="event"),
]

_INBOUND_ADAPTER: TypeAdapter = TypeAdapter(InboundEvent)

INBOUND_EVENT_NAMES = frozenset({
    EventName.CHAT_MESSAGE.value,
    EventName.VOICE_MESSAGE.value,
    EventName.MESSAGE_SAVED.value,
    EventName.MESSAGE_SEEN.value,
    EventName.MESSAGE_STATUS_UPDATE.value,
    EventName.BROADCAST_MESSAGE_SEEN.value,
    EventName.MESSAGE_SEEN_CONFIRMED.value,
    EventName.USER_TYPING.value,
    EventName.USER_LIVE_TYPING.value,
    EventName.USER_STOPPED_LIVE_TYPING.value,
    EventName.ROOM_PARTICIPANTS.value,
    EventName.USER_ONLINE.value,
    EventName.USER_OFFLINE.value,
    EventName.ONLINE_USERS.value,
})


def parse_event(name: str, payload: Any) -> Optional[Any]:
    """Validate a raw socket payload into its inbound event model.

    Args:
        name: Socket event name.
        payload: Decoded JSON payload as delivered by the transport.

    Returns:
        The typed event, or None for unsupported names and malformed payloads.
    """
    if isinstance(name, EventName):
        name = name.value
    if name not in INBOUND_EVENT_NAMES:
        logger.debug("Ignoring unsupported inbound event %s", name)
        return None

    # Presence events are sometimes sent as bare values
    if name in (EventName.USER_ONLINE.value, EventName.USER_OFFLINE.value):
        if not isinstance(payload, dict):
            payload = {"userId": payload}
    elif name == EventName.ONLINE_USERS.value and not isinstance(payload, dict):
        payload = {"users": payload}

    if not isinstance(payload, dict):
        logger.warning("Dropping %s event with non-object payload", name)
        return None

    try:
        return _INBOUND_ADAPTER.validate_python({**payload, "event": name})
    except ValidationError as exc:
        logger.warning("Dropping malformed %s event (%d errors)", name, exc.error_count())
        logger.debug("Validation detail for %s: %s", name, exc)
        return None


# =============================================================================
# Outbound payloads
# =============================================================================


def _now_ms() -> int:
    return int(time.time() * 1000)


def chat_message_payload(
    room_id: str,
    content: str,
    user_id: str,
    temp_id: str,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "roomId": room_id,
        "message": content,
        "userId": user_id,
        "tempId": temp_id,
        "timestamp": (timestamp or utcnow()).isoformat(),
    }


def voice_message_payload(
    room_id: str,
    user_id: str,
    message_id: str,
    file_url: str,
    duration: float,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "roomId": room_id,
        "userId": user_id,
        "messageId": message_id,
        "fileUrl": file_url,
        "duration": duration,
        "timestamp": (timestamp or utcnow()).isoformat(),
    }


def typing_payload(room_id: str, user_id: str, is_typing: bool) -> Dict[str, Any]:
    return {"roomId": room_id, "userId": user_id, "isTyping": is_typing}


def live_typing_payload(
    room_id: str,
    user_id: str,
    action: LiveTypingAction,
    content: Optional[str] = None,
    cursor_position: Optional[int] = None,
) -> Dict[str, Any]:
    """Live-typing frame; snapshots carry full content, key actions only a cursor."""
    payload: Dict[str, Any] = {
        "roomId": room_id,
        "userId": user_id,
        "action": action.value,
        "timestamp": _now_ms(),
    }
    if content is not None:
        payload["content"] = content
    if cursor_position is not None:
        payload["cursorPosition"] = cursor_position
    return payload


def delivered_payload(message_id: str) -> Dict[str, Any]:
    return {"messageId": message_id}


def seen_payload(message_id: str, viewer_id: str, sender_id: str, room_id: str) -> Dict[str, Any]:
    return {
        "messageId": message_id,
        "userId": viewer_id,
        "senderId": sender_id,
        "roomId": room_id,
        "status": MessageStatus.SEEN.value,
        "seenBy": viewer_id,
    }
