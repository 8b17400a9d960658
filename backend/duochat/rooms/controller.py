"""Room Session Controller.

Orchestrates everything one open room needs and is the only component that
talks to the REST collaborator:

    idle -> checking_membership -> joined                 (already a member)
    idle -> checking_membership -> joining -> joined      (new member)
    any  -> failed                                        (join/history error)
    any  -> closed                                        (close())

Joining waits a short stagger delay, and a rate-limited join is retried
exactly once after a longer delay. Once joined, the controller subscribes
the room's events on the shared connection, emits ``join-room`` whenever the
connection is (re)established, and loads history over REST.

Errors from REST calls are translated into ``ChatSessionError`` kinds here,
before they reach presentation code.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Union

from duochat.api.client import ApiClient, ApiError
from duochat.config import AppSettings
from duochat.connection.events import (
    EventName,
    LiveTypingAction,
    RoomParticipants,
    parse_event,
)
from duochat.connection.manager import ConnectionManager, ConnectionState, Subscription
from duochat.errors import (
    AccessDenied,
    ChatSessionError,
    ConnectionLost,
    NotFound,
    error_for_status,
)
from duochat.messages.schemas import Message, VoiceClip
from duochat.messages.store import MessageStore
from duochat.presence.tracker import PresenceTracker
from duochat.scheduling import TaskScheduler
from duochat.typing_indicators.engine import LivePreview, TypingEngine

logger = logging.getLogger(__name__)

HISTORY_FORBIDDEN_MESSAGE = "Access denied: You must be a member of this room to view messages"
HISTORY_NOT_FOUND_MESSAGE = "Room not found or no messages available"
HISTORY_DENIED_MESSAGE = "You do not have access to this room's messages"

MESSAGE_EVENTS = (
    EventName.CHAT_MESSAGE,
    EventName.VOICE_MESSAGE,
    EventName.MESSAGE_SAVED,
    EventName.MESSAGE_SEEN,
    EventName.MESSAGE_STATUS_UPDATE,
    EventName.BROADCAST_MESSAGE_SEEN,
    EventName.MESSAGE_SEEN_CONFIRMED,
)
TYPING_EVENTS = (
    EventName.USER_TYPING,
    EventName.USER_LIVE_TYPING,
    EventName.USER_STOPPED_LIVE_TYPING,
)
NEW_MESSAGE_EVENTS = (EventName.CHAT_MESSAGE, EventName.VOICE_MESSAGE)


class JoinState(str, Enum):
    IDLE = "idle"
    CHECKING_MEMBERSHIP = "checking_membership"
    JOINING = "joining"
    JOINED = "joined"
    FAILED = "failed"
    CLOSED = "closed"


ErrorCallback = Callable[[ChatSessionError], None]


class RoomSessionController:
    """Join sequencing and the UI-facing operations of one room.

    Args:
        room_id: Room to open.
        connection: Shared connection (one per session).
        api: REST collaborator client.
        store: Session-wide message store.
        presence: Session-wide presence tracker.
        settings: Application settings.
        user_id: Local user id; generated by the server when omitted.
        on_error: Receives translated errors raised in the background.
    """

    def __init__(
        self,
        room_id: str,
        connection: ConnectionManager,
        api: ApiClient,
        store: MessageStore,
        presence: PresenceTracker,
        settings: AppSettings,
        user_id: Optional[str] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self.room_id = room_id
        self.user_id = user_id
        self._connection = connection
        self._api = api
        self._store = store
        self._presence = presence
        self._settings = settings
        self._on_error = on_error

        self._state = JoinState.IDLE
        self.room_info = None
        self.last_error: Optional[ChatSessionError] = None
        self._peer_id: Optional[str] = None
        self._participants = 0
        self._viewing = False
        self._needs_resync = False

        self._typing: Optional[TypingEngine] = None
        self._subscriptions: List[Subscription] = []
        self._tasks = TaskScheduler(f"room:{room_id}")

        self._routes: Dict[EventName, Callable[[EventName, Any], None]] = {
            **{name: self._on_message_event for name in MESSAGE_EVENTS},
            **{name: self._on_typing_event for name in TYPING_EVENTS},
            EventName.ROOM_PARTICIPANTS: self._on_participants,
        }

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> JoinState:
        return self._state

    @property
    def joined(self) -> bool:
        return self._state is JoinState.JOINED

    def _set_state(self, state: JoinState) -> None:
        if state is not self._state:
            logger.info(f"[Room {self.room_id}] {self._state.value} -> {state.value}")
            self._state = state

    def _report(self, error: ChatSessionError) -> None:
        self.last_error = error
        logger.warning(f"[Room {self.room_id}] {error.kind.value}: {error.message}")
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:
                logger.exception(f"[Room {self.room_id}] Error callback raised")

    def _fail(self, error: ChatSessionError) -> ChatSessionError:
        self.last_error = error
        self._set_state(JoinState.FAILED)
        return error

    # =========================================================================
    # Join sequencing
    # =========================================================================

    async def open(self) -> None:
        """Join the room, wire its events and load history.

        Raises:
            RateLimited: The join was rate limited twice.
            AccessDenied: Membership or history access was refused.
            NotFound: The room does not exist.
            ConnectionLost: The REST collaborator could not be reached.
        """
        if self._state is not JoinState.IDLE:
            raise RuntimeError(f"Room {self.room_id} cannot be opened from state {self._state.value}")

        try:
            if not self.user_id:
                self.user_id = await self._api.generate_identity()
                logger.info(f"[Room {self.room_id}] Generated user id {self.user_id}")

            self._set_state(JoinState.CHECKING_MEMBERSHIP)
            info = await self._api.get_room_info(self.room_id)
            self.room_info = info

            if not info.has_member(self.user_id):
                self._set_state(JoinState.JOINING)
                await self._join()
            self._peer_id = info.peer_of(self.user_id) or next(
                (user for user in (info.user1_id, info.user2_id) if user and user != self.user_id),
                None,
            )
        except ApiError as exc:
            raise self._fail(self._join_error(exc)) from exc

        self._set_state(JoinState.JOINED)
        self._typing = TypingEngine(
            self._connection, self.room_id, self.user_id, self._settings.typing
        )
        self._subscribe()
        self._connection.add_state_listener(self._on_connection_state)
        if self._connection.is_connected:
            self._enter_room()

        try:
            await self.load_history()
        except ChatSessionError as error:
            self._fail(error)
            raise

    async def _join(self) -> None:
        rooms = self._settings.rooms
        await asyncio.sleep(rooms.join_stagger_delay)
        try:
            await self._api.join_room(self.room_id, self.user_id)
        except ApiError as exc:
            if exc.status_code != 429:
                raise
            logger.warning(
                f"[Room {self.room_id}] Join rate limited, retrying once in {rooms.rate_limit_retry_delay}s"
            )
            await asyncio.sleep(rooms.rate_limit_retry_delay)
            await self._api.join_room(self.room_id, self.user_id)
        logger.info(f"[Room {self.room_id}] Joined as {self.user_id}")

    @staticmethod
    def _join_error(exc: ApiError) -> ChatSessionError:
        if exc.status_code in (403, 404, 429):
            return error_for_status(exc.status_code)
        message = f"Failed to join room: {exc.detail}" if exc.detail else "Failed to join room"
        return error_for_status(exc.status_code, message)

    @property
    def room_name(self) -> str:
        if self.room_info is not None and self.room_info.room_name:
            return self.room_info.room_name
        return f"Room {self.room_id}"

    # =========================================================================
    # History
    # =========================================================================

    async def load_history(self) -> int:
        """Fetch persisted messages and merge them into the timeline.

        Returns:
            Number of messages that were new to the timeline.
        """
        try:
            response = await self._api.get_room_messages(self.room_id, self.user_id)
        except ApiError as exc:
            if exc.status_code == 403:
                raise AccessDenied(HISTORY_FORBIDDEN_MESSAGE, status_code=403) from exc
            if exc.status_code == 404:
                raise NotFound(HISTORY_NOT_FOUND_MESSAGE, status_code=404) from exc
            raise error_for_status(exc.status_code, "Failed to load messages") from exc

        if not response.success:
            raise AccessDenied(response.error or HISTORY_DENIED_MESSAGE)

        messages = [record.to_message(self.room_id, self.user_id) for record in response.messages]
        added = self._store.load_history(self.room_id, messages)
        if self._viewing:
            self._mark_seen()
        return added

    async def _resync(self) -> None:
        try:
            await self.load_history()
        except ChatSessionError as error:
            self._report(error)

    def _spawn_resync(self) -> None:
        self._tasks.spawn(self._resync(), name=f"resync:{self.room_id}")

    def _schedule_refresh(self) -> None:
        delay = self._settings.rooms.history_refresh_delay
        if delay > 0:
            self._tasks.call_later("history-refresh", delay, self._spawn_resync)

    # =========================================================================
    # Connection and events
    # =========================================================================

    def _enter_room(self) -> None:
        self._connection.send(EventName.JOIN_ROOM, self.room_id)

    def _on_connection_state(self, state: ConnectionState, previous: ConnectionState) -> None:
        if self._state is not JoinState.JOINED:
            return
        if state is ConnectionState.CONNECTED:
            # Room membership on the socket does not survive a reconnect
            self._enter_room()
            if self._needs_resync:
                self._needs_resync = False
                logger.info(f"[Room {self.room_id}] Reconnected, resyncing history")
                self._spawn_resync()
        elif previous is ConnectionState.CONNECTED:
            self._needs_resync = True
            self._report(ConnectionLost(self._connection.last_error))

    def _subscribe(self) -> None:
        for name in self._routes:
            self._subscriptions.append(
                self._connection.subscribe(name, lambda payload, name=name: self._on_raw(name, payload))
            )

    def _unsubscribe(self) -> None:
        for subscription in self._subscriptions:
            self._connection.unsubscribe(subscription)
        self._subscriptions.clear()

    def _on_raw(self, name: EventName, payload: Any) -> None:
        event = parse_event(name, payload)
        if event is None:
            return
        room_id = getattr(event, "roomId", None)
        if room_id is not None and room_id != self.room_id:
            return
        self._routes[name](name, event)

    def _on_message_event(self, name: EventName, event: Any) -> None:
        changed = self._store.ingest(event, room_id=self.room_id)
        if changed and self._viewing and name in NEW_MESSAGE_EVENTS:
            self._mark_seen()

    def _on_typing_event(self, name: EventName, event: Any) -> None:
        if self._typing is not None:
            self._typing.ingest(event)

    def _on_participants(self, name: EventName, event: RoomParticipants) -> None:
        self._participants = max(0, event.count)

    # =========================================================================
    # Operations
    # =========================================================================

    def _require_joined(self) -> None:
        if self._state is not JoinState.JOINED:
            raise RuntimeError("Please join the room first")

    def send_text(self, content: str) -> Optional[str]:
        """Send a text message; blank input is ignored.

        Returns:
            Local id of the new message, or None when nothing was sent.
        """
        self._require_joined()
        text = content.strip()
        if not text:
            return None
        self._typing.stop_typing()
        local_id = self._store.send_text(self.room_id, text, self.user_id)
        self._schedule_refresh()
        return local_id

    def send_voice(self, clip: VoiceClip, duration: float) -> str:
        self._require_joined()
        self._typing.stop_typing()
        local_id = self._store.send_voice(self.room_id, clip, duration, self.user_id)
        self._schedule_refresh()
        return local_id

    def discard(self, message_id: str) -> bool:
        return self._store.discard(message_id)

    def input_changed(self, content: str, cursor_position: Optional[int] = None) -> None:
        if self._typing is not None and self.joined:
            self._typing.input_changed(content, cursor_position)

    def special_key(self, action: Union[str, LiveTypingAction], cursor_position: int) -> None:
        if self._typing is not None and self.joined:
            self._typing.special_key(action, cursor_position)

    def set_viewing(self, viewing: bool) -> None:
        """Tell the controller whether the timeline is on screen."""
        self._viewing = viewing
        if viewing and self.joined:
            self._mark_seen()

    def _mark_seen(self) -> None:
        self._store.mark_visible_as_seen(self.room_id, self.user_id)

    # =========================================================================
    # Views
    # =========================================================================

    def messages(self) -> List[Message]:
        return self._store.timeline(self.room_id)

    def visible_messages(self) -> List[Message]:
        return self._store.visible(self.room_id)

    @property
    def typing_users(self) -> FrozenSet[str]:
        return self._typing.typing_users if self._typing is not None else frozenset()

    @property
    def live_previews(self) -> Dict[str, LivePreview]:
        return self._typing.live_previews if self._typing is not None else {}

    @property
    def typing_engine(self) -> Optional[TypingEngine]:
        return self._typing

    @property
    def participant_count(self) -> int:
        return self._participants

    @property
    def peer_id(self) -> Optional[str]:
        return self._peer_id

    @property
    def is_peer_online(self) -> bool:
        return self._presence.is_online(self._peer_id)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def close(self) -> None:
        """Leave the room and release every subscription and timer."""
        if self._state is JoinState.CLOSED:
            return
        if self._typing is not None:
            self._typing.stop_typing()
            self._typing.close()
        if self.user_id:
            self._store.cancel_seen(self.room_id, self.user_id)
        if self._state is JoinState.JOINED and self._connection.is_connected:
            self._connection.send(EventName.LEAVE_ROOM, self.room_id)
        self._unsubscribe()
        self._connection.remove_state_listener(self._on_connection_state)
        await self._tasks.aclose()
        self._set_state(JoinState.CLOSED)
