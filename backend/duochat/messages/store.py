"""Message Synchronization Store.

Owns every room timeline of a session and is the only place where messages
are created or mutated. Local actions (send) append optimistically and are
reconciled later by server events; inbound events go through ``ingest``,
which dispatches on the validated event type.

Key features:
    - Optimistic append before any network call
    - Local id -> server id reconciliation in place (same timeline slot)
    - Monotonic status lifecycle: sending -> sent -> delivered -> seen,
      with ``failed`` terminal and reachable only from sending/sent
    - Seen-by kept as a set that never contains the sender
    - Bounded, expiring buffer for updates that overtake their message
    - Delayed, re-checked seen notifications for viewed messages

Invariants:
    Timelines are append-only for the session: entries are never removed or
    reordered. History back-fill inserts unknown messages by creation time
    without moving existing entries. Failed messages stay in the timeline;
    ``discard`` only hides them from ``visible``.
"""
import functools
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

import asyncio

from duochat.config import MessageSettings
from duochat.connection.events import (
    ChatMessageReceived,
    EventName,
    MessageSaved,
    MessageStatusChanged,
    SEEN_NOTIFICATION_EVENTS,
    VoiceMessageReceived,
    chat_message_payload,
    delivered_payload,
    seen_payload,
    voice_message_payload,
)
from duochat.connection.manager import ConnectionManager
from duochat.errors import ChatSessionError, MediaSendFailed
from duochat.messages.pending import PendingUpdateBuffer
from duochat.messages.schemas import (
    STATUS_RANK,
    LocalIdFactory,
    Message,
    MessageStatus,
    TextContent,
    VoiceClip,
    VoiceContent,
    VoiceUploadResult,
    utcnow,
)
from duochat.scheduling import TaskScheduler

logger = logging.getLogger(__name__)

MessageListener = Callable[[Message], None]

# Largest clock gap between an own pending message and its history record
PENDING_MATCH_WINDOW = timedelta(minutes=5)
ErrorCallback = Callable[[ChatSessionError], None]


class MediaUploader(Protocol):
    """External collaborator that turns a recorded clip into a durable URL."""

    async def upload_voice_message(
        self,
        clip: VoiceClip,
        room_id: str,
        sender_id: str,
        duration: float,
        temp_id: str,
    ) -> VoiceUploadResult:
        ...


class MessageStore:
    """Per-session store of room timelines.

    Args:
        connection: Shared connection used for outbound emits.
        uploader: Voice upload collaborator (the REST client in practice).
        settings: Seen delay and pending-buffer bounds.
        id_factory: Callable issuing local ids; never returns an id twice.
        on_error: Receives background failures (voice upload).
    """

    def __init__(
        self,
        connection: ConnectionManager,
        uploader: Optional[MediaUploader] = None,
        settings: Optional[MessageSettings] = None,
        id_factory: Optional[Callable[[], str]] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._connection = connection
        self._uploader = uploader
        self._settings = settings or MessageSettings()
        self._new_local_id = id_factory or LocalIdFactory()
        self._on_error = on_error

        # room_id -> messages in display order
        self._timelines: Dict[str, List[Message]] = {}
        # every id a message has carried (local and server) -> message
        self._by_id: Dict[str, Message] = {}
        self._local_to_server: Dict[str, str] = {}
        # user ids that have sent from this client
        self._local_senders: Set[str] = set()
        # (room_id, viewer_id) -> {message.key: message} awaiting the seen delay
        self._seen_candidates: Dict[Tuple[str, str], Dict[str, Message]] = {}
        self._listeners: List[MessageListener] = []

        self._tasks = TaskScheduler("messages")
        self._pending = PendingUpdateBuffer(
            self._tasks,
            ttl=self._settings.pending_update_ttl,
            max_ids=self._settings.pending_update_max,
        )

        self._handlers: Dict[type, Callable[[Any, Optional[str]], bool]] = {
            ChatMessageReceived: self._on_chat_message,
            VoiceMessageReceived: self._on_voice_message,
            MessageSaved: self._on_message_saved,
            MessageStatusChanged: self._on_status_changed,
        }

    # =========================================================================
    # Queries
    # =========================================================================

    def timeline(self, room_id: str) -> List[Message]:
        """All messages of *room_id* in display order, discarded ones included."""
        return list(self._timelines.get(room_id, ()))

    def visible(self, room_id: str) -> List[Message]:
        return [m for m in self._timelines.get(room_id, ()) if not m.discarded]

    def get(self, message_id: str) -> Optional[Message]:
        """Look a message up by server id or by any local id it carried."""
        return self._by_id.get(message_id)

    def canonical_id(self, message_id: str) -> str:
        return self._local_to_server.get(message_id, message_id)

    @property
    def pending_updates(self) -> int:
        return len(self._pending)

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, message: Message) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("[Messages] Listener raised")

    def _report(self, error: ChatSessionError) -> None:
        if self._on_error is None:
            logger.warning(f"[Messages] Unreported error: {error.message}")
            return
        try:
            self._on_error(error)
        except Exception:
            logger.exception("[Messages] Error callback raised")

    # =========================================================================
    # Sending
    # =========================================================================

    def send_text(self, room_id: str, content: str, sender_id: str) -> str:
        """Append a text message and emit it.

        The message is in the timeline before the emit is attempted. It
        becomes ``sent`` once the transport accepts the emit and ``failed``
        if the connection is down or the emit errors.

        Returns:
            The local id of the new message.
        """
        local_id = self._new_local_id()
        message = Message(
            local_id=local_id,
            room_id=room_id,
            sender_id=sender_id,
            content=TextContent(text=content),
        )
        self._local_senders.add(sender_id)
        self._append(message)

        payload = chat_message_payload(room_id, content, sender_id, local_id, message.created_at)
        task = self._connection.send(EventName.CHAT_MESSAGE, payload)
        if task is None:
            logger.warning(f"[Messages] Not connected, message {local_id} marked failed")
            self._set_status(message, MessageStatus.FAILED)
        else:
            task.add_done_callback(functools.partial(self._emit_done, message))
        return local_id

    def send_voice(self, room_id: str, clip: VoiceClip, duration: float, sender_id: str) -> str:
        """Append a voice message and upload its audio in the background.

        The message starts with a local ``blob:`` reference. On upload
        success the durable URL replaces it, the server id is reconciled when
        the upload returns one, and a ``voice-message`` event is emitted.

        Returns:
            The local id of the new message.
        """
        local_id = self._new_local_id()
        message = Message(
            local_id=local_id,
            room_id=room_id,
            sender_id=sender_id,
            content=VoiceContent(media_ref=f"blob:{local_id}", duration=duration),
        )
        self._local_senders.add(sender_id)
        self._append(message)

        if self._uploader is None:
            logger.warning("[Messages] No media uploader configured")
            self._fail_voice(message, None)
        else:
            self._tasks.spawn(self._upload_voice(message, clip), name=f"upload:{local_id}")
        return local_id

    async def _upload_voice(self, message: Message, clip: VoiceClip) -> None:
        content = message.content
        try:
            result = await self._uploader.upload_voice_message(
                clip,
                room_id=message.room_id,
                sender_id=message.sender_id,
                duration=content.duration,
                temp_id=message.local_id,
            )
        except Exception as exc:
            logger.warning(f"[Messages] Voice upload for {message.local_id} failed: {exc}")
            self._fail_voice(message, getattr(exc, "status_code", None))
            return

        message.content = VoiceContent(media_ref=result.file_url, duration=content.duration)
        if result.message_id:
            self._reconcile(message, result.message_id)
        self._set_status(message, MessageStatus.SENT)
        self._notify(message)

        payload = voice_message_payload(
            message.room_id,
            message.sender_id,
            message.id,
            result.file_url,
            content.duration,
            message.created_at,
        )
        task = self._connection.send(EventName.VOICE_MESSAGE, payload)
        if task is None:
            logger.warning(f"[Messages] Uploaded voice {message.id} could not be announced")
            self._set_status(message, MessageStatus.FAILED)
        else:
            task.add_done_callback(functools.partial(self._emit_done, message))

    def _fail_voice(self, message: Message, status_code: Optional[int]) -> None:
        self._set_status(message, MessageStatus.FAILED)
        self._report(MediaSendFailed(status_code=status_code))

    def _emit_done(self, message: Message, task: "asyncio.Task[Any]") -> None:
        if task.cancelled():
            return
        if task.exception() is not None:
            self._set_status(message, MessageStatus.FAILED)
        else:
            self._set_status(message, MessageStatus.SENT)

    def discard(self, message_id: str) -> bool:
        """Hide a failed message from ``visible``; it stays in the timeline."""
        message = self._by_id.get(message_id)
        if message is None or message.status is not MessageStatus.FAILED or message.discarded:
            return False
        message.discarded = True
        self._notify(message)
        return True

    # =========================================================================
    # Inbound events
    # =========================================================================

    def ingest(self, event: Any, room_id: Optional[str] = None) -> bool:
        """Apply one validated inbound event.

        Args:
            event: A model produced by ``parse_event``.
            room_id: Room to use when the event does not name one.

        Returns:
            True if any message changed.
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug(f"[Messages] No handler for {type(event).__name__}")
            return False
        return handler(event, room_id)

    def _on_chat_message(self, event: ChatMessageReceived, room_id: Optional[str]) -> bool:
        existing = self._find_echo(event.tempId, event.messageId)
        if existing is not None:
            return self._absorb_echo(existing, event.messageId)

        room = event.roomId or room_id
        if room is None:
            logger.debug("[Messages] chat-message without a room, ignored")
            return False
        message = Message(
            local_id=None if event.messageId else self._new_local_id(),
            server_id=event.messageId,
            room_id=room,
            sender_id=event.userId,
            content=TextContent(text=event.message),
            created_at=event.timestamp or utcnow(),
        )
        return self._admit_inbound(message)

    def _on_voice_message(self, event: VoiceMessageReceived, room_id: Optional[str]) -> bool:
        existing = self._find_echo(event.tempId, event.messageId)
        if existing is not None:
            return self._absorb_echo(existing, event.messageId)

        room = event.roomId or room_id
        if room is None:
            logger.debug("[Messages] voice-message without a room, ignored")
            return False
        message = Message(
            local_id=None if event.messageId else self._new_local_id(),
            server_id=event.messageId,
            room_id=room,
            sender_id=event.userId,
            content=VoiceContent(media_ref=event.fileUrl, duration=max(0.0, event.duration)),
            created_at=event.timestamp or utcnow(),
        )
        return self._admit_inbound(message)

    def _find_echo(self, temp_id: Optional[str], message_id: Optional[str]) -> Optional[Message]:
        if temp_id and temp_id in self._by_id:
            return self._by_id[temp_id]
        if message_id and message_id in self._by_id:
            return self._by_id[message_id]
        return None

    def _absorb_echo(self, message: Message, server_id: Optional[str]) -> bool:
        """An inbound copy of a message we already hold: reconcile, never duplicate."""
        changed = False
        if server_id:
            changed = self._reconcile(message, server_id)
        if message.status is MessageStatus.SENDING:
            changed = self._set_status(message, MessageStatus.SENT) or changed
        if not changed:
            logger.debug(f"[Messages] Duplicate of {message.id} ignored")
        return changed

    def _admit_inbound(self, message: Message) -> bool:
        # It reached this client, so from the sender's view it is delivered
        message.status = MessageStatus.DELIVERED
        message.delivered_at = utcnow()
        for update in self._pending.take(message.id):
            self._apply_status(message, update, notify=False)
        self._append(message)

        if message.server_id and message.sender_id not in self._local_senders:
            self._connection.send(EventName.MESSAGE_DELIVERED, delivered_payload(message.server_id))
        return True

    def _on_message_saved(self, event: MessageSaved, room_id: Optional[str]) -> bool:
        message = self._by_id.get(event.tempId)
        if message is None:
            logger.debug(f"[Messages] message-saved for unknown temp id {event.tempId}")
            return False
        changed = self._reconcile(message, event.realId)
        return self._set_status(message, MessageStatus.SENT) or changed

    def _on_status_changed(self, event: MessageStatusChanged, room_id: Optional[str]) -> bool:
        message = self._by_id.get(event.messageId)
        if message is None:
            self._pending.hold(event.messageId, event)
            return False
        return self._apply_status(message, event)

    def _apply_status(self, message: Message, event: MessageStatusChanged, notify: bool = True) -> bool:
        if event.senderId and event.senderId != message.sender_id:
            logger.debug(f"[Messages] {event.event} for {message.id} names another sender")
            return False

        status = event.effective_status
        if status is None or status is MessageStatus.FAILED:
            return False

        if status is MessageStatus.SEEN:
            # A message is never seen by its own author
            reporters = {user for user in event.reporters if user != message.sender_id}
            if not reporters:
                return False
            before = len(message.seen_by)
            message.seen_by.update(reporters)
            changed = len(message.seen_by) != before
            changed = self._advance(message, MessageStatus.SEEN) or changed
        else:
            changed = self._advance(message, status)

        if changed and notify:
            self._notify(message)
        return changed

    # =========================================================================
    # Status and identity
    # =========================================================================

    @staticmethod
    def _advance(message: Message, status: MessageStatus) -> bool:
        """Move *message* forward to *status*; lower or equal statuses are no-ops."""
        current = message.status
        if current is MessageStatus.FAILED:
            return False
        if status is MessageStatus.FAILED:
            if current in (MessageStatus.SENDING, MessageStatus.SENT):
                message.status = MessageStatus.FAILED
                return True
            return False
        if STATUS_RANK[status] <= STATUS_RANK[current]:
            return False

        message.status = status
        now = utcnow()
        if status in (MessageStatus.DELIVERED, MessageStatus.SEEN) and message.delivered_at is None:
            message.delivered_at = now
        if status is MessageStatus.SEEN and message.seen_at is None:
            message.seen_at = now
        return True

    def _set_status(self, message: Message, status: MessageStatus) -> bool:
        changed = self._advance(message, status)
        if changed:
            self._notify(message)
        return changed

    def _reconcile(self, message: Message, server_id: str) -> bool:
        """Give *message* its server id, keeping its timeline slot."""
        if message.server_id == server_id:
            return False
        if message.server_id is not None:
            logger.warning(
                f"[Messages] {message.local_id} already has server id {message.server_id}, "
                f"ignoring {server_id}"
            )
            return False
        other = self._by_id.get(server_id)
        if other is not None and other is not message:
            logger.warning(f"[Messages] Server id {server_id} already belongs to another message")
            return False

        message.server_id = server_id
        self._by_id[server_id] = message
        if message.local_id:
            self._local_to_server[message.local_id] = server_id
        logger.debug(f"[Messages] Reconciled {message.local_id} -> {server_id}")

        for update in self._pending.take(server_id):
            self._apply_status(message, update, notify=False)
        self._notify(message)
        return True

    def _append(self, message: Message) -> None:
        self._timelines.setdefault(message.room_id, []).append(message)
        self._index(message)
        self._notify(message)

    def _index(self, message: Message) -> None:
        if message.local_id:
            self._by_id[message.local_id] = message
        if message.server_id:
            self._by_id[message.server_id] = message

    # =========================================================================
    # Seen marking
    # =========================================================================

    def mark_visible_as_seen(self, room_id: str, viewer_id: str) -> int:
        """Schedule seen notifications for messages *viewer_id* has not seen.

        The notification fires after ``seen_delay``. Calls made while one is
        already scheduled join the same batch instead of restarting the delay.

        Returns:
            Number of messages waiting for the seen delay.
        """
        key = (room_id, viewer_id)
        candidates = self._seen_candidates.setdefault(key, {})
        for message in self._timelines.get(room_id, ()):
            if message.sender_id != viewer_id and viewer_id not in message.seen_by:
                candidates[message.key] = message

        if not candidates:
            del self._seen_candidates[key]
            return 0

        timer_key = ("seen", room_id, viewer_id)
        if not self._tasks.is_scheduled(timer_key):
            self._tasks.call_later(timer_key, self._settings.seen_delay, self._flush_seen, room_id, viewer_id)
        return len(candidates)

    def cancel_seen(self, room_id: str, viewer_id: str) -> bool:
        """Drop the scheduled seen notification of *viewer_id* in *room_id*."""
        self._seen_candidates.pop((room_id, viewer_id), None)
        return self._tasks.cancel(("seen", room_id, viewer_id))

    def _flush_seen(self, room_id: str, viewer_id: str) -> None:
        candidates = self._seen_candidates.pop((room_id, viewer_id), {})
        events = SEEN_NOTIFICATION_EVENTS if self._settings.redundant_seen_events else (EventName.MESSAGE_SEEN,)
        for message in candidates.values():
            # Re-check at fire time: history may have recorded the viewer meanwhile
            if message.sender_id == viewer_id or viewer_id in message.seen_by:
                continue
            message.seen_by.add(viewer_id)
            if message.seen_at is None:
                message.seen_at = utcnow()
            self._notify(message)

            if message.server_id is None:
                logger.debug(f"[Messages] {message.id} has no server id, seen kept local")
                continue
            payload = seen_payload(message.server_id, viewer_id, message.sender_id, room_id)
            for name in events:
                self._connection.send(name, payload)

    # =========================================================================
    # History
    # =========================================================================

    def load_history(self, room_id: str, messages: Iterable[Message]) -> int:
        """Merge messages fetched over REST into the timeline of *room_id*.

        Known messages are only moved forward (status, seen-by). Unknown ones
        are inserted before the first entry created after them; existing
        entries never move.

        Returns:
            Number of messages added.
        """
        timeline = self._timelines.setdefault(room_id, [])
        added = 0
        for incoming in messages:
            existing = self._by_id.get(incoming.server_id) if incoming.server_id else None
            if existing is not None:
                self._merge_known(existing, incoming)
                continue
            pending = self._match_pending(timeline, incoming)
            if pending is not None:
                self._reconcile(pending, incoming.server_id)
                self._merge_known(pending, incoming)
                continue

            for update in self._pending.take(incoming.id):
                self._apply_status(incoming, update, notify=False)
            position = next(
                (i for i, m in enumerate(timeline) if m.created_at > incoming.created_at),
                len(timeline),
            )
            timeline.insert(position, incoming)
            self._index(incoming)
            self._notify(incoming)
            added += 1

        logger.info(f"[Messages] History for {room_id}: {added} new, {len(timeline)} total")
        return added

    def _match_pending(self, timeline: List[Message], incoming: Message) -> Optional[Message]:
        """Find the own unsaved message that *incoming* is the stored copy of.

        History can arrive before ``message-saved``, in which case the record
        carries a server id the optimistic entry does not know yet.
        """
        if not incoming.server_id or incoming.sender_id not in self._local_senders:
            return None
        for message in timeline:
            if (
                message.server_id is None
                and message.status in (MessageStatus.SENDING, MessageStatus.SENT)
                and message.sender_id == incoming.sender_id
                and _same_content(message, incoming)
                and abs(message.created_at - incoming.created_at) <= PENDING_MATCH_WINDOW
            ):
                return message
        return None

    def _merge_known(self, existing: Message, incoming: Message) -> None:
        changed = self._advance(existing, incoming.status)
        new_viewers = incoming.seen_by - existing.seen_by - {existing.sender_id}
        if new_viewers:
            existing.seen_by.update(new_viewers)
            changed = True
        if incoming.seen_at and existing.seen_at is None:
            existing.seen_at = incoming.seen_at
        if changed:
            self._notify(existing)

    # =========================================================================
    # Teardown
    # =========================================================================

    def close(self) -> None:
        """Cancel seen timers, pending expiries and uploads."""
        self._seen_candidates.clear()
        self._pending.clear()
        self._tasks.close()

    async def aclose(self) -> None:
        self._seen_candidates.clear()
        self._pending.clear()
        await self._tasks.aclose()


def _same_content(a: Message, b: Message) -> bool:
    if isinstance(a.content, TextContent) and isinstance(b.content, TextContent):
        return a.content.text == b.content.text
    if isinstance(a.content, VoiceContent) and isinstance(b.content, VoiceContent):
        return a.content.media_ref == b.content.media_ref
    return False
