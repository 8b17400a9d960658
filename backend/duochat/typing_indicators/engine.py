"""Typing Protocol Engine: coarse typing indicator plus live typing preview.

Two independent protocols share this engine:

Coarse typing
    Outbound ``typing`` true on the first keystroke after idle, false after
    ``idle_timeout`` without keystrokes or immediately on send. Inbound state
    is a plain set of user ids with no client-side expiry: if the peer's
    ``false`` is lost the indicator stays on until the next event from them.

Live typing
    Outbound ``live-typing`` snapshots (full content + cursor, never deltas)
    throttled to one per ``live_throttle``, with a trailing snapshot at the
    end of the window. ``start_typing`` opens a burst; ``stop_typing`` closes
    it on send, on empty input, or ``live_stop_delay`` after the last
    keystroke. Inbound previews expire ``live_expiry`` after their last
    update even without a stop event.

All timers belong to one TaskScheduler and are cancelled together by close().
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set, Tuple, Union

from duochat.config import TypingSettings
from duochat.connection.events import (
    EventName,
    LiveTypingAction,
    UserLiveTyping,
    UserStoppedLiveTyping,
    UserTyping,
    live_typing_payload,
    typing_payload,
)
from duochat.connection.manager import ConnectionManager
from duochat.scheduling import TaskScheduler

logger = logging.getLogger(__name__)

SPECIAL_KEYS = (LiveTypingAction.BACKSPACE, LiveTypingAction.DELETE)

# Timer keys
_IDLE = "typing-idle"
_LIVE_STOP = "live-stop"
_LIVE_FLUSH = "live-flush"


@dataclass
class LivePreview:
    """Latest live-typing snapshot received from one remote user."""
    content: str
    cursor_position: int
    updated_at: float


class TypingEngine:
    """Typing state for one room, local and remote.

    Args:
        connection: Shared connection used for outbound frames.
        room_id: Room the frames belong to; events for other rooms are ignored.
        user_id: Local user; our own echoes are ignored.
        settings: Protocol timings.
        clock: Monotonic clock in seconds (injectable for tests).
    """

    def __init__(
        self,
        connection: ConnectionManager,
        room_id: str,
        user_id: str,
        settings: Optional[TypingSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connection = connection
        self.room_id = room_id
        self.user_id = user_id
        self._settings = settings or TypingSettings()
        self._clock = clock

        # Local side
        self._typing_announced = False
        self._live_active = False
        self._last_snapshot_at: Optional[float] = None
        self._pending_snapshot: Optional[Tuple[str, int]] = None

        # Remote side
        self._typing_users: Set[str] = set()
        self._previews: Dict[str, LivePreview] = {}
        self._listeners: List[Callable[[], None]] = []

        self._tasks = TaskScheduler(f"typing:{room_id}")

    # ------------------------------------------------------------------
    # Local input
    # ------------------------------------------------------------------

    @property
    def is_typing(self) -> bool:
        return self._typing_announced

    @property
    def live_active(self) -> bool:
        return self._live_active

    def input_changed(self, content: str, cursor_position: Optional[int] = None) -> None:
        """Report the full current input after a keystroke."""
        if self._tasks.closed:
            return
        if not content:
            self.stop_typing()
            return
        if cursor_position is None:
            cursor_position = len(content)

        if not self._typing_announced:
            self._typing_announced = True
            self._emit(EventName.TYPING, typing_payload(self.room_id, self.user_id, True))

        if not self._live_active:
            self._live_active = True
            self._emit_snapshot(content, cursor_position, LiveTypingAction.START_TYPING)
        else:
            self._throttle_snapshot(content, cursor_position)

        self._tasks.call_later(_IDLE, self._settings.idle_timeout, self._typing_idle)
        self._tasks.call_later(_LIVE_STOP, self._settings.live_stop_delay, self._live_idle)

    def special_key(self, action: Union[str, LiveTypingAction], cursor_position: int) -> None:
        """Forward a backspace/delete as a content-free edit signal."""
        action = LiveTypingAction(action)
        if action not in SPECIAL_KEYS:
            raise ValueError(f"Unsupported special key action: {action.value}")
        if self._tasks.closed:
            return
        self._emit(
            EventName.LIVE_TYPING,
            live_typing_payload(self.room_id, self.user_id, action, cursor_position=cursor_position),
        )
        if self._live_active:
            self._tasks.call_later(_LIVE_STOP, self._settings.live_stop_delay, self._live_idle)

    def stop_typing(self) -> None:
        """End both protocols now (message sent, input cleared, teardown)."""
        for key in (_IDLE, _LIVE_STOP, _LIVE_FLUSH):
            self._tasks.cancel(key)
        self._pending_snapshot = None
        self._last_snapshot_at = None

        if self._typing_announced:
            self._typing_announced = False
            self._emit(EventName.TYPING, typing_payload(self.room_id, self.user_id, False))
        if self._live_active:
            self._live_active = False
            self._emit(
                EventName.LIVE_TYPING,
                live_typing_payload(self.room_id, self.user_id, LiveTypingAction.STOP_TYPING),
            )

    def _throttle_snapshot(self, content: str, cursor_position: int) -> None:
        now = self._clock()
        elapsed = now - self._last_snapshot_at if self._last_snapshot_at is not None else None
        if elapsed is None or elapsed >= self._settings.live_throttle:
            self._emit_snapshot(content, cursor_position)
            return
        # Inside the window: keep only the newest state for the trailing flush
        self._pending_snapshot = (content, cursor_position)
        if not self._tasks.is_scheduled(_LIVE_FLUSH):
            self._tasks.call_later(_LIVE_FLUSH, self._settings.live_throttle - elapsed, self._flush_snapshot)

    def _flush_snapshot(self) -> None:
        if self._pending_snapshot is not None and self._live_active:
            self._emit_snapshot(*self._pending_snapshot)

    def _emit_snapshot(
        self,
        content: str,
        cursor_position: int,
        action: LiveTypingAction = LiveTypingAction.TYPING,
    ) -> None:
        self._last_snapshot_at = self._clock()
        self._pending_snapshot = None
        self._tasks.cancel(_LIVE_FLUSH)
        self._emit(
            EventName.LIVE_TYPING,
            live_typing_payload(self.room_id, self.user_id, action, content, cursor_position),
        )

    def _typing_idle(self) -> None:
        if self._typing_announced:
            self._typing_announced = False
            self._emit(EventName.TYPING, typing_payload(self.room_id, self.user_id, False))

    def _live_idle(self) -> None:
        if not self._live_active:
            return
        self._flush_snapshot()
        self._tasks.cancel(_LIVE_FLUSH)
        self._live_active = False
        self._last_snapshot_at = None
        self._emit(
            EventName.LIVE_TYPING,
            live_typing_payload(self.room_id, self.user_id, LiveTypingAction.STOP_TYPING),
        )

    def _emit(self, event: EventName, payload: Dict[str, Any]) -> None:
        if self._connection.send(event, payload) is None:
            logger.debug(f"[Typing] {event.value} dropped while offline")

    # ------------------------------------------------------------------
    # Remote state
    # ------------------------------------------------------------------

    @property
    def typing_users(self) -> FrozenSet[str]:
        """Users whose last coarse typing event said true (best effort)."""
        return frozenset(self._typing_users)

    @property
    def live_previews(self) -> Dict[str, LivePreview]:
        return dict(self._previews)

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def ingest(self, event: Any) -> bool:
        """Apply an inbound typing event; returns True if remote state changed."""
        if isinstance(event, (UserTyping, UserLiveTyping, UserStoppedLiveTyping)):
            if event.userId == self.user_id:
                return False
            if event.roomId and event.roomId != self.room_id:
                return False
        if isinstance(event, UserTyping):
            changed = self._on_user_typing(event)
        elif isinstance(event, UserLiveTyping):
            changed = self._on_live_typing(event)
        elif isinstance(event, UserStoppedLiveTyping):
            changed = self._clear_preview(event.userId)
        else:
            logger.debug(f"[Typing] Ignoring {type(event).__name__}")
            return False
        if changed:
            self._changed()
        return changed

    def _on_user_typing(self, event: UserTyping) -> bool:
        if event.isTyping:
            if event.userId in self._typing_users:
                return False
            self._typing_users.add(event.userId)
            return True
        if event.userId not in self._typing_users:
            return False
        self._typing_users.discard(event.userId)
        return True

    def _on_live_typing(self, event: UserLiveTyping) -> bool:
        user_id = event.userId
        if event.action is LiveTypingAction.STOP_TYPING:
            return self._clear_preview(user_id)

        now = self._clock()
        preview = self._previews.get(user_id)
        if event.action in SPECIAL_KEYS:
            if preview is None:
                return False
            if event.cursorPosition is not None:
                preview.cursor_position = min(event.cursorPosition, len(preview.content))
            preview.updated_at = now
        else:
            content = event.content if event.content is not None else (preview.content if preview else "")
            if not content:
                return self._clear_preview(user_id)
            cursor = event.cursorPosition if event.cursorPosition is not None else len(content)
            self._previews[user_id] = LivePreview(content, min(cursor, len(content)), now)

        self._tasks.call_later(("live-expiry", user_id), self._settings.live_expiry, self._expire_preview, user_id)
        return True

    def _clear_preview(self, user_id: str) -> bool:
        self._tasks.cancel(("live-expiry", user_id))
        return self._previews.pop(user_id, None) is not None

    def _expire_preview(self, user_id: str) -> None:
        if self._previews.pop(user_id, None) is not None:
            logger.debug(f"[Typing] Live preview for {user_id} expired")
            self._changed()

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("[Typing] Listener raised")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Cancel every timer; nothing from this engine fires afterwards."""
        self._tasks.close()
        self._previews.clear()
        self._typing_users.clear()
        self._pending_snapshot = None
