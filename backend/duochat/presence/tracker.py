"""Presence Tracker: the set of users the server reports as online.

Presence is global (not per room) and entirely server-asserted: there is no
heartbeat or client-side timeout. Three event shapes are handled:

    online-users   full replace (sent on connect)
    user-online    add, idempotent
    user-offline   remove, idempotent against absence
"""
import logging
from typing import Any, Callable, FrozenSet, List, Optional, Set

from duochat.connection.events import EventName, OnlineUsers, UserOffline, UserOnline, parse_event
from duochat.connection.manager import ConnectionManager, ConnectionState, Subscription

logger = logging.getLogger(__name__)

PRESENCE_EVENTS = (EventName.ONLINE_USERS, EventName.USER_ONLINE, EventName.USER_OFFLINE)


class PresenceTracker:
    def __init__(self) -> None:
        self._online: Set[str] = set()
        self._connection: Optional[ConnectionManager] = None
        self._subscriptions: List[Subscription] = []
        self._listeners: List[Callable[[FrozenSet[str]], None]] = []

    @property
    def online_users(self) -> FrozenSet[str]:
        return frozenset(self._online)

    def is_online(self, user_id: Optional[str]) -> bool:
        return user_id is not None and user_id in self._online

    def add_listener(self, listener: Callable[[FrozenSet[str]], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[FrozenSet[str]], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def ingest(self, event: Any) -> bool:
        """Apply a presence event; returns True if the set changed."""
        if isinstance(event, OnlineUsers):
            users = set(event.users)
            changed = users != self._online
            self._online = users
        elif isinstance(event, UserOnline):
            changed = event.userId not in self._online
            self._online.add(event.userId)
        elif isinstance(event, UserOffline):
            changed = event.userId in self._online
            self._online.discard(event.userId)
        else:
            return False

        if changed:
            logger.debug(f"[Presence] {len(self._online)} user(s) online")
            self._changed()
        return changed

    def clear(self) -> None:
        if self._online:
            self._online.clear()
            self._changed()

    def _changed(self) -> None:
        snapshot = self.online_users
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("[Presence] Listener raised")

    # ------------------------------------------------------------------
    # Connection wiring
    # ------------------------------------------------------------------

    def attach(self, connection: ConnectionManager) -> None:
        """Subscribe to presence events; pair every attach with detach()."""
        if self._connection is not None:
            raise RuntimeError("PresenceTracker is already attached")
        self._connection = connection
        for name in PRESENCE_EVENTS:
            self._subscriptions.append(
                connection.subscribe(name, lambda payload, name=name: self._on_raw(name, payload))
            )
        connection.add_state_listener(self._on_state)

    def detach(self) -> None:
        if self._connection is None:
            return
        for subscription in self._subscriptions:
            self._connection.unsubscribe(subscription)
        self._subscriptions.clear()
        self._connection.remove_state_listener(self._on_state)
        self._connection = None

    def _on_raw(self, name: EventName, payload: Any) -> None:
        event = parse_event(name, payload)
        if event is not None:
            self.ingest(event)

    def _on_state(self, state: ConnectionState, previous: ConnectionState) -> None:
        # Nothing is known about liveness while offline; the server resends
        # the full set on reconnect.
        if previous is ConnectionState.CONNECTED and state is not ConnectionState.CONNECTED:
            self.clear()
