"""Socket.IO connection manager shared by every component of a session.

This module owns the single transport connection to the chat server and
exposes it to the rest of the client as a small, typed surface: a
three-state connection signal, fire-and-forget emission, and ordered
per-event subscriptions.

Key features:
    - Three observable states (disconnected, connecting, connected)
    - Transport-level reconnection with backoff, hidden behind the state signal
    - Multiple subscribers per event, fired in registration order
    - Explicit per-event bridging (no catch-all listener)
    - No outbound buffering: sends while not connected are dropped

Thread Safety:
    Designed for a single asyncio event loop. Handlers run sequentially on
    that loop, so no locking is needed; it is NOT thread-safe.

Note:
    One instance is created per session and passed by reference to the
    components that need it. Room membership is not remembered here; the
    room controller re-joins after every reconnect.
"""
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

import asyncio
import socketio

from duochat.config import AppSettings, TransportSettings
from duochat.connection.events import EventName
from duochat.errors import ConnectionLost
from duochat.scheduling import TaskScheduler

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

LOST_CONNECTION_MESSAGE = "Connection lost"
CONNECT_FAILED_MESSAGE = "Failed to connect to server"

# Lifecycle events are observed through state listeners, never subscribed to.
LIFECYCLE_EVENTS = frozenset({
    EventName.CONNECT.value,
    EventName.DISCONNECT.value,
    EventName.CONNECT_ERROR.value,
})


# =============================================================================
# Data Models
# =============================================================================


class ConnectionState(str, Enum):
    """Connection signal observed by the rest of the client.

    Attributes:
        DISCONNECTED: No transport and no retry in progress.
        CONNECTING: Initial connect or transport-level reconnect in progress.
        CONNECTED: Events flow in both directions.
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


EventHandler = Callable[[Any], None]
StateListener = Callable[[ConnectionState, ConnectionState], None]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by subscribe(); pass it back to unsubscribe()."""
    event: str
    handler: EventHandler = field(compare=False)
    token: int = 0


def _event_name(event: Union[str, EventName]) -> str:
    return event.value if isinstance(event, EventName) else event


# =============================================================================
# Connection Manager
# =============================================================================


class ConnectionManager:
    """Owns the Socket.IO client and fans events out to subscribers.

    Args:
        settings: Application settings (server URL, transport options, token).
        client: Pre-built Socket.IO client; built from settings when omitted.
    """

    def __init__(
        self,
        settings: AppSettings,
        client: Optional[socketio.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._client = client if client is not None else self._build_client(settings.transport)
        self._state = ConnectionState.DISCONNECTED
        self._closing = False
        self.last_error: Optional[str] = None

        # event name -> subscriptions in registration order
        self._handlers: Dict[str, List[Subscription]] = {}
        # event names with a bridge registered on the Socket.IO client
        self._bridged: Set[str] = set()
        self._state_listeners: List[StateListener] = []
        self._tokens = itertools.count(1)
        # in-flight emits
        self._tasks = TaskScheduler("connection")

        self._client.on(EventName.CONNECT.value, handler=self._on_connect)
        self._client.on(EventName.DISCONNECT.value, handler=self._on_disconnect)
        self._client.on(EventName.CONNECT_ERROR.value, handler=self._on_connect_error)

    @staticmethod
    def _build_client(transport: TransportSettings) -> socketio.AsyncClient:
        return socketio.AsyncClient(
            reconnection=transport.reconnection,
            reconnection_attempts=transport.reconnection_attempts,
            reconnection_delay=transport.reconnection_delay,
            reconnection_delay_max=transport.reconnection_delay_max,
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def add_state_listener(self, listener: StateListener) -> None:
        """Register *listener(state, previous)* for every state transition."""
        self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._state_listeners:
            self._state_listeners.remove(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        logger.info(f"[Connection] {previous.value} -> {state.value}")
        for listener in list(self._state_listeners):
            try:
                listener(state, previous)
            except Exception:
                logger.exception("[Connection] State listener raised")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> None:
        """Open the transport: disconnected -> connecting -> connected.

        The transport retries on its own according to the reconnection
        settings; this only returns once connected or once retries are
        exhausted.

        Raises:
            ConnectionLost: If the transport gave up without connecting.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            return
        self._closing = False
        self._set_state(ConnectionState.CONNECTING)

        headers: Dict[str, str] = {}
        token = self._settings.secrets.auth_token
        if token:
            headers["Authorization"] = f"Bearer {token}"

        transport = self._settings.transport
        try:
            await self._client.connect(
                self._settings.server.socket_url,
                headers=headers,
                transports=transport.transports,
                socketio_path=transport.socketio_path,
                retry=transport.reconnection,
            )
        except socketio.exceptions.ConnectionError as exc:
            self.last_error = CONNECT_FAILED_MESSAGE
            logger.error(f"[Connection] Could not connect to {self._settings.server.socket_url}: {exc}")
            self._set_state(ConnectionState.DISCONNECTED)
            raise ConnectionLost(CONNECT_FAILED_MESSAGE) from exc

        # The connect handler normally got here first
        if self._client.connected:
            self.last_error = None
            self._set_state(ConnectionState.CONNECTED)

    async def disconnect(self) -> None:
        """Close the transport on request; no reconnection follows."""
        self._closing = True
        if self._state is not ConnectionState.DISCONNECTED:
            await self._client.disconnect()
        self.last_error = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        """Disconnect and cancel emits still in flight."""
        await self.disconnect()
        await self._tasks.aclose()

    async def wait(self) -> None:
        """Block until the transport is closed for good."""
        await self._client.wait()

    async def _on_connect(self) -> None:
        self.last_error = None
        self._set_state(ConnectionState.CONNECTED)

    async def _on_disconnect(self, reason: Any = None) -> None:
        if self._closing or not self._settings.transport.reconnection:
            logger.info(f"[Connection] Disconnected ({reason or 'client request'})")
            self._set_state(ConnectionState.DISCONNECTED)
            return
        logger.warning(f"[Connection] Connection lost ({reason or 'unknown reason'}); transport will retry")
        self.last_error = LOST_CONNECTION_MESSAGE
        self._set_state(ConnectionState.CONNECTING)

    async def _on_connect_error(self, data: Any = None) -> None:
        logger.warning(f"[Connection] Connection error: {data}")
        self.last_error = CONNECT_FAILED_MESSAGE

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, event: Union[str, EventName], handler: EventHandler) -> Subscription:
        """Register *handler(payload)* for *event*.

        Handlers for the same event fire in registration order. Every
        subscription must be released with unsubscribe() on teardown.

        Args:
            event: Inbound event name.
            handler: Synchronous callable receiving the raw payload.

        Returns:
            Subscription handle for unsubscribe().
        """
        name = _event_name(event)
        if name in LIFECYCLE_EVENTS:
            raise ValueError(f"Use add_state_listener() for lifecycle event {name!r}")

        subscription = Subscription(event=name, handler=handler, token=next(self._tokens))
        self._handlers.setdefault(name, []).append(subscription)

        if name not in self._bridged:
            self._client.on(name, handler=self._make_bridge(name))
            self._bridged.add(name)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Release a subscription; returns False if it was not registered."""
        handlers = self._handlers.get(subscription.event, [])
        remaining = [sub for sub in handlers if sub.token != subscription.token]
        if len(remaining) == len(handlers):
            return False
        self._handlers[subscription.event] = remaining
        return True

    def handler_count(self, event: Union[str, EventName]) -> int:
        return len(self._handlers.get(_event_name(event), []))

    def _make_bridge(self, name: str) -> Callable[..., Any]:
        async def bridge(*args: Any) -> None:
            self.dispatch(name, args[0] if args else None)
        return bridge

    def dispatch(self, event: Union[str, EventName], payload: Any) -> int:
        """Deliver *payload* to every subscriber of *event*.

        A failing handler is logged and does not stop later handlers.

        Returns:
            Number of handlers invoked.
        """
        name = _event_name(event)
        subscriptions = list(self._handlers.get(name, ()))
        for subscription in subscriptions:
            try:
                subscription.handler(payload)
            except Exception:
                logger.exception(f"[Connection] Handler for {name} raised")
        return len(subscriptions)

    # =========================================================================
    # Emission
    # =========================================================================

    def send(self, event: Union[str, EventName], payload: Any) -> Optional[asyncio.Task]:
        """Emit *event* without waiting for it.

        Nothing is queued while not connected: the send is dropped and the
        caller decides what that means.

        Returns:
            The emit task, or None if the send was dropped.
        """
        name = _event_name(event)
        if self._state is not ConnectionState.CONNECTED:
            logger.debug(f"[Connection] Dropping {name} while {self._state.value}")
            return None
        return self._tasks.spawn(self._client.emit(name, payload), name=f"emit:{name}")
