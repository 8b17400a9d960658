"""Chat session: builds the engine's components and wires them together.

Exactly one ConnectionManager, ApiClient, MessageStore and PresenceTracker
exist per session. They are created here and handed to each room controller
by reference; nothing is kept in module-level state.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
import socketio

from duochat.api.client import ApiClient
from duochat.config import AppSettings, get_config
from duochat.connection.manager import ConnectionManager
from duochat.errors import ChatSessionError, ConnectionLost
from duochat.messages.store import MessageStore
from duochat.presence.tracker import PresenceTracker
from duochat.rooms.controller import RoomSessionController

logger = logging.getLogger(__name__)

ErrorListener = Callable[[ChatSessionError], None]


class ChatSession:
    """Composition root for one client session.

    Args:
        settings: Application settings; loaded from the YAML files if omitted.
        user_id: Known local user id; generated on first room open otherwise.
        sio_client: Pre-built Socket.IO client (tests).
        http_transport: Custom httpx transport for the REST client (tests).
    """

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        user_id: Optional[str] = None,
        sio_client: Optional[socketio.AsyncClient] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_config()
        self.user_id = user_id
        self._error_listeners: List[ErrorListener] = []
        self.rooms: Dict[str, RoomSessionController] = {}

        self.connection = ConnectionManager(self.settings, client=sio_client)
        self.api = ApiClient(
            self.settings.server.api_base_url,
            timeout=self.settings.server.request_timeout,
            auth_token=self.settings.secrets.auth_token,
            transport=http_transport,
        )
        self.store = MessageStore(
            self.connection,
            uploader=self.api,
            settings=self.settings.messages,
            on_error=self._dispatch_error,
        )
        self.presence = PresenceTracker()

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def remove_error_listener(self, listener: ErrorListener) -> None:
        if listener in self._error_listeners:
            self._error_listeners.remove(listener)

    def _dispatch_error(self, error: ChatSessionError) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("[Session] Error listener raised")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Attach presence tracking and connect the transport."""
        self.presence.attach(self.connection)
        try:
            await self.connection.connect()
        except ConnectionLost as error:
            self._dispatch_error(error)
            raise

    async def open_room(self, room_id: str) -> RoomSessionController:
        """Open *room_id*, or return its controller if it is already open."""
        if room_id in self.rooms:
            return self.rooms[room_id]

        controller = RoomSessionController(
            room_id,
            self.connection,
            self.api,
            self.store,
            self.presence,
            self.settings,
            user_id=self.user_id,
            on_error=self._dispatch_error,
        )
        try:
            await controller.open()
        except ChatSessionError as error:
            await controller.close()
            self._dispatch_error(error)
            raise

        # A generated identity is reused for every later room
        self.user_id = controller.user_id
        self.rooms[room_id] = controller
        return controller

    async def close_room(self, room_id: str) -> None:
        controller = self.rooms.pop(room_id, None)
        if controller is not None:
            await controller.close()

    async def aclose(self) -> None:
        """Close every room, then the shared components."""
        for room_id in list(self.rooms):
            await self.close_room(room_id)
        self.presence.detach()
        await self.store.aclose()
        await self.connection.close()
        await self.api.aclose()
        logger.info("[Session] Closed")
