"""Tests for ConnectionManager: state signal, subscriptions and emission."""
import pytest
import socketio

from duochat.config import AppSettings, Secrets, TransportSettings
from duochat.connection.events import EventName
from duochat.connection.manager import ConnectionManager, ConnectionState
from duochat.errors import ConnectionLost

from conftest import drain, make_sio


def _manager(**settings_overrides):
    sio = make_sio()
    settings = AppSettings(**settings_overrides)
    return ConnectionManager(settings, client=sio), sio


class TestLifecycle:
    """connect / disconnect and the three-state signal."""

    @pytest.mark.asyncio
    async def test_connect_transitions(self):
        """disconnected -> connecting -> connected, observed by listeners."""
        manager, sio = _manager()
        transitions = []
        manager.add_state_listener(lambda state, previous: transitions.append((previous, state)))

        await manager.connect()

        assert manager.state is ConnectionState.CONNECTED
        assert manager.is_connected
        assert transitions == [
            (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING),
            (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
        ]
        sio.connect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_passes_transport_options_and_token(self):
        manager, sio = _manager(
            transport=TransportSettings(transports=["websocket"], socketio_path="ws"),
            secrets=Secrets(auth_token="s3cret"),
        )
        await manager.connect()

        args, kwargs = sio.connect.await_args
        assert args[0] == "http://localhost:3000"
        assert kwargs["transports"] == ["websocket"]
        assert kwargs["socketio_path"] == "ws"
        assert kwargs["headers"] == {"Authorization": "Bearer s3cret"}

    @pytest.mark.asyncio
    async def test_connect_failure_raises_connection_lost(self):
        manager, sio = _manager()
        sio.connect.side_effect = socketio.exceptions.ConnectionError("refused")

        with pytest.raises(ConnectionLost) as exc_info:
            await manager.connect()

        assert exc_info.value.recoverable is True
        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.last_error == "Failed to connect to server"

    @pytest.mark.asyncio
    async def test_connect_is_noop_when_not_disconnected(self):
        manager, sio = _manager()
        await manager.connect()
        await manager.connect()
        sio.connect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_server_drop_moves_to_connecting(self):
        """A drop while reconnection is enabled is retried by the transport."""
        manager, sio = _manager()
        await manager.connect()

        await sio.handlers["disconnect"]("transport close")
        assert manager.state is ConnectionState.CONNECTING
        assert manager.last_error == "Connection lost"

        await sio.handlers["connect"]()
        assert manager.state is ConnectionState.CONNECTED
        assert manager.last_error is None

    @pytest.mark.asyncio
    async def test_drop_without_reconnection_is_final(self):
        manager, sio = _manager(transport=TransportSettings(reconnection=False))
        await manager.connect()
        await sio.handlers["disconnect"]()
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_client_disconnect(self):
        manager, sio = _manager()
        await manager.connect()
        await manager.disconnect()
        # The transport reports its own disconnect afterwards
        await sio.handlers["disconnect"]("io client disconnect")

        sio.disconnect.assert_awaited_once()
        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.last_error is None

    @pytest.mark.asyncio
    async def test_connect_error_sets_banner(self):
        manager, sio = _manager()
        await sio.handlers["connect_error"]({"message": "nope"})
        assert manager.last_error == "Failed to connect to server"

    @pytest.mark.asyncio
    async def test_failing_state_listener_does_not_break_others(self):
        manager, _ = _manager()
        seen = []

        def broken(state, previous):
            raise RuntimeError("listener bug")

        manager.add_state_listener(broken)
        manager.add_state_listener(lambda state, previous: seen.append(state))
        await manager.connect()
        assert seen == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(self):
        manager, _ = _manager()
        seen = []
        listener = lambda state, previous: seen.append(state)  # noqa: E731
        manager.add_state_listener(listener)
        manager.remove_state_listener(listener)
        await manager.connect()
        assert seen == []


class TestSubscriptions:
    """Typed subscription surface."""

    @pytest.mark.asyncio
    async def test_handlers_fire_in_registration_order(self):
        manager, sio = _manager()
        calls = []
        manager.subscribe(EventName.CHAT_MESSAGE, lambda p: calls.append(("first", p)))
        manager.subscribe("chat-message", lambda p: calls.append(("second", p)))

        await sio.handlers["chat-message"]({"n": 1})

        assert calls == [("first", {"n": 1}), ("second", {"n": 1})]

    def test_one_bridge_per_event(self):
        """The Socket.IO client sees one handler per event name, however many subscribers."""
        manager, sio = _manager()
        manager.subscribe("user-typing", lambda p: None)
        manager.subscribe("user-typing", lambda p: None)
        names = [c.args[0] for c in sio.on.call_args_list]
        assert names.count("user-typing") == 1

    def test_no_catch_all_handler(self):
        manager, sio = _manager()
        names = {c.args[0] for c in sio.on.call_args_list}
        assert names == {"connect", "disconnect", "connect_error"}
        assert "*" not in sio.handlers

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_later_handlers(self):
        manager, sio = _manager()
        calls = []

        def broken(payload):
            raise ValueError("bad handler")

        manager.subscribe("online-users", broken)
        manager.subscribe("online-users", calls.append)
        await sio.handlers["online-users"](["a"])
        assert calls == [["a"]]

    def test_unsubscribe_is_symmetric(self):
        manager, _ = _manager()
        first = manager.subscribe("user-online", lambda p: None)
        second = manager.subscribe("user-online", lambda p: None)
        assert manager.handler_count("user-online") == 2

        assert manager.unsubscribe(first) is True
        assert manager.unsubscribe(first) is False
        assert manager.handler_count(EventName.USER_ONLINE) == 1
        manager.unsubscribe(second)
        assert manager.handler_count("user-online") == 0

    def test_dispatch_returns_handler_count(self):
        manager, _ = _manager()
        manager.subscribe("room-participants", lambda p: None)
        assert manager.dispatch("room-participants", {"roomId": "r", "count": 2}) == 1
        assert manager.dispatch("user-offline", "x") == 0

    def test_lifecycle_events_cannot_be_subscribed(self):
        manager, _ = _manager()
        with pytest.raises(ValueError):
            manager.subscribe("disconnect", lambda p: None)


class TestSend:
    """Fire-and-forget emission with no buffering."""

    @pytest.mark.asyncio
    async def test_send_while_disconnected_is_dropped(self):
        manager, sio = _manager()
        assert manager.send("typing", {"isTyping": True}) is None
        sio.emit.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_while_connecting_is_dropped(self):
        manager, sio = _manager()
        await manager.connect()
        await sio.handlers["disconnect"]("ping timeout")
        assert manager.send(EventName.JOIN_ROOM, "r1") is None
        # Nothing is replayed after reconnecting
        await sio.handlers["connect"]()
        await drain()
        sio.emit.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_emits_in_background(self):
        manager, sio = _manager()
        await manager.connect()
        task = manager.send(EventName.JOIN_ROOM, "r1")
        assert task is not None
        await task
        sio.emit.assert_awaited_once_with("join-room", "r1")

    @pytest.mark.asyncio
    async def test_close_cancels_pending_emits(self):
        manager, sio = _manager()
        await manager.connect()
        task = manager.send("typing", {"isTyping": False})
        await manager.close()
        assert task.cancelled() or task.done()
        assert manager.state is ConnectionState.DISCONNECTED
