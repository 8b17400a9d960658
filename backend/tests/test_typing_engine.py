"""Tests for the Typing Protocol Engine.

Covers:
* Outbound coarse typing: start on first keystroke, stop on idle/send/clear
* Outbound live typing: start_typing, throttled snapshots, trailing flush,
  safety-net stop, special keys
* Inbound state: coarse set without expiry, live previews with expiry
* Teardown: no timer fires after close()
"""
import asyncio

import pytest

from duochat.connection.events import parse_event
from duochat.typing_indicators.engine import TypingEngine

from conftest import emitted

ROOM = "r1"
ME = "me"
PEER = "bob"


def ev(name, **payload):
    event = parse_event(name, payload)
    assert event is not None
    return event


@pytest.fixture
def engine(connection, settings):
    engine = TypingEngine(connection, ROOM, ME, settings.typing)
    yield engine
    engine.close()


def live_actions(sio):
    return [p["action"] for p in emitted(sio, "live-typing")]


class TestCoarseTypingOutbound:
    @pytest.mark.asyncio
    async def test_first_keystroke_announces_typing_once(self, engine, sio):
        engine.input_changed("h")
        engine.input_changed("he")
        engine.input_changed("hel")
        assert emitted(sio, "typing") == [{"roomId": ROOM, "userId": ME, "isTyping": True}]
        assert engine.is_typing

    @pytest.mark.asyncio
    async def test_idle_timeout_sends_false(self, engine, sio):
        engine.input_changed("h")
        await asyncio.sleep(0.1)
        engine.input_changed("hi")  # keystroke resets the idle timer
        await asyncio.sleep(0.15)
        assert [p["isTyping"] for p in emitted(sio, "typing")] == [True]

        await asyncio.sleep(0.15)
        assert [p["isTyping"] for p in emitted(sio, "typing")] == [True, False]
        assert not engine.is_typing

    @pytest.mark.asyncio
    async def test_stop_typing_on_send(self, engine, sio):
        engine.input_changed("hi")
        engine.stop_typing()
        assert [p["isTyping"] for p in emitted(sio, "typing")] == [True, False]
        assert live_actions(sio) == ["start_typing", "stop_typing"]

        # Nothing scheduled survives the stop
        await asyncio.sleep(0.3)
        assert [p["isTyping"] for p in emitted(sio, "typing")] == [True, False]
        assert live_actions(sio) == ["start_typing", "stop_typing"]

    @pytest.mark.asyncio
    async def test_empty_input_stops_immediately(self, engine, sio):
        engine.input_changed("a")
        engine.input_changed("")
        assert [p["isTyping"] for p in emitted(sio, "typing")] == [True, False]
        assert live_actions(sio)[-1] == "stop_typing"

    @pytest.mark.asyncio
    async def test_stop_when_idle_sends_nothing(self, engine, sio):
        engine.stop_typing()
        assert sio.emit.call_count == 0


class TestLiveTypingOutbound:
    @pytest.mark.asyncio
    async def test_start_typing_carries_full_snapshot(self, engine, sio):
        engine.input_changed("hey", 3)
        first = emitted(sio, "live-typing")[0]
        assert first["action"] == "start_typing"
        assert first["content"] == "hey"
        assert first["cursorPosition"] == 3

    @pytest.mark.asyncio
    async def test_snapshots_are_throttled_with_trailing_flush(self, engine, sio):
        """Bursts inside the window collapse into one trailing snapshot."""
        engine.input_changed("a")
        engine.input_changed("ab")
        engine.input_changed("abc")
        assert live_actions(sio) == ["start_typing"]

        await asyncio.sleep(0.08)
        frames = emitted(sio, "live-typing")
        assert [f["action"] for f in frames] == ["start_typing", "typing"]
        assert frames[-1]["content"] == "abc"
        assert frames[-1]["cursorPosition"] == 3

    @pytest.mark.asyncio
    async def test_snapshot_after_window_is_immediate(self, engine, sio):
        engine.input_changed("a")
        await asyncio.sleep(0.07)
        engine.input_changed("ab")
        assert emitted(sio, "live-typing")[-1]["content"] == "ab"

    @pytest.mark.asyncio
    async def test_safety_net_stop_after_inactivity(self, engine, sio):
        engine.input_changed("hello")
        await asyncio.sleep(0.2)
        assert live_actions(sio)[-1] == "stop_typing"
        assert not engine.live_active

        # Typing again opens a new burst
        engine.input_changed("hello!")
        assert live_actions(sio)[-1] == "start_typing"

    @pytest.mark.asyncio
    async def test_special_keys_carry_cursor_only(self, engine, sio):
        engine.input_changed("abc")
        engine.special_key("backspace", 2)
        engine.special_key("delete", 1)
        frames = emitted(sio, "live-typing")[1:]
        assert [f["action"] for f in frames] == ["backspace", "delete"]
        assert all("content" not in f for f in frames)
        assert [f["cursorPosition"] for f in frames] == [2, 1]

    @pytest.mark.asyncio
    async def test_special_key_rejects_other_actions(self, connection, settings):
        engine = TypingEngine(connection, ROOM, ME, settings.typing)
        with pytest.raises(ValueError):
            engine.special_key("typing", 0)
        with pytest.raises(ValueError):
            engine.special_key("enter", 0)


class TestInbound:
    @pytest.mark.asyncio
    async def test_coarse_indicator_has_no_client_expiry(self, engine):
        """A lost `false` leaves the indicator on: accepted, documented behaviour."""
        assert engine.ingest(ev("user-typing", roomId=ROOM, userId=PEER, isTyping=True)) is True
        await asyncio.sleep(0.4)
        assert engine.typing_users == frozenset({PEER})

        engine.ingest(ev("user-typing", userId=PEER, isTyping=False))
        assert engine.typing_users == frozenset()

    @pytest.mark.asyncio
    async def test_live_preview_expires_without_stop(self, engine):
        engine.ingest(ev("user-live-typing", roomId=ROOM, userId=PEER, content="hel", cursorPosition=3))
        preview = engine.live_previews[PEER]
        assert preview.content == "hel"
        assert preview.cursor_position == 3

        await asyncio.sleep(0.1)
        assert engine.live_previews == {}

    @pytest.mark.asyncio
    async def test_updates_postpone_expiry(self, engine):
        engine.ingest(ev("user-live-typing", userId=PEER, content="h"))
        await asyncio.sleep(0.02)
        engine.ingest(ev("user-live-typing", userId=PEER, content="he"))
        await asyncio.sleep(0.02)
        assert engine.live_previews[PEER].content == "he"

    @pytest.mark.asyncio
    async def test_explicit_stop_clears(self, engine):
        engine.ingest(ev("user-live-typing", userId=PEER, content="hi"))
        assert engine.ingest(ev("user-stopped-live-typing", roomId=ROOM, userId=PEER)) is True
        assert engine.live_previews == {}

        engine.ingest(ev("user-live-typing", userId=PEER, content="hi"))
        engine.ingest(ev("user-live-typing", userId=PEER, action="stop_typing"))
        assert engine.live_previews == {}

    @pytest.mark.asyncio
    async def test_special_key_moves_cursor_only(self, engine):
        engine.ingest(ev("user-live-typing", userId=PEER, content="abcd", cursorPosition=4))
        engine.ingest(ev("user-live-typing", userId=PEER, action="backspace", cursorPosition=2))
        preview = engine.live_previews[PEER]
        assert preview.content == "abcd"
        assert preview.cursor_position == 2

    @pytest.mark.asyncio
    async def test_special_key_without_preview_is_ignored(self, engine):
        assert engine.ingest(ev("user-live-typing", userId=PEER, action="delete", cursorPosition=0)) is False

    @pytest.mark.asyncio
    async def test_own_and_foreign_room_events_ignored(self, engine):
        assert engine.ingest(ev("user-typing", userId=ME, isTyping=True)) is False
        assert engine.ingest(ev("user-live-typing", roomId="other", userId=PEER, content="x")) is False
        assert engine.typing_users == frozenset()
        assert engine.live_previews == {}

    @pytest.mark.asyncio
    async def test_listener_notified_on_expiry(self, engine):
        changes = []
        engine.add_listener(lambda: changes.append(dict(engine.live_previews)))
        engine.ingest(ev("user-live-typing", userId=PEER, content="x"))
        await asyncio.sleep(0.1)
        assert len(changes) == 2
        assert changes[-1] == {}


class TestTeardown:
    @pytest.mark.asyncio
    async def test_no_timer_fires_after_close(self, connection, settings, sio):
        engine = TypingEngine(connection, ROOM, ME, settings.typing)
        engine.input_changed("a")
        engine.input_changed("ab")
        engine.ingest(ev("user-live-typing", userId=PEER, content="x"))
        before = sio.emit.call_count

        engine.close()
        await asyncio.sleep(0.3)

        assert sio.emit.call_count == before
        assert engine.live_previews == {}

    @pytest.mark.asyncio
    async def test_input_after_close_is_ignored(self, connection, settings, sio):
        engine = TypingEngine(connection, ROOM, ME, settings.typing)
        engine.close()
        engine.input_changed("a")
        assert sio.emit.call_count == 0
