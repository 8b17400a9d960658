"""Shared test fixtures for the duochat engine tests.

The Socket.IO client is replaced by a MagicMock that records the handlers
registered through ``on()``, so tests can fire server events by awaiting
``sio.handlers[<event>](payload)``. The REST collaborator is a small FastAPI
app served to httpx through ``ASGITransport``.
"""
import asyncio
from typing import Any, Dict, List

import pytest
import pytest_asyncio
from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from unittest.mock import AsyncMock, MagicMock

from duochat.config import (
    AppSettings,
    MessageSettings,
    RoomSettings,
    TypingSettings,
)
from duochat.connection.manager import ConnectionManager


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_sio() -> MagicMock:
    """Fake socketio.AsyncClient that records handlers and emits."""
    sio = MagicMock()
    sio.connected = True
    sio.connect = AsyncMock()
    sio.disconnect = AsyncMock()
    sio.emit = AsyncMock()
    sio.wait = AsyncMock()
    sio.handlers = {}

    def on(event, handler=None):
        sio.handlers[event] = handler
        return handler

    sio.on = MagicMock(side_effect=on)
    return sio


def emitted(sio: MagicMock, event: str) -> List[Any]:
    """Payloads passed to ``sio.emit`` for *event*, in call order."""
    return [c.args[1] for c in sio.emit.call_args_list if c.args[0] == event]


async def drain(cycles: int = 10) -> None:
    """Let spawned tasks and their done-callbacks run."""
    for _ in range(cycles):
        await asyncio.sleep(0)


def fast_settings(**overrides: Any) -> AppSettings:
    """Settings with millisecond-scale timings."""
    settings = AppSettings(
        typing=TypingSettings(
            idle_timeout=0.2,
            live_throttle=0.05,
            live_stop_delay=0.15,
            live_expiry=0.05,
        ),
        messages=MessageSettings(
            seen_delay=0.05,
            pending_update_ttl=0.2,
            pending_update_max=8,
        ),
        rooms=RoomSettings(
            join_stagger_delay=0.0,
            rate_limit_retry_delay=0.0,
            history_refresh_delay=0.0,
        ),
    )
    return settings.model_copy(update=overrides)


# ---------------------------------------------------------------------------
# Stub REST collaborator
# ---------------------------------------------------------------------------


def build_stub_app(state: Dict[str, Any]) -> FastAPI:
    """Minimal chat server REST surface.

    *state* controls behaviour and records calls:
        rate_limited_joins: number of join calls answered with 429
        members: user ids already in the room
        history: records returned by the messages endpoint
        forbidden_users: users refused history with 403
    """
    app = FastAPI()
    state.setdefault("rate_limited_joins", 0)
    state.setdefault("members", ["alice"])
    state.setdefault("history", [])
    state.setdefault("forbidden_users", [])
    state.setdefault("join_calls", [])
    state.setdefault("uploads", [])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/generate-user-id")
    async def generate_user_id():
        return {"userId": "generated-user"}

    @app.get("/api/c/{room_id}")
    async def room_info(room_id: str):
        if room_id == "missing":
            raise HTTPException(status_code=404, detail="Room not found")
        members = state["members"] + [None, None]
        return {
            "room": {
                "room_id": room_id,
                "room_name": "Lobby",
                "user1_id": members[0],
                "user2_id": members[1],
            }
        }

    @app.post("/api/c/{room_id}/join")
    async def join(room_id: str, body: Dict[str, Any]):
        state["join_calls"].append(body.get("userId"))
        if state["rate_limited_joins"] > 0:
            state["rate_limited_joins"] -= 1
            raise HTTPException(status_code=429, detail="Too many requests")
        state["members"].append(body.get("userId"))
        return {"success": True}

    @app.get("/api/c/{room_id}/messages")
    async def messages(room_id: str, userId: str):
        if userId in state["forbidden_users"]:
            raise HTTPException(status_code=403, detail="Not a member")
        return {"success": True, "messages": state["history"]}

    @app.post("/api/c/{room_id}/voice")
    async def voice(
        room_id: str,
        audio: UploadFile = File(...),
        roomId: str = Form(...),
        senderId: str = Form(...),
        duration: float = Form(...),
        tempId: str = Form(...),
    ):
        data = await audio.read()
        state["uploads"].append({
            "filename": audio.filename,
            "size": len(data),
            "roomId": roomId,
            "senderId": senderId,
            "duration": duration,
            "tempId": tempId,
        })
        return {"success": True, "messageId": 42, "file_url": f"/uploads/{audio.filename}"}

    return app


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> AppSettings:
    return fast_settings()


@pytest.fixture
def sio() -> MagicMock:
    return make_sio()


@pytest_asyncio.fixture
async def connection(settings, sio):
    """A ConnectionManager over the fake client, already connected."""
    manager = ConnectionManager(settings, client=sio)
    await manager.connect()
    yield manager
    await manager.close()


@pytest.fixture
def stub_state() -> Dict[str, Any]:
    return {}


@pytest.fixture
def stub_app(stub_state) -> FastAPI:
    return build_stub_app(stub_state)
