"""Duochat client configuration.

Loads settings from two YAML files:
  * duochat.settings.yaml  : non-secret configuration
  * duochat.secrets.yaml   : secrets (never committed)

Every timing used by the synchronization engine lives here so the typing
and seen protocols can be tuned (and shrunk in tests) without code changes.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("duochat.settings.yaml")
SECRETS_FILE  = Path("duochat.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class Secrets(BaseModel):
    auth_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    socket_url:      str   = "http://localhost:3000"
    api_base_url:    str   = "http://localhost:3000"
    request_timeout: float = 10.0


class TransportSettings(BaseModel):
    """Socket.IO transport options; retry internals never leave the transport."""
    transports:             List[str] = Field(default_factory=lambda: ["websocket", "polling"])
    reconnection:           bool      = True
    reconnection_attempts:  int       = 0      # 0 = retry forever
    reconnection_delay:     float     = 1.0
    reconnection_delay_max: float     = 5.0
    socketio_path:          str       = "socket.io"


class TypingSettings(BaseModel):
    """Typing indicator and live-typing timings (seconds)."""
    idle_timeout:    float = 2.0
    live_throttle:   float = 0.1
    live_stop_delay: float = 1.5
    live_expiry:     float = 0.5


class MessageSettings(BaseModel):
    seen_delay:            float = 1.5
    pending_update_ttl:    float = 10.0
    pending_update_max:    int   = 256
    redundant_seen_events: bool  = False

    @field_validator("pending_update_max")
    @classmethod
    def _positive_max(cls, value: int) -> int:
        if value < 1:
            raise ValueError("pending_update_max must be at least 1")
        return value


class RoomSettings(BaseModel):
    join_stagger_delay:     float = 1.5
    rate_limit_retry_delay: float = 3.0
    history_refresh_delay:  float = 2.0    # after a send; 0 disables


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)
    typing:    TypingSettings    = Field(default_factory=TypingSettings)
    messages:  MessageSettings   = Field(default_factory=MessageSettings)
    rooms:     RoomSettings      = Field(default_factory=RoomSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    secrets:   Secrets           = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppSettings] = None


def load_settings(
    settings_file: Path = SETTINGS_FILE,
    secrets_file: Path = SECRETS_FILE,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_file)
    secrets_data  = _load_yaml(secrets_file)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (socket=%s, api=%s, reconnection=%s)",
        app_settings.server.socket_url,
        app_settings.server.api_base_url,
        app_settings.transport.reconnection,
    )
    return app_settings


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Forget cached settings so the next get_config() reloads them."""
    global _config
    _config = None
