"""Shared Socket.IO connection and the typed event contract."""
from .events import EventName, LiveTypingAction, parse_event
from .manager import ConnectionManager, ConnectionState, Subscription

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "EventName",
    "LiveTypingAction",
    "Subscription",
    "parse_event",
]
