"""Room join sequencing and per-room operations."""
from .controller import JoinState, RoomSessionController

__all__ = ["JoinState", "RoomSessionController"]
