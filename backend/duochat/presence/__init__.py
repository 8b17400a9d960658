"""Global online/offline tracking."""
from .tracker import PresenceTracker

__all__ = ["PresenceTracker"]
