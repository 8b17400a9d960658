"""Typing indicator and live typing preview protocols."""
from .engine import LivePreview, TypingEngine

__all__ = ["LivePreview", "TypingEngine"]
