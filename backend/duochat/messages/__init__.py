"""Message timeline: data model, pending-update buffer and synchronization store.

The store lives in ``duochat.messages.store``; import it from there.
"""
from .schemas import (
    LocalIdFactory,
    Message,
    MessageStatus,
    TextContent,
    VoiceClip,
    VoiceContent,
    VoiceUploadResult,
)

__all__ = [
    "LocalIdFactory",
    "Message",
    "MessageStatus",
    "TextContent",
    "VoiceClip",
    "VoiceContent",
    "VoiceUploadResult",
]
