"""Duochat: connection and synchronization engine for a two-party chat client.

Modules:
    - connection: shared Socket.IO connection and typed event contract
    - messages: room timelines, id reconciliation and status lifecycle
    - typing_indicators: coarse typing indicator and live typing preview
    - presence: global online/offline tracking
    - rooms: join sequencing and per-room operations
    - api: REST collaborator client
"""
__version__ = "0.1.0"
