"""
Session Contracts

Event types and payload definitions shared by the core, the notifier and the
HTTP surface.
"""

from messaging_sessions.contracts.event_types import SessionEventType
from messaging_sessions.contracts.payloads import (
    DisconnectRequest,
    SendMessageRequest,
    SendOptions,
    SessionNotification,
    StartSessionRequest,
)

__all__ = [
    "SessionEventType",
    "SessionNotification",
    "StartSessionRequest",
    "DisconnectRequest",
    "SendMessageRequest",
    "SendOptions",
]
