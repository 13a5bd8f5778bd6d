"""
Session Event Types

Lifecycle and message events forwarded to the webhook notifier.
"""

from enum import Enum


class SessionEventType(str, Enum):
    """
    Event types emitted by the session manager.

    - QR_GENERATED: A scan code is ready for the tenant
    - CONNECTED: The session authenticated and is open
    - DISCONNECTED: The session terminated (logout, explicit disconnect, exhausted reconnects)
    - MESSAGE_RECEIVED: A message not sent by the tenant arrived
    - AUTH_FAILED: The protocol client rejected the stored or scanned credentials
    - INITIALIZATION_FAILED: The protocol client never started
    - CONNECTION_TIMEOUT: No scan code or connection before the watchdog fired
    """

    QR_GENERATED = "qr_generated"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    MESSAGE_RECEIVED = "message_received"
    AUTH_FAILED = "auth_failed"
    INITIALIZATION_FAILED = "initialization_failed"
    CONNECTION_TIMEOUT = "connection_timeout"

    def __str__(self) -> str:
        return self.value
