"""
Protocol Clients

Client implementations for the chat protocol.
Supports Evolution API (production) and Stub (development).
"""

from messaging_sessions.providers.base import (
    ClientContext,
    ClientFactory,
    DisconnectReason,
    MessageStatus,
    ProtocolClient,
    ProtocolMessage,
    ProviderError,
    SentMessage,
)

__all__ = [
    "ClientContext",
    "ClientFactory",
    "DisconnectReason",
    "MessageStatus",
    "ProtocolClient",
    "ProtocolMessage",
    "ProviderError",
    "SentMessage",
]
