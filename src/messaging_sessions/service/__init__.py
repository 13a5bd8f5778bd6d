"""
Session Service

Connection state machine, outbound dispatcher, reconnection supervisor and
the SessionManager facade that ties them together.
"""

from messaging_sessions.service.connection import ConnectionConfig, TenantConnection
from messaging_sessions.service.dispatcher import DeliveryRecord, OutboundDispatcher, SendResult
from messaging_sessions.service.manager import (
    DisconnectResult,
    SessionManager,
    StartResult,
    client_factory_from_settings,
)
from messaging_sessions.service.reconnect import ReconnectionSupervisor, ReconnectPolicy

__all__ = [
    "ConnectionConfig",
    "TenantConnection",
    "DeliveryRecord",
    "OutboundDispatcher",
    "SendResult",
    "DisconnectResult",
    "SessionManager",
    "StartResult",
    "client_factory_from_settings",
    "ReconnectionSupervisor",
    "ReconnectPolicy",
]
