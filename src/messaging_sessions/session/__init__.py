"""
Session State

Registry, per-tenant message cache and generation-scoped timers.
"""

from messaging_sessions.session.cache import MessageCache
from messaging_sessions.session.registry import SessionRegistry, SessionState, validate_tenant_id
from messaging_sessions.session.timers import SessionTimers

__all__ = [
    "MessageCache",
    "SessionRegistry",
    "SessionState",
    "SessionTimers",
    "validate_tenant_id",
]
