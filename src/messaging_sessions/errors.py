"""
Session errors

Typed failures surfaced to synchronous callers (start, send, disconnect).
Failures inside protocol-client callbacks never raise to a caller; they drive
a state transition instead.
"""

from typing import Any


class SessionError(Exception):
    """Base error for tenant session operations."""

    code = "SESSION_ERROR"

    def __init__(
        self,
        message: str,
        tenant_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.tenant_id = tenant_id
        self.details = details or {}


class InvalidTenantId(SessionError, ValueError):
    """Tenant id is empty or not safe to use as a storage key."""

    code = "INVALID_TENANT_ID"


class NotConnected(SessionError):
    """Send attempted while the tenant session is not open."""

    code = "NOT_CONNECTED"

    def __init__(self, tenant_id: str, state: str | None = None):
        super().__init__(
            f"WhatsApp not connected for tenant {tenant_id}",
            tenant_id=tenant_id,
            details={"state": state},
        )
        self.state = state


class InitializationFailed(SessionError):
    """The protocol client could not be started after bounded retries."""

    code = "INITIALIZATION_FAILED"

    def __init__(self, tenant_id: str, attempts: int, cause: BaseException | None = None):
        super().__init__(
            f"Protocol client for tenant {tenant_id} failed to start after {attempts} attempts",
            tenant_id=tenant_id,
            details={"attempts": attempts, "cause": str(cause) if cause else None},
        )
        self.attempts = attempts
        self.cause = cause


class SendFailed(SessionError):
    """The protocol client rejected an outbound message."""

    code = "SEND_FAILED"

    def __init__(self, tenant_id: str, recipient_id: str, cause: BaseException):
        super().__init__(
            f"Failed to send message to {recipient_id}: {cause}",
            tenant_id=tenant_id,
            details={"recipient": recipient_id, "cause": str(cause)},
        )
        self.recipient_id = recipient_id
        self.cause = cause


class AuthFailed(SessionError):
    """The protocol client reported an authentication failure."""

    code = "AUTH_FAILED"
