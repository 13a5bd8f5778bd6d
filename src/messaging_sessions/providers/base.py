"""
Protocol Client Base

Abstract interface for the chat-protocol client that owns a tenant's socket.
Implementations: Evolution API (production), Stub (development and tests).

The client talks to the session core through a ClientContext: it pushes
lifecycle and message events through ``emit`` and asks for previously seen
messages through ``get_message``.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Union


class ProviderError(Exception):
    """Error from the protocol client."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.retryable = retryable


class MessageStatus(str, Enum):
    """Delivery status of a message, in protocol order."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
    MessageStatus.FAILED: 1,
}


class DisconnectReason(str, Enum):
    """Why the protocol socket closed."""

    LOGGED_OUT = "logged_out"
    CONNECTION_CLOSED = "connection_closed"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_REPLACED = "connection_replaced"
    TIMED_OUT = "timed_out"
    BAD_SESSION = "bad_session"
    RESTART_REQUIRED = "restart_required"
    MULTIDEVICE_MISMATCH = "multidevice_mismatch"
    FORBIDDEN = "forbidden"
    UNAVAILABLE_SERVICE = "unavailable_service"
    UNKNOWN = "unknown"

    @classmethod
    def from_status_code(cls, code: int | str | None) -> "DisconnectReason":
        """Map the protocol's numeric close code to a reason."""
        try:
            return _CLOSE_CODES.get(int(code), cls.UNKNOWN)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return cls.UNKNOWN

    @property
    def is_recoverable(self) -> bool:
        return self is not DisconnectReason.LOGGED_OUT

    @property
    def is_connection_drop(self) -> bool:
        """Ordinary transport drop, reconnected quickly."""
        return self in (DisconnectReason.CONNECTION_CLOSED, DisconnectReason.CONNECTION_LOST)


_CLOSE_CODES = {
    401: DisconnectReason.LOGGED_OUT,
    403: DisconnectReason.FORBIDDEN,
    408: DisconnectReason.CONNECTION_LOST,
    411: DisconnectReason.MULTIDEVICE_MISMATCH,
    428: DisconnectReason.CONNECTION_CLOSED,
    440: DisconnectReason.CONNECTION_REPLACED,
    500: DisconnectReason.BAD_SESSION,
    503: DisconnectReason.UNAVAILABLE_SERVICE,
    515: DisconnectReason.RESTART_REQUIRED,
}


@dataclass
class ProtocolMessage:
    """
    A message observed on the socket, inbound or outbound.

    Provider-agnostic envelope kept in the message cache for resend queries.
    """

    message_id: str
    conversation_id: str  # Chat JID
    from_me: bool
    payload: dict[str, Any] | None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: MessageStatus | None = None
    participant: str | None = None  # Group sender

    @property
    def text(self) -> str | None:
        if not self.payload:
            return None
        return (
            self.payload.get("conversation")
            or (self.payload.get("extendedTextMessage") or {}).get("text")
        )


@dataclass
class SentMessage:
    """Result of a successful send on the socket."""

    message_id: str
    timestamp: datetime
    raw: dict[str, Any] = field(default_factory=dict)


# Events emitted by a protocol client


@dataclass
class AuthCodeIssued:
    code: str


@dataclass
class ConnectionOpened:
    phone: str | None
    display_name: str | None = None


@dataclass
class ConnectionClosed:
    reason: DisconnectReason
    detail: str | None = None


@dataclass
class MessageReceived:
    message: ProtocolMessage


@dataclass
class MessageStatusChanged:
    message_id: str
    status: MessageStatus


@dataclass
class CredentialsUpdated:
    credentials: dict[str, Any]


@dataclass
class AuthFailure:
    detail: str | None = None


ClientEvent = Union[
    AuthCodeIssued,
    ConnectionOpened,
    ConnectionClosed,
    MessageReceived,
    MessageStatusChanged,
    CredentialsUpdated,
    AuthFailure,
]


@dataclass
class ClientContext:
    """
    Everything a protocol client gets from the session core.

    Attributes:
        tenant_id: Tenant this client belongs to
        generation: Session generation the client was created for
        credentials: Persisted credentials, None for a fresh pairing
        emit: Channel for lifecycle and message events
        get_message: Resend-resolution callback, returns None when unknown
    """

    tenant_id: str
    generation: int
    credentials: dict[str, Any] | None
    emit: Callable[[ClientEvent], None]
    get_message: Callable[[str], ProtocolMessage | None]


class ProtocolClient(ABC):
    """
    Abstract interface for a tenant's chat-protocol client.

    Implementations must:
    - Emit AuthCodeIssued / ConnectionOpened / ConnectionClosed as the socket evolves
    - Emit MessageReceived for every message seen, including self-sent ones
    - Emit MessageStatusChanged for receipts
    - Consult ClientContext.get_message when the protocol asks for a message again
    """

    def __init__(self, context: ClientContext):
        self.context = context

    @property
    def tenant_id(self) -> str:
        return self.context.tenant_id

    @abstractmethod
    async def start(self) -> None:
        """
        Start the client (open the socket, begin pairing or resume).

        Raises:
            ProviderError: if the client could not be started
        """
        ...

    @abstractmethod
    async def send_text(self, recipient: str, text: str) -> SentMessage:
        """
        Send a text message.

        Args:
            recipient: Normalised recipient id (digits or JID)
            text: Message text

        Raises:
            ProviderError: if the protocol rejected the message
        """
        ...

    @abstractmethod
    async def logout(self) -> None:
        """Unlink the device from the account."""
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Close the socket and release resources. Must be idempotent."""
        ...

    def handle_webhook(self, payload: dict[str, Any]) -> int:
        """
        Feed a provider callback in. Clients that own their socket ignore it.

        Returns:
            Number of events emitted
        """
        return 0


ClientFactory = Callable[[ClientContext], ProtocolClient]


_NON_DIGITS = re.compile(r"\D")


def normalize_recipient(to: str, default_country_prefix: str | None = None) -> str:
    """
    Normalise a phone number or JID.

    JIDs pass through untouched; phone numbers lose formatting characters and,
    when a default country prefix is configured, bare 10-digit national
    numbers get it prepended.
    """
    to = to.strip()
    if "@" in to:
        return to
    digits = _NON_DIGITS.sub("", to)
    if default_country_prefix and len(digits) == 10 and not digits.startswith(default_country_prefix):
        digits = default_country_prefix + digits
    return digits


def phone_from_jid(jid: str | None) -> str | None:
    """'5215551234:12@s.whatsapp.net' -> '5215551234'"""
    if not jid:
        return None
    return jid.split("@", 1)[0].split(":", 1)[0] or None
