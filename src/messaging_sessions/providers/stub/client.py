"""
Stub Protocol Client

Development client that never opens a socket.
Useful for local development and for driving the session core in tests.
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from messaging_sessions.providers.base import (
    AuthCodeIssued,
    AuthFailure,
    ClientContext,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    DisconnectReason,
    MessageReceived,
    MessageStatus,
    MessageStatusChanged,
    ProtocolClient,
    ProtocolMessage,
    ProviderError,
    SentMessage,
)

logger = logging.getLogger(__name__)


class StubProtocolClient(ProtocolClient):
    """
    Stub client for development and testing.

    - Emits a scan code on start (unless credentials were loaded and
      ``auto_open_with_credentials`` is set, in which case it opens directly)
    - Records all outbound messages and echoes them back as self-sent messages
    - Can be configured to fail the first N starts or every send
    - ``simulate_*`` helpers emit scripted events
    """

    def __init__(
        self,
        context: ClientContext,
        fail_starts: int = 0,
        fail_sends: bool = False,
        emit_qr_on_start: bool = True,
        auto_open_with_credentials: bool = True,
        phone: str = "5215550000000",
        display_name: str = "Stub",
    ):
        super().__init__(context)
        self.fail_starts = fail_starts
        self.fail_sends = fail_sends
        self.emit_qr_on_start = emit_qr_on_start
        self.auto_open_with_credentials = auto_open_with_credentials
        self.phone = phone
        self.display_name = display_name
        self.started = False
        self.closed = False
        self.logged_out = False
        self.start_calls = 0
        self.sent_messages: list[dict[str, Any]] = []

    async def start(self) -> None:
        self.start_calls += 1
        if self.fail_starts > 0:
            self.fail_starts -= 1
            raise ProviderError("Simulated start failure", code="STUB_START_FAILED", retryable=True)

        self.started = True
        logger.info(f"[STUB] Client started", extra={"tenant_id": self.tenant_id})

        if self.context.credentials and self.auto_open_with_credentials:
            self.simulate_scan(self.phone, self.display_name)
        elif self.emit_qr_on_start:
            self.simulate_auth_code()

    async def send_text(self, recipient: str, text: str) -> SentMessage:
        if self.closed:
            raise ProviderError("Connection closed", code="STUB_CLOSED")
        if self.fail_sends:
            raise ProviderError("Simulated send failure", code="STUB_SEND_FAILED")

        message_id = f"stub_msg_{uuid4().hex[:16]}"
        timestamp = datetime.now(timezone.utc)
        self.sent_messages.append({
            "to": recipient,
            "text": text,
            "message_id": message_id,
            "timestamp": timestamp.isoformat(),
        })

        logger.info(
            f"[STUB] Sending text message",
            extra={
                "tenant_id": self.tenant_id,
                "to": recipient,
                "text": text[:100] + "..." if len(text) > 100 else text,
                "message_id": message_id,
            },
        )

        # The real protocol echoes our own sends back as upserts
        self.context.emit(MessageReceived(ProtocolMessage(
            message_id=message_id,
            conversation_id=recipient,
            from_me=True,
            payload={"conversation": text},
            timestamp=timestamp,
            status=MessageStatus.SENT,
        )))

        return SentMessage(message_id=message_id, timestamp=timestamp, raw={"stub": True})

    async def logout(self) -> None:
        if self.closed:
            raise ProviderError("Connection closed", code="STUB_CLOSED")
        self.logged_out = True
        logger.info(f"[STUB] Logged out", extra={"tenant_id": self.tenant_id})

    async def shutdown(self) -> None:
        self.closed = True

    # Scripted events

    def simulate_auth_code(self, code: str | None = None) -> str:
        code = code or f"2@{uuid4().hex}"
        self.context.emit(AuthCodeIssued(code))
        return code

    def simulate_scan(self, phone: str | None = None, display_name: str | None = None) -> None:
        """Pretend the user scanned the code: persist credentials and open."""
        phone = phone or self.phone
        self.context.emit(CredentialsUpdated({"me": {"id": f"{phone}:1@s.whatsapp.net"}}))
        self.context.emit(ConnectionOpened(phone=phone, display_name=display_name or self.display_name))

    def simulate_close(self, reason: DisconnectReason, detail: str | None = None) -> None:
        self.context.emit(ConnectionClosed(reason=reason, detail=detail))

    def simulate_auth_failure(self, detail: str = "stub auth failure") -> None:
        self.context.emit(AuthFailure(detail))

    def simulate_incoming(
        self,
        sender: str,
        text: str,
        message_id: str | None = None,
    ) -> ProtocolMessage:
        message = ProtocolMessage(
            message_id=message_id or f"stub_in_{uuid4().hex[:16]}",
            conversation_id=sender,
            from_me=False,
            payload={"conversation": text},
        )
        self.context.emit(MessageReceived(message))
        return message

    def simulate_receipt(self, message_id: str, status: MessageStatus) -> None:
        self.context.emit(MessageStatusChanged(message_id=message_id, status=status))

    def request_resend(self, message_id: str) -> ProtocolMessage | None:
        """What the protocol layer does when a peer asks for a message again."""
        return self.context.get_message(message_id)
