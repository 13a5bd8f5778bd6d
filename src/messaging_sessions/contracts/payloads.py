"""
Session Payloads

Pydantic models for the webhook notification and the HTTP surface.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from messaging_sessions.contracts.event_types import SessionEventType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SessionNotification(_CamelModel):
    """
    Body posted to the external backend for every lifecycle/message event.

    Wire shape: {"merchantId", "event", "data", "timestamp"}.
    """

    tenant_id: str = Field(..., alias="merchantId")
    event: SessionEventType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class StartSessionRequest(_CamelModel):
    """POST /auth/start"""

    tenant_id: str = Field(..., alias="merchantId", min_length=1)


class DisconnectRequest(_CamelModel):
    """POST /auth/disconnect"""

    tenant_id: str = Field(..., alias="merchantId", min_length=1)


class SendOptions(_CamelModel):
    """Optional send behaviour."""

    wait_for_delivery: bool = Field(False, alias="waitForDelivery")
    timeout: float | None = Field(None, gt=0, le=60)


class SendMessageRequest(_CamelModel):
    """POST /send-message"""

    tenant_id: str = Field(..., alias="merchantId", min_length=1)
    to: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    message_id: str | None = Field(None, alias="messageId")  # Caller's own reference, echoed back
    options: SendOptions = Field(default_factory=SendOptions)
