"""
Evolution API Webhook Utilities

Translate Evolution API webhook payloads into protocol client events.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from messaging_sessions.providers.base import (
    AuthCodeIssued,
    ClientEvent,
    ConnectionClosed,
    ConnectionOpened,
    DisconnectReason,
    MessageReceived,
    MessageStatus,
    MessageStatusChanged,
    ProtocolMessage,
    phone_from_jid,
)

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "PENDING": MessageStatus.PENDING,
    "SERVER_ACK": MessageStatus.SENT,
    "SENT": MessageStatus.SENT,
    "DELIVERY_ACK": MessageStatus.DELIVERED,
    "DELIVERED": MessageStatus.DELIVERED,
    "READ": MessageStatus.READ,
    "PLAYED": MessageStatus.READ,
    "ERROR": MessageStatus.FAILED,
    "FAILED": MessageStatus.FAILED,
}


def normalize_event_name(event: str | None) -> str:
    """'QRCODE_UPDATED' and 'qrcode.updated' are the same event."""
    return (event or "").lower().replace("_", ".")


def extract_instance_name(payload: dict[str, Any]) -> str | None:
    """
    Extract instance name from webhook payload.

    This is used for tenant resolution before full parsing.
    """
    data = payload.get("data")
    instance = payload.get("instance") or (data.get("instance") if isinstance(data, dict) else None)
    return instance if isinstance(instance, str) else None


def is_message_webhook(payload: dict[str, Any]) -> bool:
    """Check if this webhook contains messages."""
    return normalize_event_name(payload.get("event")) == "messages.upsert"


def is_status_webhook(payload: dict[str, Any]) -> bool:
    """Check if this webhook contains status updates."""
    return normalize_event_name(payload.get("event")) == "messages.update"


def validate_api_key(request_headers: dict[str, str], expected_api_key: str) -> bool:
    """
    Validate API key from request headers.

    Evolution API can send API key in:
    - Header: "apikey"
    - Header: "Authorization: Bearer <key>"
    """
    headers = {k.lower(): v for k, v in request_headers.items()}
    if headers.get("apikey") == expected_api_key:
        return True

    auth_header = headers.get("authorization", "")
    if auth_header.startswith("Bearer ") and auth_header[7:] == expected_api_key:
        return True

    return False


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_message(data: dict[str, Any]) -> ProtocolMessage | None:
    """Parse the data block of a messages.upsert webhook."""
    key = _as_dict(data.get("key"))
    message_id = key.get("id")
    remote_jid = key.get("remoteJid")
    if not message_id or not remote_jid:
        return None

    timestamp = datetime.now(timezone.utc)
    if data.get("messageTimestamp"):
        try:
            timestamp = datetime.fromtimestamp(int(data["messageTimestamp"]), tz=timezone.utc)
        except (ValueError, TypeError):
            pass

    status = STATUS_MAP.get(str(data.get("status") or "").upper())

    return ProtocolMessage(
        message_id=message_id,
        conversation_id=remote_jid,
        from_me=bool(key.get("fromMe")),
        payload=_as_dict(data.get("message")) or None,
        timestamp=timestamp,
        status=status,
        participant=key.get("participant"),
    )


def parse_status(data: dict[str, Any]) -> MessageStatusChanged | None:
    """
    Parse the data block of a messages.update webhook.

    v1 nests the status under "update"; v2 puts it on the data block and
    carries the message id as "keyId".
    """
    key = _as_dict(data.get("key"))
    message_id = key.get("id") or data.get("keyId")
    raw_status = _as_dict(data.get("update")).get("status") or data.get("status")
    if not message_id or not raw_status:
        return None

    status = STATUS_MAP.get(str(raw_status).upper())
    if status is None:
        logger.debug(f"Ignoring unknown Evolution status {raw_status}")
        return None
    return MessageStatusChanged(message_id=message_id, status=status)


def parse_connection_update(data: dict[str, Any]) -> ClientEvent | None:
    """Parse the data block of a connection.update webhook."""
    state = data.get("state")
    if state == "open":
        return ConnectionOpened(
            phone=phone_from_jid(data.get("wuid")),
            display_name=data.get("profileName"),
        )
    if state == "close":
        code = data.get("statusReason")
        return ConnectionClosed(
            reason=DisconnectReason.from_status_code(code),
            detail=f"statusReason={code}",
        )
    # "connecting" carries nothing the core acts on
    return None


def _dict_items(data: Any) -> list[dict[str, Any]]:
    """Batched payloads arrive as a list; anything that is not a dict is skipped."""
    items = data if isinstance(data, list) else [data]
    return [item for item in items if isinstance(item, dict)]


def parse_evolution_webhook(payload: dict[str, Any]) -> list[ClientEvent]:
    """
    Parse an Evolution API webhook into client events.

    Evolution API webhook format:
    {
        "event": "messages.upsert",
        "instance": "instance_name",
        "data": {...}
    }

    Malformed data blocks yield no events rather than raising, so the bridge
    is never asked to retry a payload we cannot use.
    """
    event = normalize_event_name(payload.get("event"))
    data = payload.get("data") or {}
    events: list[ClientEvent] = []

    if is_message_webhook(payload):
        # v2 sends a single message, some deployments batch them
        if isinstance(data, dict) and "messages" in data:
            data = data["messages"]
        for item in _dict_items(data):
            message = parse_message(item)
            if message:
                events.append(MessageReceived(message))

    elif is_status_webhook(payload):
        for item in _dict_items(data):
            status = parse_status(item)
            if status:
                events.append(status)

    elif not isinstance(data, dict):
        logger.warning(f"Ignoring Evolution {event} with malformed data")

    elif event == "qrcode.updated":
        qrcode = data.get("qrcode")
        code = (qrcode.get("code") if isinstance(qrcode, dict) else None) or data.get("code")
        if isinstance(code, str) and code:
            events.append(AuthCodeIssued(code))

    elif event == "connection.update":
        parsed = parse_connection_update(data)
        if parsed:
            events.append(parsed)

    elif event == "logout.instance":
        events.append(ConnectionClosed(reason=DisconnectReason.LOGGED_OUT, detail="logout.instance"))

    else:
        logger.debug(f"Ignoring Evolution event {event}")

    return events
