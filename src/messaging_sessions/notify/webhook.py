"""
Webhook Notifier

Forwards lifecycle and message events to the external backend.
Fire-and-forget: ``notify`` returns immediately and failures are only logged,
so a slow or broken backend can never stall or roll back a state transition.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from messaging_sessions.contracts.event_types import SessionEventType
from messaging_sessions.contracts.payloads import SessionNotification

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Receives session notifications. Implementations must never raise."""

    @abstractmethod
    async def notify(
        self,
        tenant_id: str,
        event: SessionEventType,
        data: dict[str, Any] | None = None,
    ) -> None:
        ...

    async def aclose(self) -> None:
        """Flush and release resources."""


class NullNotifier(Notifier):
    """Used when no backend is configured."""

    async def notify(
        self,
        tenant_id: str,
        event: SessionEventType,
        data: dict[str, Any] | None = None,
    ) -> None:
        logger.debug(f"Notifier not configured, dropping {event}", extra={"tenant_id": tenant_id})


class WebhookNotifier(Notifier):
    """
    Posts SessionNotification bodies to a webhook URL.

    Each post runs as a background task; ``aclose`` waits for the ones still
    in flight before closing the HTTP client.
    """

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._pending: set[asyncio.Task[None]] = set()

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
                headers["apikey"] = self.api_key
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def notify(
        self,
        tenant_id: str,
        event: SessionEventType,
        data: dict[str, Any] | None = None,
    ) -> None:
        notification = SessionNotification(tenant_id=tenant_id, event=event, data=data or {})
        task = asyncio.create_task(self._post(notification), name=f"notify-{event}-{tenant_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post(self, notification: SessionNotification) -> None:
        try:
            response = await self._get_client().post(self.url, json=notification.to_wire())
            response.raise_for_status()
            logger.info(
                f"Notified backend: {notification.event}",
                extra={"tenant_id": notification.tenant_id},
            )
        except httpx.HTTPError as e:
            logger.error(
                f"Error notifying backend: {e}",
                extra={"tenant_id": notification.tenant_id, "event": str(notification.event)},
            )
        except Exception:
            logger.exception(
                f"Unexpected error notifying backend",
                extra={"tenant_id": notification.tenant_id, "event": str(notification.event)},
            )

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.flush()
        if self._client and not self._client.is_closed:
            await self._client.aclose()
