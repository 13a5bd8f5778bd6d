"""
Evolution API Protocol Client

Client for Evolution API (Baileys-based WhatsApp Web bridge).
Uses the REST API to manage the tenant's instance and send messages; socket
events come back as webhooks and are fed in through ``handle_webhook``.

Documentation: https://doc.evolution-api.com/
"""

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from messaging_sessions.providers.base import (
    AuthCodeIssued,
    ClientContext,
    ConnectionOpened,
    ProtocolClient,
    ProviderError,
    SentMessage,
    phone_from_jid,
)
from messaging_sessions.providers.evolution.webhook import parse_evolution_webhook

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = [
    "QRCODE_UPDATED",
    "CONNECTION_UPDATE",
    "MESSAGES_UPSERT",
    "MESSAGES_UPDATE",
    "LOGOUT_INSTANCE",
]


class EvolutionProtocolClient(ProtocolClient):
    """
    Evolution API client for one tenant.

    Each tenant has its own instance (identified by instance_name). The bridge
    keeps the pairing credentials and answers resend requests itself, so the
    loaded credentials and the resend callback are not used here.
    """

    def __init__(
        self,
        context: ClientContext,
        api_url: str,
        api_key: str,
        instance_name: str,
        webhook_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize Evolution API client.

        Args:
            context: Session core context
            api_url: Base URL of Evolution API (e.g., "https://evolution-api.example.com")
            api_key: API key for authentication
            instance_name: Name of the Evolution instance
            webhook_url: Where Evolution should post socket events (optional)
            timeout: HTTP request timeout
            transport: Custom httpx transport (tests)
        """
        super().__init__(context)
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.instance_name = instance_name
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "Content-Type": "application/json",
                    "apikey": self.api_key,
                },
                transport=self._transport,
            )
        return self._client

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make an authenticated API request."""
        client = await self._get_client()
        url = f"{self.api_url}{endpoint}"

        try:
            response = await client.request(method.upper(), url, json=json_data, params=params)
        except httpx.RequestError as e:
            logger.error(f"HTTP request failed: {e}", extra={"instance": self.instance_name})
            raise ProviderError(
                message=f"HTTP request failed: {e}",
                code="HTTP_ERROR",
                retryable=True,
            ) from e

        try:
            response_data = response.json()
        except ValueError:
            response_data = {"raw": response.text}

        if response.status_code >= 400:
            error = None
            if isinstance(response_data, dict):
                error = response_data.get("error") or response_data.get("message") or response_data.get("response")
            raise ProviderError(
                message=str(error or "Unknown error"),
                code=str(response.status_code),
                details=response_data if isinstance(response_data, dict) else {"body": response_data},
                retryable=response.status_code >= 500,
            )

        return response_data

    async def start(self) -> None:
        """Create the instance if needed, then ask for a scan code or resume."""
        payload: dict[str, Any] = {
            "instanceName": self.instance_name,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
        }
        if self.webhook_url:
            payload["webhook"] = {
                "url": self.webhook_url,
                "byEvents": False,
                "events": WEBHOOK_EVENTS,
            }

        try:
            await self._make_request("POST", "/instance/create", payload)
            logger.info(f"Created Evolution instance", extra={"instance": self.instance_name})
        except ProviderError as e:
            # 403/409: instance name already taken, i.e. it exists
            if e.code not in ("403", "409"):
                raise
            logger.debug(f"Evolution instance already exists", extra={"instance": self.instance_name})

        response = await self._make_request("GET", f"/instance/connect/{self.instance_name}")

        code = response.get("code") or (response.get("qrcode") or {}).get("code")
        if code:
            self.context.emit(AuthCodeIssued(code))
            return

        state = (response.get("instance") or {}).get("state")
        if state == "open":
            phone, name = await self._fetch_identity()
            self.context.emit(ConnectionOpened(phone=phone, display_name=name))

    async def _fetch_identity(self) -> tuple[str | None, str | None]:
        """Phone and profile name of an already paired instance."""
        try:
            response = await self._make_request(
                "GET",
                "/instance/fetchInstances",
                params={"instanceName": self.instance_name},
            )
        except ProviderError as e:
            logger.warning(f"Failed to fetch instance identity: {e}", extra={"instance": self.instance_name})
            return None, None

        instances = response if isinstance(response, list) else response.get("instance", [])
        if isinstance(instances, dict):
            instances = [instances]
        for instance in instances:
            data = instance.get("instance", instance)
            if data.get("instanceName", data.get("name")) == self.instance_name:
                jid = data.get("ownerJid") or data.get("owner")
                return phone_from_jid(jid), data.get("profileName")
        return None, None

    async def send_text(self, recipient: str, text: str) -> SentMessage:
        """Send a text message via Evolution API."""
        endpoint = f"/message/sendText/{self.instance_name}"

        response = await self._make_request("POST", endpoint, {"number": recipient, "text": text})
        message_id = (response.get("key") or {}).get("id") or response.get("id")
        if not message_id:
            raise ProviderError("Evolution API returned no message id", code="NO_MESSAGE_ID", details=response)

        timestamp = datetime.now(timezone.utc)
        if response.get("messageTimestamp"):
            try:
                timestamp = datetime.fromtimestamp(int(response["messageTimestamp"]), tz=timezone.utc)
            except (ValueError, TypeError):
                pass

        logger.info(
            f"Sent text message via Evolution API",
            extra={"to": recipient, "message_id": message_id, "instance": self.instance_name},
        )
        return SentMessage(message_id=message_id, timestamp=timestamp, raw=response)

    async def logout(self) -> None:
        """Logout/disconnect the instance."""
        await self._make_request("DELETE", f"/instance/logout/{self.instance_name}")

    async def shutdown(self) -> None:
        """Close the HTTP client. The instance itself stays on the bridge."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def handle_webhook(self, payload: dict[str, Any]) -> int:
        """
        Feed an Evolution webhook into the session core.

        Returns:
            Number of events emitted
        """
        events = parse_evolution_webhook(payload)
        for event in events:
            self.context.emit(event)
        return len(events)
