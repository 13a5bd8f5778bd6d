"""
Session Manager

Facade over the registry, connections, dispatcher and reconnection
supervisor. The HTTP API and the CLI only ever talk to this class.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from messaging_sessions.notify.webhook import Notifier, NullNotifier, WebhookNotifier
from messaging_sessions.persistence.credentials import CredentialStore, FileCredentialStore
from messaging_sessions.providers.base import ClientContext, ClientFactory, ProtocolClient
from messaging_sessions.providers.evolution import EvolutionProtocolClient, extract_instance_name
from messaging_sessions.providers.stub import StubProtocolClient
from messaging_sessions.rendering.qr import QRCodeRenderer
from messaging_sessions.service.connection import ConnectionConfig, TenantConnection
from messaging_sessions.service.dispatcher import OutboundDispatcher, SendResult
from messaging_sessions.service.reconnect import ReconnectionSupervisor, ReconnectPolicy
from messaging_sessions.session.registry import SessionRegistry, SessionState, validate_tenant_id
from messaging_sessions.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class StartResult:
    tenant_id: str
    status: str  # connecting, already_connected
    phone: str | None = None

    @property
    def already_connected(self) -> bool:
        return self.status == "already_connected"


@dataclass
class DisconnectResult:
    tenant_id: str
    was_registered: bool
    logged_out: bool


def client_factory_from_settings(settings: Settings) -> ClientFactory:
    """
    Build the protocol client factory for PROTOCOL_PROVIDER.

    Raises:
        ValueError: unknown provider or missing Evolution settings
    """
    provider = settings.PROTOCOL_PROVIDER.lower()

    if provider == "stub":
        return StubProtocolClient

    if provider == "evolution":
        if not settings.EVOLUTION_API_URL or not settings.EVOLUTION_API_KEY:
            raise ValueError("EVOLUTION_API_URL and EVOLUTION_API_KEY are required for the evolution provider")

        def evolution_factory(context: ClientContext) -> ProtocolClient:
            return EvolutionProtocolClient(
                context,
                api_url=settings.EVOLUTION_API_URL,
                api_key=settings.EVOLUTION_API_KEY,
                instance_name=f"{settings.EVOLUTION_INSTANCE_PREFIX}{context.tenant_id}",
                webhook_url=settings.EVOLUTION_WEBHOOK_URL,
            )

        return evolution_factory

    raise ValueError(f"Unknown protocol provider: {settings.PROTOCOL_PROVIDER}")


class SessionManager:
    """
    Owns every tenant session in the process.

    Start and disconnect requests for the same tenant are serialised; requests
    for different tenants run concurrently.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        credential_store: CredentialStore,
        notifier: Notifier | None = None,
        renderer: QRCodeRenderer | None = None,
        config: ConnectionConfig | None = None,
        reconnect_policy: ReconnectPolicy | None = None,
        dispatcher: OutboundDispatcher | None = None,
        registry: SessionRegistry | None = None,
        instance_prefix: str = "",
    ):
        self.client_factory = client_factory
        self.credential_store = credential_store
        self.notifier = notifier or NullNotifier()
        self.renderer = renderer or QRCodeRenderer()
        self.config = config or ConnectionConfig()
        self.registry = registry or SessionRegistry()
        self.supervisor = ReconnectionSupervisor(reconnect_policy)
        self.dispatcher = dispatcher or OutboundDispatcher(self.registry)
        self.instance_prefix = instance_prefix

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SessionManager":
        settings = settings or get_settings()

        notifier: Notifier
        if settings.NOTIFIER_URL:
            notifier = WebhookNotifier(
                settings.NOTIFIER_URL,
                api_key=settings.NOTIFIER_API_KEY,
                timeout=settings.NOTIFIER_TIMEOUT,
            )
        else:
            logger.warning("NOTIFIER_URL not set, session events will not be forwarded")
            notifier = NullNotifier()

        registry = SessionRegistry()
        return cls(
            client_factory=client_factory_from_settings(settings),
            credential_store=FileCredentialStore(
                settings.SESSIONS_DIR,
                encryption_key=settings.CREDENTIALS_ENCRYPTION_KEY,
            ),
            notifier=notifier,
            config=ConnectionConfig.from_settings(settings),
            reconnect_policy=ReconnectPolicy.from_settings(settings),
            dispatcher=OutboundDispatcher(
                registry,
                min_interval=settings.SEND_MIN_INTERVAL,
                delivery_timeout=settings.DELIVERY_TIMEOUT,
                record_ttl=settings.DELIVERY_RECORD_TTL,
                record_limit=settings.DELIVERY_RECORD_LIMIT,
                default_country_prefix=settings.DEFAULT_COUNTRY_PREFIX,
            ),
            registry=registry,
            instance_prefix=settings.EVOLUTION_INSTANCE_PREFIX,
        )

    def get(self, tenant_id: str) -> TenantConnection | None:
        return self.registry.get(tenant_id)

    async def start_session(self, tenant_id: str) -> StartResult:
        """
        Create (or recreate) a tenant session and start pairing.

        An open session is left alone. Any other existing session is torn
        down first, so a tenant never has two live connections.

        Raises:
            InvalidTenantId: if the tenant id is not usable
        """
        validate_tenant_id(tenant_id)

        async with self.registry.lock_for(tenant_id):
            existing = self.registry.get(tenant_id)
            if existing is not None and existing.is_open:
                logger.info(f"Session already connected", extra={"tenant_id": tenant_id})
                return StartResult(tenant_id, "already_connected", phone=existing.phone)

            if existing is not None:
                logger.info(
                    f"Replacing session in state {existing.state}",
                    extra={"tenant_id": tenant_id},
                )
                await existing.close()

            connection = TenantConnection(
                tenant_id,
                registry=self.registry,
                client_factory=self.client_factory,
                credential_store=self.credential_store,
                notifier=self.notifier,
                renderer=self.renderer,
                supervisor=self.supervisor,
                dispatcher=self.dispatcher,
                config=self.config,
            )
            self.registry.register(connection)
            connection.start(fresh=True)

        logger.info(f"Session starting", extra={"tenant_id": tenant_id})
        return StartResult(tenant_id, "connecting")

    async def disconnect(self, tenant_id: str) -> DisconnectResult:
        """
        Log out and remove a tenant session.

        Succeeds for unknown tenants too; stored credentials are wiped either way.
        """
        validate_tenant_id(tenant_id)

        async with self.registry.lock_for(tenant_id):
            connection = self.registry.get(tenant_id)
            if connection is None:
                self.credential_store.wipe(tenant_id)
                self.dispatcher.discard_tenant(tenant_id)
                logger.info(f"Disconnect for unknown session", extra={"tenant_id": tenant_id})
                return DisconnectResult(tenant_id, was_registered=False, logged_out=False)

            logged_out = await connection.disconnect()

        logger.info(f"Session disconnected", extra={"tenant_id": tenant_id, "logged_out": logged_out})
        return DisconnectResult(tenant_id, was_registered=True, logged_out=logged_out)

    async def send(
        self,
        tenant_id: str,
        to: str,
        text: str,
        wait_for_delivery: bool = False,
        timeout: float | None = None,
    ) -> SendResult:
        """
        Send a text message.

        Raises:
            InvalidTenantId: if the tenant id is not usable
            NotConnected: the tenant session is not open
            SendFailed: the protocol client rejected the message
        """
        validate_tenant_id(tenant_id)
        return await self.dispatcher.send(
            tenant_id,
            to,
            text,
            wait_for_delivery=wait_for_delivery,
            timeout=timeout,
        )

    def status(self, tenant_id: str) -> dict[str, Any]:
        validate_tenant_id(tenant_id)
        connection = self.registry.get(tenant_id)
        if connection is None:
            return {
                "merchantId": tenant_id,
                "connected": False,
                "status": SessionState.ABSENT.value,
                "qrCode": None,
            }
        return connection.snapshot()

    def stats(self) -> dict[str, Any]:
        return {
            "activeSessions": len(self.registry),
            "sessions": self.registry.count_by_state(),
        }

    async def handle_provider_webhook(self, payload: dict[str, Any]) -> int:
        """
        Route a provider callback to the tenant's client.

        Returns:
            Number of events emitted (0 when the instance is unknown)
        """
        instance = extract_instance_name(payload)
        if not instance or not instance.startswith(self.instance_prefix):
            logger.warning(f"Webhook for unknown instance: {instance}")
            return 0

        tenant_id = instance[len(self.instance_prefix):]
        connection = self.registry.get(tenant_id)
        if connection is None or connection.client is None:
            logger.info(f"Webhook for inactive session", extra={"tenant_id": tenant_id})
            return 0

        return connection.client.handle_webhook(payload)

    async def shutdown(self) -> None:
        """Close every session (credentials are kept) and flush the notifier."""
        connections = list(self.registry)
        logger.info(f"Shutting down {len(connections)} sessions")
        results = await asyncio.gather(
            *(connection.close() for connection in connections),
            return_exceptions=True,
        )
        for connection, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.error(f"Error closing session: {result}", extra={"tenant_id": connection.tenant_id})
        await self.notifier.aclose()
