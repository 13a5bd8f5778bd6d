"""
Connection State Machine

One TenantConnection per registered tenant. It owns the protocol client, the
message cache and the session timers, and is the only place the session
state changes.

Protocol-client events arrive on a queue tagged with the generation of the
client that produced them. A single pump task consumes the queue and applies
each event under the connection lock, so transitions never interleave.
Every teardown bumps the generation; events and timers from an older
generation are dropped.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from messaging_sessions.contracts.event_types import SessionEventType
from messaging_sessions.errors import AuthFailed, InitializationFailed
from messaging_sessions.notify.webhook import Notifier
from messaging_sessions.persistence.credentials import CredentialStore
from messaging_sessions.providers.base import (
    AuthCodeIssued,
    AuthFailure,
    ClientContext,
    ClientEvent,
    ClientFactory,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    DisconnectReason,
    MessageReceived,
    MessageStatusChanged,
    ProtocolClient,
    ProtocolMessage,
    phone_from_jid,
)
from messaging_sessions.rendering.qr import QRCodeRenderer, raw_code_data_url
from messaging_sessions.session.cache import MessageCache
from messaging_sessions.session.registry import SessionRegistry, SessionState
from messaging_sessions.session.timers import SessionTimers
from messaging_sessions.settings import Settings

if TYPE_CHECKING:
    from messaging_sessions.service.dispatcher import OutboundDispatcher
    from messaging_sessions.service.reconnect import ReconnectionSupervisor

logger = logging.getLogger(__name__)

WATCHDOG_TIMER = "watchdog"


@dataclass
class ConnectionConfig:
    """Per-connection tunables."""

    cache_capacity: int = 1000
    cache_evict_fraction: float = 0.2
    resend_prefix_match: bool = False
    init_max_attempts: int = 3
    init_retry_delay: float = 3.0
    watchdog_timeout: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConnectionConfig":
        return cls(
            cache_capacity=settings.MESSAGE_CACHE_CAPACITY,
            cache_evict_fraction=settings.MESSAGE_CACHE_EVICT_FRACTION,
            resend_prefix_match=settings.RESEND_PREFIX_MATCH,
            init_max_attempts=max(1, settings.INIT_MAX_ATTEMPTS),
            init_retry_delay=settings.INIT_RETRY_DELAY,
            watchdog_timeout=settings.WATCHDOG_TIMEOUT,
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class TenantConnection:
    """
    Live session of one tenant.

    States: initializing -> awaiting_scan -> authenticated -> open, and from
    any of them closing -> reconnect_pending (back to initializing) or
    terminated. ``absent`` is only entered when initialization gives up.
    """

    def __init__(
        self,
        tenant_id: str,
        registry: SessionRegistry,
        client_factory: ClientFactory,
        credential_store: CredentialStore,
        notifier: Notifier,
        renderer: QRCodeRenderer,
        supervisor: "ReconnectionSupervisor",
        dispatcher: "OutboundDispatcher | None" = None,
        config: ConnectionConfig | None = None,
    ):
        self.tenant_id = tenant_id
        self.registry = registry
        self.client_factory = client_factory
        self.credential_store = credential_store
        self.notifier = notifier
        self.renderer = renderer
        self.supervisor = supervisor
        self.dispatcher = dispatcher
        self.config = config or ConnectionConfig()

        self.state = SessionState.ABSENT
        self.generation = registry.generation(tenant_id)
        self.client: ProtocolClient | None = None
        self.cache: MessageCache | None = None
        self.phone: str | None = None
        self.display_name: str | None = None
        self.qr_code: str | None = None
        self.pairing_code: str | None = None  # Raw scan code, for terminal rendering
        self.created_at = _now()
        self.connected_at: datetime | None = None
        self.last_activity_at: datetime | None = None
        self.last_error: str | None = None
        self.close_reason: DisconnectReason | None = None

        self.timers = SessionTimers(tenant_id, lambda: self.generation)
        self._lock = asyncio.Lock()
        self._events: asyncio.Queue[tuple[int, ClientEvent]] = asyncio.Queue()
        self._pump_task: asyncio.Task[None] | None = None
        self._init_task: asyncio.Task[None] | None = None
        self._handling = False
        self._closed = False

    def __repr__(self) -> str:
        return f"<TenantConnection {self.tenant_id} {self.state.value} gen={self.generation}>"

    # Lifecycle

    def start(self, fresh: bool = True) -> asyncio.Task[None]:
        """
        Begin initialization in the background.

        Args:
            fresh: Wipe stored credentials first (new pairing)
        """
        return self._spawn_initialize(fresh=fresh, wipe_credentials=False)

    async def reconnect(self, wipe_credentials: bool = False) -> None:
        """Reconnect timer callback."""
        if self.state is not SessionState.RECONNECT_PENDING:
            logger.debug(
                f"Reconnect skipped in state {self.state}",
                extra={"tenant_id": self.tenant_id},
            )
            return
        self._spawn_initialize(fresh=False, wipe_credentials=wipe_credentials)

    async def wait_initialized(self) -> None:
        """Wait for the current initialization. Raises InitializationFailed on exhaustion."""
        if self._init_task is not None:
            await self._init_task

    def _spawn_initialize(self, fresh: bool, wipe_credentials: bool) -> asyncio.Task[None]:
        self._ensure_pump()
        task = asyncio.create_task(
            self._initialize(fresh, wipe_credentials),
            name=f"init-{self.tenant_id}",
        )
        task.add_done_callback(self._init_done)
        self._init_task = task
        return task

    def _init_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, InitializationFailed):
            logger.error(
                f"Initialization crashed: {exc}",
                exc_info=exc,
                extra={"tenant_id": self.tenant_id},
            )

    async def _cancel_init(self) -> None:
        task = self._init_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, InitializationFailed):
            await task

    async def _initialize(self, fresh: bool, wipe_credentials: bool) -> None:
        async with self._lock:
            await self._teardown_client()
            self._set_state(SessionState.INITIALIZING)
            self.cache = MessageCache(
                self.tenant_id,
                capacity=self.config.cache_capacity,
                evict_fraction=self.config.cache_evict_fraction,
            )
            self.qr_code = None
            self.pairing_code = None
            if fresh or wipe_credentials:
                self._wipe_credentials()

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.config.watchdog_timeout
            max_attempts = self.config.init_max_attempts
            last_error: Exception | None = None

            for attempt in range(1, max_attempts + 1):
                if attempt > 1:
                    await asyncio.sleep(self.config.init_retry_delay)
                    # Each retry starts from a clean slate with a new generation
                    self._wipe_credentials()
                    self.generation = self.registry.next_generation(self.tenant_id)

                self.timers.schedule(
                    WATCHDOG_TIMER,
                    max(0.0, deadline - loop.time()),
                    self._on_watchdog,
                )

                client = self._create_client()
                self.client = client
                try:
                    await client.start()
                except asyncio.CancelledError:
                    self.client = None
                    await self._shutdown_quietly(client)
                    raise
                except Exception as e:
                    last_error = e
                    self.client = None
                    logger.warning(
                        f"Protocol client start failed (attempt {attempt}/{max_attempts}): {e}",
                        extra={"tenant_id": self.tenant_id, "generation": self.generation},
                    )
                    await self._shutdown_quietly(client)
                    continue

                logger.info(
                    f"Protocol client started",
                    extra={"tenant_id": self.tenant_id, "generation": self.generation, "attempt": attempt},
                )
                return

            await self._fail_initialization(max_attempts, last_error)

    async def _fail_initialization(self, attempts: int, cause: Exception | None) -> None:
        error = InitializationFailed(self.tenant_id, attempts, cause)
        logger.error(str(error), extra={"tenant_id": self.tenant_id})

        self.last_error = str(cause) if cause else str(error)
        self.generation = self.registry.next_generation(self.tenant_id)
        self.timers.cancel_all()
        self._set_state(SessionState.ABSENT)
        self.cache = None
        self.registry.remove(self.tenant_id, self)
        self.supervisor.reset(self.tenant_id)
        self._wipe_credentials()
        await self._notify(
            SessionEventType.INITIALIZATION_FAILED,
            {"error": self.last_error, "attempts": attempts},
        )
        self._stop_pump()
        raise error

    def _create_client(self) -> ProtocolClient:
        generation = self.generation
        context = ClientContext(
            tenant_id=self.tenant_id,
            generation=generation,
            credentials=self._load_credentials(),
            emit=lambda event: self._enqueue(generation, event),
            get_message=self.resolve_resend,
        )
        return self.client_factory(context)

    async def disconnect(self) -> bool:
        """
        Log out and tear everything down.

        Logout is best effort; cleanup happens regardless.

        Returns:
            Whether the protocol-level logout succeeded
        """
        await self._cancel_init()
        async with self._lock:
            logged_out = False
            client = self.client
            if client is not None:
                try:
                    await client.logout()
                    logged_out = True
                except Exception as e:
                    logger.warning(
                        f"Logout failed, forcing cleanup: {e}",
                        extra={"tenant_id": self.tenant_id},
                    )

            await self._terminate(
                SessionEventType.DISCONNECTED,
                {"reason": "manual_disconnect", "manualDisconnect": True},
            )
            return logged_out

    async def close(self) -> None:
        """Tear down without logging out or notifying (shutdown, superseded session)."""
        await self._cancel_init()
        async with self._lock:
            await self._teardown_client()
            self._set_state(SessionState.TERMINATED)
            self.cache = None
            self.qr_code = None
            self.pairing_code = None
            self.registry.remove(self.tenant_id, self)
            self.supervisor.reset(self.tenant_id)
            self._stop_pump()

    async def _terminate(
        self,
        event: SessionEventType,
        data: dict[str, Any],
        wipe_credentials: bool = True,
    ) -> None:
        """Final teardown. Caller holds the lock."""
        self._set_state(SessionState.TERMINATED)
        await self._teardown_client()
        self.supervisor.reset(self.tenant_id)
        self.registry.remove(self.tenant_id, self)
        if self.cache is not None:
            self.cache.clear()
            self.cache = None
        self.qr_code = None
        self.pairing_code = None
        if self.dispatcher is not None:
            self.dispatcher.discard_tenant(self.tenant_id)
        if wipe_credentials:
            self._wipe_credentials()
        await self._notify(event, data)
        self._stop_pump()

    async def _teardown_client(self) -> None:
        """Invalidate the current generation and release the client."""
        self.generation = self.registry.next_generation(self.tenant_id)
        self.timers.cancel_all()
        client, self.client = self.client, None
        if client is not None:
            await self._shutdown_quietly(client)

    async def _shutdown_quietly(self, client: ProtocolClient) -> None:
        try:
            await client.shutdown()
        except Exception as e:
            logger.warning(f"Client shutdown failed: {e}", extra={"tenant_id": self.tenant_id})

    # Event pump

    def _enqueue(self, generation: int, event: ClientEvent) -> None:
        self._events.put_nowait((generation, event))

    def _ensure_pump(self) -> None:
        self._closed = False
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump(), name=f"events-{self.tenant_id}")

    def _stop_pump(self) -> None:
        self._closed = True
        task = self._pump_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _pump(self) -> None:
        while not self._closed:
            generation, event = await self._events.get()
            self._handling = True
            try:
                await self._dispatch(generation, event)
            finally:
                self._handling = False

    async def _dispatch(self, generation: int, event: ClientEvent) -> None:
        if generation != self.generation:
            logger.debug(
                f"Dropping stale {type(event).__name__}",
                extra={"tenant_id": self.tenant_id, "generation": generation, "current": self.generation},
            )
            return

        async with self._lock:
            # A transition may have happened while we waited for the lock
            if generation != self.generation:
                return
            try:
                await self._handle(event)
            except Exception:
                logger.exception(
                    f"Failed to handle {type(event).__name__}",
                    extra={"tenant_id": self.tenant_id},
                )

    async def drain(self) -> None:
        """Wait for the running initialization and every queued event."""
        while True:
            init = self._init_task
            if init is not None and not init.done():
                await asyncio.wait({init})
                continue
            if self._closed or (self._events.empty() and not self._handling):
                return
            await asyncio.sleep(0)

    async def _handle(self, event: ClientEvent) -> None:
        if isinstance(event, AuthCodeIssued):
            await self._on_auth_code(event)
        elif isinstance(event, ConnectionOpened):
            await self._on_opened(event)
        elif isinstance(event, ConnectionClosed):
            await self._on_closed(event)
        elif isinstance(event, MessageReceived):
            await self._on_message(event)
        elif isinstance(event, MessageStatusChanged):
            self._on_status(event)
        elif isinstance(event, CredentialsUpdated):
            self._on_credentials(event)
        elif isinstance(event, AuthFailure):
            await self._on_auth_failure(event)
        else:
            logger.warning(f"Unknown client event: {event!r}", extra={"tenant_id": self.tenant_id})

    async def _on_auth_code(self, event: AuthCodeIssued) -> None:
        if self.state not in (SessionState.INITIALIZING, SessionState.AWAITING_SCAN):
            logger.debug(f"Ignoring scan code in state {self.state}", extra={"tenant_id": self.tenant_id})
            return

        self._set_state(SessionState.AWAITING_SCAN)
        self.timers.cancel(WATCHDOG_TIMER)

        try:
            rendered = self.renderer.render(event.code)
        except Exception as e:
            logger.error(f"Error generating QR image: {e}", extra={"tenant_id": self.tenant_id})
            rendered = raw_code_data_url(event.code)

        self.qr_code = rendered
        self.pairing_code = event.code
        await self._notify(SessionEventType.QR_GENERATED, {"qrCode": rendered})

    async def _on_opened(self, event: ConnectionOpened) -> None:
        if self.state is not SessionState.OPEN:
            self._set_state(SessionState.AUTHENTICATED)

        self.phone = phone_from_jid(event.phone) or self.phone
        self.display_name = event.display_name or self.display_name
        self.qr_code = None
        self.pairing_code = None
        self.last_error = None
        self.close_reason = None
        self.connected_at = _now()
        self.last_activity_at = self.connected_at
        self.timers.cancel(WATCHDOG_TIMER)
        self.supervisor.reset(self.tenant_id)
        self._set_state(SessionState.OPEN)

        await self._notify(
            SessionEventType.CONNECTED,
            {"phone": self.phone, "pushName": self.display_name},
        )

    async def _on_closed(self, event: ConnectionClosed) -> None:
        reason = event.reason
        logger.info(
            f"Connection closed: {reason.value}",
            extra={"tenant_id": self.tenant_id, "detail": event.detail},
        )
        self._set_state(SessionState.CLOSING)
        self.close_reason = reason
        self.last_error = event.detail or reason.value
        await self._teardown_client()

        if not self.supervisor.should_reconnect(reason):
            await self._terminate(SessionEventType.DISCONNECTED, {"reason": reason.value})
            return

        self._set_state(SessionState.RECONNECT_PENDING)
        if self.supervisor.schedule(self, reason) is None:
            await self._terminate(
                SessionEventType.DISCONNECTED,
                {"reason": "reconnect_exhausted", "lastReason": reason.value},
                wipe_credentials=False,
            )

    async def _on_message(self, event: MessageReceived) -> None:
        message = event.message
        if self.cache is not None:
            self.cache.store(message)
        self.last_activity_at = _now()

        if message.from_me or not message.payload:
            return

        await self._notify(
            SessionEventType.MESSAGE_RECEIVED,
            {
                "messageId": message.message_id,
                "from": phone_from_jid(message.conversation_id),
                "jid": message.conversation_id,
                "text": message.text or "Non-text message",
                "timestamp": int(message.timestamp.timestamp()),
            },
        )

    def _on_status(self, event: MessageStatusChanged) -> None:
        if self.cache is not None:
            self.cache.update_status(event.message_id, event.status)
        if self.dispatcher is not None:
            self.dispatcher.record_status(self.tenant_id, event.message_id, event.status)

    def _on_credentials(self, event: CredentialsUpdated) -> None:
        try:
            self.credential_store.persist(self.tenant_id, event.credentials)
        except Exception as e:
            logger.error(f"Failed to persist credentials: {e}", extra={"tenant_id": self.tenant_id})

    async def _on_auth_failure(self, event: AuthFailure) -> None:
        error = AuthFailed(event.detail or "Authentication failed", tenant_id=self.tenant_id)
        logger.error(f"Authentication failure: {error}", extra={"tenant_id": self.tenant_id})
        self.last_error = str(error)
        await self._terminate(SessionEventType.AUTH_FAILED, {"error": str(error)})

    async def _on_watchdog(self) -> None:
        if self.state is not SessionState.INITIALIZING:
            return

        logger.warning(
            f"No scan code or connection within {self.config.watchdog_timeout}s",
            extra={"tenant_id": self.tenant_id, "generation": self.generation},
        )
        await self._cancel_init()

        async with self._lock:
            if self.state is not SessionState.INITIALIZING:
                return
            self._set_state(SessionState.CLOSING)
            self.last_error = "connection_timeout"
            await self._teardown_client()

            self._set_state(SessionState.RECONNECT_PENDING)
            delay = self.supervisor.schedule(self, DisconnectReason.TIMED_OUT, wipe_credentials=True)
            await self._notify(
                SessionEventType.CONNECTION_TIMEOUT,
                {"timeout": self.config.watchdog_timeout, "willRetry": delay is not None},
            )
            if delay is None:
                await self._terminate(
                    SessionEventType.DISCONNECTED,
                    {"reason": "reconnect_exhausted", "lastReason": DisconnectReason.TIMED_OUT.value},
                    wipe_credentials=False,
                )

    # Helpers

    def resolve_resend(self, message_id: str) -> ProtocolMessage | None:
        """Answer a protocol resend request from the cache. None on a miss."""
        cache = self.cache
        if cache is None:
            return None
        message = cache.lookup(message_id)
        if message is None and self.config.resend_prefix_match:
            message = cache.lookup_prefix(message_id)
        return message

    def note_outbound(self, message: ProtocolMessage) -> None:
        if self.cache is not None:
            self.cache.store(message)
        self.last_activity_at = _now()

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.info(
            f"Session {self.state.value} -> {state.value}",
            extra={"tenant_id": self.tenant_id, "generation": self.generation},
        )
        self.state = state

    def _load_credentials(self) -> dict[str, Any] | None:
        try:
            return self.credential_store.load(self.tenant_id)
        except Exception as e:
            logger.error(f"Failed to load credentials: {e}", extra={"tenant_id": self.tenant_id})
            return None

    def _wipe_credentials(self) -> None:
        try:
            self.credential_store.wipe(self.tenant_id)
        except Exception as e:
            logger.error(f"Failed to wipe credentials: {e}", extra={"tenant_id": self.tenant_id})

    async def _notify(self, event: SessionEventType, data: dict[str, Any]) -> None:
        try:
            await self.notifier.notify(self.tenant_id, event, data)
        except Exception as e:
            logger.error(f"Notifier failed for {event}: {e}", extra={"tenant_id": self.tenant_id})

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def snapshot(self) -> dict[str, Any]:
        """Status view for the API and CLI."""
        return {
            "merchantId": self.tenant_id,
            "connected": self.is_open,
            "status": self.state.value,
            "qrCode": self.qr_code,
            "pairingCode": self.pairing_code,
            "phone": self.phone,
            "pushName": self.display_name,
            "generation": self.generation,
            "createdAt": _iso(self.created_at),
            "connectedAt": _iso(self.connected_at),
            "lastActivity": _iso(self.last_activity_at),
            "reconnectAttempts": self.supervisor.attempts(self.tenant_id),
            "cachedMessages": len(self.cache) if self.cache is not None else 0,
            "lastError": self.last_error,
        }
