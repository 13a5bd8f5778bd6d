"""
Pytest fixtures for session tests.
"""

import asyncio
from typing import Any, Callable

import pytest

from messaging_sessions.contracts.event_types import SessionEventType
from messaging_sessions.notify.webhook import Notifier
from messaging_sessions.persistence.credentials import MemoryCredentialStore
from messaging_sessions.providers.base import ClientContext
from messaging_sessions.providers.stub import StubProtocolClient
from messaging_sessions.service.connection import ConnectionConfig
from messaging_sessions.service.dispatcher import OutboundDispatcher
from messaging_sessions.service.manager import SessionManager
from messaging_sessions.service.reconnect import ReconnectPolicy
from messaging_sessions.session.registry import SessionRegistry

SAMPLE_PHONE = "5215551234567"


class RecordingNotifier(Notifier):
    """Keeps every notification in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, SessionEventType, dict[str, Any]]] = []

    async def notify(self, tenant_id, event, data=None):
        self.events.append((tenant_id, event, data or {}))

    def of_type(self, event: SessionEventType, tenant_id: str | None = None) -> list[dict[str, Any]]:
        return [
            data for tenant, kind, data in self.events
            if kind == event and (tenant_id is None or tenant == tenant_id)
        ]

    def types(self, tenant_id: str | None = None) -> list[SessionEventType]:
        return [kind for tenant, kind, _ in self.events if tenant_id is None or tenant == tenant_id]


class FakeRenderer:
    """Skips image generation."""

    def render(self, code: str) -> str:
        return f"data:image/png;base64,{code}"


class StubFactory:
    """
    Builds stub clients and remembers them.

    ``fail_starts`` counts failing starts across clients, since every retry
    gets a new client.
    """

    def __init__(self, **client_kwargs: Any):
        self.client_kwargs = client_kwargs
        self.clients: list[StubProtocolClient] = []
        self.fail_starts = 0

    def __call__(self, context: ClientContext) -> StubProtocolClient:
        fail = 0
        if self.fail_starts > 0:
            self.fail_starts -= 1
            fail = 1
        client = StubProtocolClient(context, fail_starts=fail, **self.client_kwargs)
        self.clients.append(client)
        return client

    @property
    def latest(self) -> StubProtocolClient:
        return self.clients[-1]


class ManualClock:
    """Monotonic clock that only moves when told to, or when slept on."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def credential_store():
    return MemoryCredentialStore()


@pytest.fixture
def stub_factory():
    return StubFactory()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
async def make_manager(notifier, credential_store, stub_factory, clock):
    """Build managers with fast timings; all are shut down after the test."""
    managers: list[SessionManager] = []

    def _make(
        factory: Callable[[ClientContext], Any] | None = None,
        policy: ReconnectPolicy | None = None,
        renderer: Any = None,
        notifier_override: Notifier | None = None,
        **config: Any,
    ) -> SessionManager:
        registry = SessionRegistry()
        dispatcher = OutboundDispatcher(
            registry,
            min_interval=1.5,
            delivery_timeout=0.2,
            clock=clock,
            sleep=clock.sleep,
        )
        settings = {"init_retry_delay": 0.01, "watchdog_timeout": 5.0, **config}
        manager = SessionManager(
            client_factory=factory or stub_factory,
            credential_store=credential_store,
            notifier=notifier_override or notifier,
            renderer=renderer or FakeRenderer(),
            config=ConnectionConfig(**settings),
            reconnect_policy=policy or ReconnectPolicy(
                drop_delay=0.01, delay=0.01, backoff=2.0, max_delay=0.05, max_attempts=3,
            ),
            dispatcher=dispatcher,
            registry=registry,
        )
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        await manager.shutdown()
    await asyncio.sleep(0)


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.fixture
def wait_until():
    """Poll a condition while letting background tasks run."""

    async def _wait(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait


@pytest.fixture
def open_session():
    """Start a tenant and complete pairing through the stub client."""

    async def _open(manager: SessionManager, tenant_id: str = "m1", phone: str = SAMPLE_PHONE):
        await manager.start_session(tenant_id)
        connection = manager.get(tenant_id)
        await connection.drain()
        connection.client.simulate_scan(phone, "Tienda")
        await connection.drain()
        return connection

    return _open
