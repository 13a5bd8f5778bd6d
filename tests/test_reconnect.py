"""
Tests for the reconnection policy, supervisor and session timers.
"""

import asyncio

import pytest

from messaging_sessions.providers.base import DisconnectReason
from messaging_sessions.service.reconnect import RECONNECT_TIMER, ReconnectionSupervisor, ReconnectPolicy
from messaging_sessions.session.timers import SessionTimers


class FakeConnection:
    """Just enough of a TenantConnection for the supervisor."""

    def __init__(self, tenant_id: str = "m1"):
        self.tenant_id = tenant_id
        self.generation = 1
        self.timers = SessionTimers(tenant_id, lambda: self.generation)
        self.reconnects: list[bool] = []

    async def reconnect(self, wipe_credentials: bool = False) -> None:
        self.reconnects.append(wipe_credentials)


class TestReconnectPolicy:
    """Tests for backoff delays."""

    def test_connection_drop_uses_short_base(self):
        policy = ReconnectPolicy()
        assert policy.delay_for(DisconnectReason.CONNECTION_LOST, 1) == 1.0
        assert policy.delay_for(DisconnectReason.CONNECTION_CLOSED, 1) == 1.0

    def test_other_reasons_use_long_base(self):
        policy = ReconnectPolicy()
        assert policy.delay_for(DisconnectReason.RESTART_REQUIRED, 1) == 3.0
        assert policy.delay_for(DisconnectReason.UNKNOWN, 1) == 3.0

    def test_exponential_growth_is_capped(self):
        policy = ReconnectPolicy(max_delay=10.0)
        assert policy.delay_for(DisconnectReason.CONNECTION_LOST, 2) == 2.0
        assert policy.delay_for(DisconnectReason.CONNECTION_LOST, 3) == 4.0
        assert policy.delay_for(DisconnectReason.CONNECTION_LOST, 10) == 10.0


class TestReconnectionSupervisor:
    """Tests for reconnect scheduling."""

    async def test_logged_out_is_not_scheduled(self):
        supervisor = ReconnectionSupervisor()
        connection = FakeConnection()

        assert supervisor.schedule(connection, DisconnectReason.LOGGED_OUT) is None
        assert connection.timers.pending() == []
        assert supervisor.attempts("m1") == 0

    async def test_schedules_single_timer(self):
        """Test that scheduling twice leaves one pending reconnect."""
        supervisor = ReconnectionSupervisor(ReconnectPolicy(drop_delay=5.0))
        connection = FakeConnection()

        supervisor.schedule(connection, DisconnectReason.CONNECTION_LOST)
        supervisor.schedule(connection, DisconnectReason.CONNECTION_LOST)

        assert connection.timers.pending() == [RECONNECT_TIMER]
        assert supervisor.attempts("m1") == 2
        connection.timers.cancel_all()

    async def test_timer_invokes_reconnect(self):
        supervisor = ReconnectionSupervisor(ReconnectPolicy(delay=0.01))
        connection = FakeConnection()

        delay = supervisor.schedule(connection, DisconnectReason.TIMED_OUT, wipe_credentials=True)
        await asyncio.sleep(0.05)

        assert delay == pytest.approx(0.01)
        assert connection.reconnects == [True]

    async def test_gives_up_after_max_attempts(self):
        supervisor = ReconnectionSupervisor(ReconnectPolicy(drop_delay=5.0, max_attempts=2))
        connection = FakeConnection()

        assert supervisor.schedule(connection, DisconnectReason.CONNECTION_LOST) is not None
        assert supervisor.schedule(connection, DisconnectReason.CONNECTION_LOST) is not None
        assert supervisor.schedule(connection, DisconnectReason.CONNECTION_LOST) is None
        connection.timers.cancel_all()

    async def test_reset_restarts_backoff(self):
        supervisor = ReconnectionSupervisor(ReconnectPolicy(drop_delay=5.0, max_delay=60.0))
        connection = FakeConnection()

        supervisor.schedule(connection, DisconnectReason.CONNECTION_LOST)
        supervisor.reset("m1")
        delay = supervisor.schedule(connection, DisconnectReason.CONNECTION_LOST)

        assert delay == 5.0
        assert supervisor.attempts("m1") == 1
        connection.timers.cancel_all()

    async def test_attempts_are_per_tenant(self):
        supervisor = ReconnectionSupervisor(ReconnectPolicy(drop_delay=5.0))
        first, second = FakeConnection("m1"), FakeConnection("m2")

        supervisor.schedule(first, DisconnectReason.CONNECTION_LOST)

        assert supervisor.attempts("m1") == 1
        assert supervisor.attempts("m2") == 0
        first.timers.cancel_all()
        second.timers.cancel_all()


class TestSessionTimers:
    """Tests for generation-scoped timers."""

    async def test_fires_for_current_generation(self):
        generation = 1
        timers = SessionTimers("m1", lambda: generation)
        fired = []

        async def callback():
            fired.append(True)

        timers.schedule("t", 0.01, callback)
        await asyncio.sleep(0.05)

        assert fired == [True]
        assert not timers.is_pending("t")

    async def test_stale_generation_is_ignored(self):
        """Test that a timer outliving its generation does nothing."""
        state = {"generation": 1}
        timers = SessionTimers("m1", lambda: state["generation"])
        fired = []

        async def callback():
            fired.append(True)

        timers.schedule("t", 0.01, callback)
        state["generation"] = 2
        await asyncio.sleep(0.05)

        assert fired == []

    async def test_cancel(self):
        timers = SessionTimers("m1", lambda: 1)
        fired = []

        async def callback():
            fired.append(True)

        timers.schedule("t", 0.01, callback)
        assert timers.cancel("t") is True
        await asyncio.sleep(0.05)

        assert fired == []
        assert timers.cancel("t") is False

    async def test_callback_errors_are_contained(self):
        timers = SessionTimers("m1", lambda: 1)

        async def callback():
            raise RuntimeError("boom")

        task = timers.schedule("t", 0.0, callback)
        await task

        assert task.exception() is None
