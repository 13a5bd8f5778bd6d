"""
Tests for the outbound dispatcher.
"""

import asyncio

import pytest

from messaging_sessions.errors import NotConnected, SendFailed
from messaging_sessions.providers.base import DisconnectReason, MessageStatus, normalize_recipient
from messaging_sessions.service.dispatcher import RateLimitLedger
from messaging_sessions.service.reconnect import ReconnectPolicy

from conftest import SAMPLE_PHONE


class TestSendGuards:
    """Tests for sends outside an open session."""

    async def test_send_unknown_tenant(self, manager):
        """Test sending for a tenant with no session."""
        with pytest.raises(NotConnected) as exc_info:
            await manager.send("nobody", "5215550001111", "hola")
        assert exc_info.value.state == "absent"

    async def test_send_while_awaiting_scan(self, manager):
        """Test that an unpaired session never reaches the client."""
        await manager.start_session("m1")
        connection = manager.get("m1")
        await connection.drain()

        with pytest.raises(NotConnected) as exc_info:
            await manager.send("m1", "5215550001111", "hola")

        assert exc_info.value.state == "awaiting_scan"
        assert connection.client.sent_messages == []

    async def test_send_after_reconnect_pending(self, make_manager, open_session):
        """Test that a dropped session rejects sends until it reopens."""
        manager = make_manager(policy=ReconnectPolicy(drop_delay=5.0, delay=5.0))
        connection = await open_session(manager)
        connection.client.simulate_close(DisconnectReason.CONNECTION_LOST)
        await connection.drain()

        with pytest.raises(NotConnected):
            await manager.send("m1", "5215550001111", "hola")


class TestSend:
    """Tests for successful sends."""

    async def test_send_text(self, manager, open_session):
        """Test sending a text message."""
        connection = await open_session(manager)

        result = await manager.send("m1", "+52 1 555 000 1111", "Tu pedido está listo")

        assert result.message_id.startswith("stub_msg_")
        assert result.recipient_id == "5215550001111"
        assert result.status is MessageStatus.SENT
        assert result.confirmed is False
        assert result.waited is False
        assert connection.client.sent_messages[0]["to"] == "5215550001111"
        assert connection.client.sent_messages[0]["text"] == "Tu pedido está listo"

    async def test_jid_recipient_passes_through(self, manager, open_session):
        """Test that JIDs are not reformatted."""
        connection = await open_session(manager)

        await manager.send("m1", "120363000000000000@g.us", "hola grupo")

        assert connection.client.sent_messages[0]["to"] == "120363000000000000@g.us"

    async def test_send_failure(self, manager, open_session):
        """Test that a rejected send raises SendFailed and counts the failure."""
        connection = await open_session(manager)
        connection.client.fail_sends = True

        with pytest.raises(SendFailed) as exc_info:
            await manager.send("m1", "5215550001111", "hola")

        assert exc_info.value.recipient_id == "5215550001111"
        assert exc_info.value.__cause__ is exc_info.value.cause
        assert manager.dispatcher.failure_count("m1", "5215550001111") == 1
        assert manager.dispatcher.ledger.last_sent(("m1", "5215550001111")) is None


class TestRateLimit:
    """Tests for the per-recipient minimum interval."""

    async def test_second_send_waits_out_interval(self, manager, clock, open_session):
        """Test that back-to-back sends to one recipient are spaced."""
        await open_session(manager)

        await manager.send("m1", "5215550001111", "uno")
        clock.advance(0.5)
        await manager.send("m1", "5215550001111", "dos")

        assert clock.sleeps == [pytest.approx(1.0)]

    async def test_different_recipients_do_not_wait(self, manager, clock, open_session):
        """Test that the interval is per recipient."""
        await open_session(manager)

        await manager.send("m1", "5215550001111", "uno")
        await manager.send("m1", "5215550002222", "dos")

        assert clock.sleeps == []

    async def test_elapsed_interval_does_not_wait(self, manager, clock, open_session):
        """Test that no wait is added once the interval has passed."""
        await open_session(manager)

        await manager.send("m1", "5215550001111", "uno")
        clock.advance(2.0)
        await manager.send("m1", "5215550001111", "dos")

        assert clock.sleeps == []

    async def test_interval_is_per_tenant(self, manager, clock, open_session):
        """Test that two tenants sending to the same number do not wait on each other."""
        await open_session(manager, "m1")
        await open_session(manager, "m2", phone="5215559999999")

        await manager.send("m1", "5215550001111", "uno")
        await manager.send("m2", "5215550001111", "dos")

        assert clock.sleeps == []

    async def test_concurrent_sends_are_serialised(self, manager, clock, open_session):
        """Test that concurrent sends to one recipient are spaced too."""
        connection = await open_session(manager)

        await asyncio.gather(
            manager.send("m1", "5215550001111", "uno"),
            manager.send("m1", "5215550001111", "dos"),
            manager.send("m1", "5215550001111", "tres"),
        )

        assert len(connection.client.sent_messages) == 3
        assert clock.sleeps == [pytest.approx(1.5), pytest.approx(1.5)]

    def test_ledger_sweep(self, clock):
        """Test that stale ledger entries are forgotten."""
        ledger = RateLimitLedger(1.5, clock)
        ledger.record(("m1", "a"), clock())
        clock.advance(0.5)
        ledger.record(("m1", "b"), clock())
        clock.advance(1.2)

        assert ledger.sweep() == 1
        assert ledger.last_sent(("m1", "a")) is None
        assert ledger.last_sent(("m1", "b")) is not None


class TestDeliveryTracking:
    """Tests for delivery records and receipts."""

    async def test_wait_times_out_unconfirmed(self, manager, open_session):
        """Test that a missing receipt is reported, not raised."""
        await open_session(manager)

        result = await manager.send("m1", "5215550001111", "hola", wait_for_delivery=True, timeout=0.05)

        assert result.waited is True
        assert result.confirmed is False
        assert result.status is MessageStatus.SENT

    async def test_explicit_zero_timeout_is_honoured(self, manager, open_session, monkeypatch):
        """Test that timeout=0 is not replaced by the default wait."""
        await open_session(manager)
        dispatcher = manager.dispatcher
        timeouts = []
        wait = dispatcher._wait_for_delivery

        async def recording_wait(record, timeout):
            timeouts.append(timeout)
            return await wait(record, timeout)

        monkeypatch.setattr(dispatcher, "_wait_for_delivery", recording_wait)

        result = await manager.send("m1", "5215550001111", "hola", wait_for_delivery=True, timeout=0)
        await manager.send("m1", "5215550002222", "hola", wait_for_delivery=True)

        assert timeouts == [0, dispatcher.delivery_timeout]
        assert result.waited is True
        assert result.confirmed is False

    async def test_receipt_confirms_waiting_send(self, manager, open_session, wait_until):
        """Test that a delivery receipt wakes the waiting sender."""
        connection = await open_session(manager)
        client = connection.client

        task = asyncio.create_task(
            manager.send("m1", "5215550001111", "hola", wait_for_delivery=True, timeout=2.0)
        )
        await wait_until(lambda: client.sent_messages)
        await wait_until(lambda: manager.dispatcher.get_record("m1", client.sent_messages[0]["message_id"]))
        client.simulate_receipt(client.sent_messages[0]["message_id"], MessageStatus.DELIVERED)

        result = await task

        assert result.confirmed is True
        assert result.status is MessageStatus.DELIVERED

    async def test_status_never_regresses(self, manager, open_session):
        """Test that late or duplicate receipts cannot move a record backwards."""
        await open_session(manager)
        result = await manager.send("m1", "5215550001111", "hola")
        dispatcher = manager.dispatcher

        dispatcher.record_status("m1", result.message_id, MessageStatus.DELIVERED)
        dispatcher.record_status("m1", result.message_id, MessageStatus.SENT)
        dispatcher.record_status("m1", result.message_id, MessageStatus.FAILED)

        assert dispatcher.get_record("m1", result.message_id).status is MessageStatus.DELIVERED

    async def test_read_receipt_releases_record(self, manager, open_session):
        """Test that read messages are no longer tracked."""
        await open_session(manager)
        result = await manager.send("m1", "5215550001111", "hola")

        manager.dispatcher.record_status("m1", result.message_id, MessageStatus.READ)

        assert manager.dispatcher.get_record("m1", result.message_id) is None

    async def test_failed_receipt_settles_wait(self, manager, open_session, wait_until):
        """Test that a failure receipt ends the wait unconfirmed."""
        connection = await open_session(manager)
        client = connection.client

        task = asyncio.create_task(
            manager.send("m1", "5215550001111", "hola", wait_for_delivery=True, timeout=2.0)
        )
        await wait_until(lambda: client.sent_messages)
        await wait_until(lambda: manager.dispatcher.get_record("m1", client.sent_messages[0]["message_id"]))
        client.simulate_receipt(client.sent_messages[0]["message_id"], MessageStatus.FAILED)

        result = await task

        assert result.confirmed is False
        assert result.status is MessageStatus.FAILED

    async def test_early_receipt_applied_on_track(self, manager, open_session):
        """Test a receipt that arrives before the send call returns."""
        await open_session(manager)
        dispatcher = manager.dispatcher

        assert dispatcher.record_status("m1", "early-id", MessageStatus.DELIVERED) is False
        record = dispatcher._track("m1", "5215550001111", "early-id", 0.0)

        assert record.status is MessageStatus.DELIVERED
        assert record.settled.is_set()

    async def test_receipts_are_scoped_by_tenant(self, manager, open_session):
        """Test that one tenant's receipt cannot confirm another's message."""
        await open_session(manager, "m1")
        await open_session(manager, "m2", phone="5215559999999")
        result = await manager.send("m1", "5215550001111", "hola")

        manager.dispatcher.record_status("m2", result.message_id, MessageStatus.DELIVERED)

        assert manager.dispatcher.get_record("m1", result.message_id).status is MessageStatus.SENT

    async def test_records_discarded_on_terminate(self, manager, open_session):
        """Test that a logged-out tenant leaves nothing behind."""
        connection = await open_session(manager)
        result = await manager.send("m1", "5215550001111", "hola")

        connection.client.simulate_close(DisconnectReason.LOGGED_OUT)
        await connection.drain()

        assert manager.dispatcher.get_record("m1", result.message_id) is None
        assert manager.dispatcher.ledger.last_sent(("m1", "5215550001111")) is None

    async def test_record_limit(self, manager, clock, open_session):
        """Test that the oldest records are dropped past the limit."""
        await open_session(manager)
        dispatcher = manager.dispatcher
        dispatcher.record_limit = 3

        ids = []
        for i in range(4):
            result = await manager.send("m1", f"52155500000{i:02d}", "hola")
            ids.append(result.message_id)

        assert dispatcher.get_record("m1", ids[0]) is None
        assert all(dispatcher.get_record("m1", message_id) for message_id in ids[1:])

    async def test_records_expire(self, manager, clock, open_session):
        """Test TTL-based expiry of delivery records."""
        await open_session(manager)
        dispatcher = manager.dispatcher
        result = await manager.send("m1", "5215550001111", "hola")

        clock.advance(dispatcher.record_ttl + 1)
        dispatcher.sweep()

        assert dispatcher.get_record("m1", result.message_id) is None


class TestRecipientNormalisation:
    """Tests for recipient id normalisation."""

    def test_strips_formatting(self):
        assert normalize_recipient("+52 (155) 5000-1111") == "5215550001111"

    def test_jid_untouched(self):
        assert normalize_recipient("5215550001111@s.whatsapp.net") == "5215550001111@s.whatsapp.net"

    def test_default_country_prefix(self):
        assert normalize_recipient("5550001111", "521") == "5215550001111"
        assert normalize_recipient(SAMPLE_PHONE, "521") == SAMPLE_PHONE
