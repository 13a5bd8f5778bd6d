"""
Outbound Dispatcher

Sends messages through open tenant sessions:
1. Fails fast unless the tenant session is open
2. Waits out the per-recipient minimum interval
3. Hands the message to the protocol client
4. Tracks the delivery record, optionally waiting for the delivery receipt
"""

import asyncio
import contextlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable

from messaging_sessions.errors import NotConnected, SendFailed
from messaging_sessions.providers.base import MessageStatus, ProtocolMessage, normalize_recipient
from messaging_sessions.session.registry import SessionRegistry, SessionState

if TYPE_CHECKING:
    from messaging_sessions.service.connection import TenantConnection

logger = logging.getLogger(__name__)

LedgerKey = tuple[str, str]  # (tenant_id, recipient_id)

# Receipts that arrive before the send call has registered its record
EARLY_STATUS_LIMIT = 1000


@dataclass
class DeliveryRecord:
    """Delivery tracking for one outbound message."""

    tenant_id: str
    recipient_id: str
    message_id: str
    sent_at: float
    status: MessageStatus = MessageStatus.SENT
    updated_at: float = 0.0
    settled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def confirmed(self) -> bool:
        return self.status in (MessageStatus.DELIVERED, MessageStatus.READ)


@dataclass
class SendResult:
    """Outcome of a send. ``confirmed`` is False when no receipt arrived in time."""

    tenant_id: str
    recipient_id: str
    message_id: str
    timestamp: datetime
    status: MessageStatus
    confirmed: bool = False
    waited: bool = False


class RateLimitLedger:
    """Last successful dispatch time per (tenant, recipient)."""

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._last: dict[LedgerKey, float] = {}

    def __len__(self) -> int:
        return len(self._last)

    def last_sent(self, key: LedgerKey) -> float | None:
        return self._last.get(key)

    def wait_time(self, key: LedgerKey) -> float:
        last = self._last.get(key)
        if last is None:
            return 0.0
        return max(0.0, last + self.min_interval - self._clock())

    def record(self, key: LedgerKey, timestamp: float) -> None:
        self._last[key] = timestamp

    def sweep(self) -> int:
        """Forget entries that no longer constrain anything."""
        now = self._clock()
        expired = [k for k, ts in self._last.items() if now - ts >= self.min_interval]
        for key in expired:
            del self._last[key]
        return len(expired)

    def discard_tenant(self, tenant_id: str) -> None:
        for key in [k for k in self._last if k[0] == tenant_id]:
            del self._last[key]


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class OutboundDispatcher:
    """
    Rate-limited sends with delivery tracking.

    Delivery records and the rate-limit ledger are shared by all tenants and
    keyed by tenant id. Status updates are applied synchronously on the event
    loop, so a receipt and a waiting sender never interleave mid-update.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        min_interval: float = 1.5,
        delivery_timeout: float = 5.0,
        record_ttl: float = 3600.0,
        record_limit: int = 10000,
        default_country_prefix: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.delivery_timeout = delivery_timeout
        self.record_ttl = record_ttl
        self.record_limit = record_limit
        self.default_country_prefix = default_country_prefix
        self._clock = clock
        self._sleep = sleep

        self.ledger = RateLimitLedger(min_interval, clock)
        self._records: dict[LedgerKey, DeliveryRecord] = {}  # (tenant_id, message_id)
        self._early_statuses: OrderedDict[LedgerKey, MessageStatus] = OrderedDict()
        self._failures: dict[LedgerKey, int] = {}
        self._key_locks: dict[LedgerKey, _KeyLock] = {}

    @property
    def min_interval(self) -> float:
        return self.ledger.min_interval

    def _require_open(self, tenant_id: str) -> "TenantConnection":
        connection = self.registry.get(tenant_id)
        if connection is None or connection.state is not SessionState.OPEN or connection.client is None:
            state = connection.state.value if connection else SessionState.ABSENT.value
            raise NotConnected(tenant_id, state)
        return connection

    @contextlib.asynccontextmanager
    async def _serialized(self, key: LedgerKey) -> AsyncIterator[None]:
        entry = self._key_locks.get(key)
        if entry is None:
            entry = self._key_locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._key_locks.pop(key, None)

    async def send(
        self,
        tenant_id: str,
        recipient_id: str,
        text: str,
        wait_for_delivery: bool = False,
        timeout: float | None = None,
    ) -> SendResult:
        """
        Send a text message through the tenant's open session.

        Args:
            tenant_id: Tenant whose session sends the message
            recipient_id: Phone number or JID
            text: Message text
            wait_for_delivery: Also wait for the delivery receipt
            timeout: Delivery wait bound (defaults to delivery_timeout)

        Returns:
            SendResult; ``confirmed`` tells whether a receipt arrived

        Raises:
            NotConnected: the tenant session is not open
            SendFailed: the protocol client rejected the message
        """
        self._require_open(tenant_id)
        recipient = normalize_recipient(recipient_id, self.default_country_prefix)
        key = (tenant_id, recipient)

        async with self._serialized(key):
            delay = self.ledger.wait_time(key)
            if delay > 0:
                logger.debug(
                    f"Rate limiting send for {delay:.2f}s",
                    extra={"tenant_id": tenant_id, "to": recipient},
                )
                await self._sleep(delay)

            # The session may have closed while we waited
            connection = self._require_open(tenant_id)
            try:
                sent = await connection.client.send_text(recipient, text)
            except Exception as e:
                self._failures[key] = self._failures.get(key, 0) + 1
                logger.error(
                    f"Failed to send message: {e}",
                    extra={"tenant_id": tenant_id, "to": recipient, "failures": self._failures[key]},
                )
                raise SendFailed(tenant_id, recipient, e) from e

            dispatched_at = self._clock()
            self.ledger.record(key, dispatched_at)
            record = self._track(tenant_id, recipient, sent.message_id, dispatched_at)

        connection.note_outbound(ProtocolMessage(
            message_id=sent.message_id,
            conversation_id=recipient,
            from_me=True,
            payload={"conversation": text},
            timestamp=sent.timestamp,
            status=MessageStatus.SENT,
        ))

        logger.info(
            f"Message sent",
            extra={"tenant_id": tenant_id, "to": recipient, "message_id": sent.message_id},
        )

        confirmed = record.confirmed
        if wait_for_delivery and not record.settled.is_set():
            confirmed = await self._wait_for_delivery(
                record, self.delivery_timeout if timeout is None else timeout
            )

        return SendResult(
            tenant_id=tenant_id,
            recipient_id=recipient,
            message_id=sent.message_id,
            timestamp=sent.timestamp,
            status=record.status,
            confirmed=confirmed,
            waited=wait_for_delivery,
        )

    async def _wait_for_delivery(self, record: DeliveryRecord, timeout: float) -> bool:
        try:
            await asyncio.wait_for(record.settled.wait(), timeout)
        except asyncio.TimeoutError:
            logger.info(
                f"No delivery receipt within {timeout}s",
                extra={"tenant_id": record.tenant_id, "message_id": record.message_id},
            )
        return record.confirmed

    def _track(self, tenant_id: str, recipient_id: str, message_id: str, sent_at: float) -> DeliveryRecord:
        self.sweep()
        record = DeliveryRecord(
            tenant_id=tenant_id,
            recipient_id=recipient_id,
            message_id=message_id,
            sent_at=sent_at,
            updated_at=sent_at,
        )
        key = (tenant_id, message_id)
        self._records[key] = record

        early = self._early_statuses.pop(key, None)
        if early is not None:
            self._apply(record, early)
        return record

    def record_status(self, tenant_id: str, message_id: str, status: MessageStatus) -> bool:
        """
        Apply a receipt to a delivery record.

        Statuses only move forward (sent -> delivered -> read); ``failed``
        only replaces ``sent``. Returns False if no record is tracked yet.
        """
        key = (tenant_id, message_id)
        record = self._records.get(key)
        if record is None:
            self._early_statuses[key] = status
            while len(self._early_statuses) > EARLY_STATUS_LIMIT:
                self._early_statuses.popitem(last=False)
            return False

        self._apply(record, status)
        return True

    def _apply(self, record: DeliveryRecord, status: MessageStatus) -> None:
        current = record.status
        if status is MessageStatus.FAILED:
            if current in (MessageStatus.PENDING, MessageStatus.SENT):
                record.status = status
        elif current is not MessageStatus.FAILED and status.rank > current.rank:
            record.status = status
        else:
            return

        record.updated_at = self._clock()
        if record.status in (MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED):
            record.settled.set()
        if record.status is MessageStatus.READ:
            # Nothing left to learn about a read message
            self._records.pop((record.tenant_id, record.message_id), None)

    def get_record(self, tenant_id: str, message_id: str) -> DeliveryRecord | None:
        return self._records.get((tenant_id, message_id))

    def failure_count(self, tenant_id: str, recipient_id: str) -> int:
        recipient = normalize_recipient(recipient_id, self.default_country_prefix)
        return self._failures.get((tenant_id, recipient), 0)

    def sweep(self) -> int:
        """Drop expired delivery records and enforce the record limit."""
        now = self._clock()
        removed = 0
        for key in [k for k, r in self._records.items() if now - r.sent_at > self.record_ttl]:
            del self._records[key]
            removed += 1
        while len(self._records) >= self.record_limit:
            del self._records[next(iter(self._records))]
            removed += 1
        self.ledger.sweep()
        return removed

    def discard_tenant(self, tenant_id: str) -> None:
        """Forget everything tracked for a terminated tenant."""
        for mapping in (self._records, self._early_statuses, self._failures):
            for key in [k for k in mapping if k[0] == tenant_id]:
                del mapping[key]
        self.ledger.discard_tenant(tenant_id)
