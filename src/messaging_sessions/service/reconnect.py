"""
Reconnection Supervisor

Decides whether a closed session comes back and when. Logged-out sessions
never do; everything else is retried with exponential backoff until the
attempts run out.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from messaging_sessions.providers.base import DisconnectReason
from messaging_sessions.settings import Settings

if TYPE_CHECKING:
    from messaging_sessions.service.connection import TenantConnection

logger = logging.getLogger(__name__)

RECONNECT_TIMER = "reconnect"


@dataclass
class ReconnectPolicy:
    """
    Backoff parameters.

    Attributes:
        drop_delay: First delay after an ordinary connection drop
        delay: First delay after any other recoverable close
        backoff: Multiplier applied per consecutive attempt
        max_delay: Upper bound for a single delay
        max_attempts: Consecutive attempts before giving up (None = forever)
    """

    drop_delay: float = 1.0
    delay: float = 3.0
    backoff: float = 2.0
    max_delay: float = 60.0
    max_attempts: int | None = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconnectPolicy":
        return cls(
            drop_delay=settings.RECONNECT_DROP_DELAY,
            delay=settings.RECONNECT_DELAY,
            backoff=settings.RECONNECT_BACKOFF,
            max_delay=settings.RECONNECT_MAX_DELAY,
            max_attempts=settings.RECONNECT_MAX_ATTEMPTS or None,
        )

    def delay_for(self, reason: DisconnectReason, attempt: int) -> float:
        """Delay before ``attempt`` (1-based)."""
        base = self.drop_delay if reason.is_connection_drop else self.delay
        return min(base * self.backoff ** (attempt - 1), max(self.max_delay, base))


class ReconnectionSupervisor:
    """Counts consecutive reconnect attempts per tenant and arms the reconnect timer."""

    def __init__(self, policy: ReconnectPolicy | None = None):
        self.policy = policy or ReconnectPolicy()
        self._attempts: dict[str, int] = {}

    def should_reconnect(self, reason: DisconnectReason) -> bool:
        return reason.is_recoverable

    def attempts(self, tenant_id: str) -> int:
        return self._attempts.get(tenant_id, 0)

    def schedule(
        self,
        connection: "TenantConnection",
        reason: DisconnectReason,
        wipe_credentials: bool = False,
    ) -> float | None:
        """
        Arm exactly one reconnect for the connection's current generation.

        Args:
            connection: Session in reconnect_pending
            reason: Why it closed
            wipe_credentials: Re-pair from scratch instead of resuming

        Returns:
            The delay used, or None if the session must not come back
        """
        tenant_id = connection.tenant_id
        if not self.should_reconnect(reason):
            return None

        attempt = self.attempts(tenant_id) + 1
        max_attempts = self.policy.max_attempts
        if max_attempts is not None and attempt > max_attempts:
            logger.error(
                f"Giving up after {max_attempts} reconnect attempts",
                extra={"tenant_id": tenant_id, "reason": reason.value},
            )
            return None

        self._attempts[tenant_id] = attempt
        delay = self.policy.delay_for(reason, attempt)

        async def reconnect() -> None:
            await connection.reconnect(wipe_credentials=wipe_credentials)

        connection.timers.schedule(RECONNECT_TIMER, delay, reconnect)
        logger.info(
            f"Reconnecting in {delay:.1f}s (attempt {attempt})",
            extra={"tenant_id": tenant_id, "reason": reason.value, "generation": connection.generation},
        )
        return delay

    def reset(self, tenant_id: str) -> None:
        self._attempts.pop(tenant_id, None)
