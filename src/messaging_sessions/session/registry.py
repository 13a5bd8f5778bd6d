"""
Tenant Session Registry

The one piece of shared mutable state: tenant id -> live connection.
Owned by the SessionManager, never a module-level global.
"""

import asyncio
import logging
import re
from enum import Enum
from typing import TYPE_CHECKING, Iterator

from messaging_sessions.errors import InvalidTenantId

if TYPE_CHECKING:
    from messaging_sessions.service.connection import TenantConnection

logger = logging.getLogger(__name__)

_TENANT_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$")


class SessionState(str, Enum):
    """Lifecycle of a tenant session."""

    ABSENT = "absent"
    INITIALIZING = "initializing"
    AWAITING_SCAN = "awaiting_scan"
    AUTHENTICATED = "authenticated"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECT_PENDING = "reconnect_pending"
    TERMINATED = "terminated"

    def __str__(self) -> str:
        return self.value


def validate_tenant_id(tenant_id: str) -> str:
    """
    Tenant ids double as directory names for credentials.

    Raises:
        InvalidTenantId: if the id is empty or could escape the sessions dir
    """
    if not isinstance(tenant_id, str) or not _TENANT_ID.match(tenant_id) or ".." in tenant_id:
        raise InvalidTenantId(f"Invalid tenant id: {tenant_id!r}", tenant_id=str(tenant_id))
    return tenant_id


class SessionRegistry:
    """
    Process-wide mapping from tenant id to its connection.

    Also hands out per-tenant generation numbers (monotonic for the life of
    the registry, surviving deregistration) and per-tenant locks that
    serialise start/disconnect requests for the same tenant.
    """

    def __init__(self) -> None:
        self._connections: dict[str, "TenantConnection"] = {}
        self._generations: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._connections

    def __iter__(self) -> Iterator["TenantConnection"]:
        return iter(list(self._connections.values()))

    def get(self, tenant_id: str) -> "TenantConnection | None":
        return self._connections.get(tenant_id)

    def register(self, connection: "TenantConnection") -> None:
        existing = self._connections.get(connection.tenant_id)
        if existing is not None and existing is not connection:
            raise RuntimeError(f"Tenant {connection.tenant_id} already has a registered session")
        self._connections[connection.tenant_id] = connection
        logger.debug(f"Registered session", extra={"tenant_id": connection.tenant_id})

    def remove(self, tenant_id: str, connection: "TenantConnection | None" = None) -> bool:
        """
        Deregister a tenant.

        When ``connection`` is given, only removes the entry if it is still
        that connection, so a superseded session cannot evict its successor.
        """
        current = self._connections.get(tenant_id)
        if current is None or (connection is not None and current is not connection):
            return False
        del self._connections[tenant_id]
        logger.debug(f"Deregistered session", extra={"tenant_id": tenant_id})
        return True

    def next_generation(self, tenant_id: str) -> int:
        generation = self._generations.get(tenant_id, 0) + 1
        self._generations[tenant_id] = generation
        return generation

    def generation(self, tenant_id: str) -> int:
        return self._generations.get(tenant_id, 0)

    def lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    def count_by_state(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for connection in self._connections.values():
            counts[connection.state.value] = counts.get(connection.state.value, 0) + 1
        return counts
