"""
Message Cache

Bounded per-tenant store of recently seen protocol messages, used to answer
the protocol's "send me this message again" requests without stalling the
socket. Best effort: a miss lets the protocol client fall back to its own
handling.
"""

import logging
import math
import threading

from messaging_sessions.providers.base import MessageStatus, ProtocolMessage

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000
DEFAULT_EVICT_FRACTION = 0.2


class MessageCache:
    """
    Messages by id, with a secondary index by conversation.

    Insertion order is the order a message id was first stored; overwriting
    an id keeps its original position. When the size exceeds capacity the
    oldest ``evict_fraction`` of entries is dropped.
    """

    def __init__(
        self,
        tenant_id: str,
        capacity: int = DEFAULT_CAPACITY,
        evict_fraction: float = DEFAULT_EVICT_FRACTION,
    ):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        if not 0 < evict_fraction <= 1:
            raise ValueError("evict_fraction must be in (0, 1]")

        self.tenant_id = tenant_id
        self.capacity = capacity
        self.evict_fraction = evict_fraction
        self._messages: dict[str, ProtocolMessage] = {}
        self._by_conversation: dict[str, set[str]] = {}
        # Protocol clients may resolve resends from their own threads
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._messages

    def store(self, message: ProtocolMessage) -> None:
        """Insert or overwrite a message. Evicts when over capacity."""
        with self._lock:
            previous = self._messages.get(message.message_id)
            if previous is not None and previous.conversation_id != message.conversation_id:
                self._unindex(previous.conversation_id, message.message_id)

            self._messages[message.message_id] = message
            self._by_conversation.setdefault(message.conversation_id, set()).add(message.message_id)

            if len(self._messages) > self.capacity:
                self.evict()

    def lookup(self, message_id: str) -> ProtocolMessage | None:
        """Return the cached message, or None if evicted or never seen."""
        with self._lock:
            message = self._messages.get(message_id)

        if message is None:
            logger.debug(
                f"Message not in cache",
                extra={"tenant_id": self.tenant_id, "message_id": message_id},
            )
        return message

    def lookup_prefix(self, prefix: str) -> ProtocolMessage | None:
        """
        Newest message whose id starts with ``prefix``.

        Linear scan; only used as an opt-in fallback for resend requests that
        carry a truncated id.
        """
        if not prefix:
            return None
        with self._lock:
            for message_id in reversed(self._messages):
                if message_id.startswith(prefix):
                    return self._messages[message_id]
        return None

    def update_status(self, message_id: str, status: MessageStatus) -> bool:
        """Record a receipt on a cached message. Returns False on a miss."""
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return False
            message.status = status
            return True

    def message_ids_for(self, conversation_id: str) -> set[str]:
        with self._lock:
            return set(self._by_conversation.get(conversation_id, ()))

    def evict(self) -> int:
        """
        Drop the oldest ``floor(size * evict_fraction)`` entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            count = math.floor(len(self._messages) * self.evict_fraction)
            if count <= 0:
                return 0

            oldest = list(self._messages)[:count]
            for message_id in oldest:
                message = self._messages.pop(message_id)
                self._unindex(message.conversation_id, message_id)

        logger.info(
            f"Evicted {count} old messages",
            extra={"tenant_id": self.tenant_id, "remaining": len(self._messages)},
        )
        return count

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()
            self._by_conversation.clear()

    def _unindex(self, conversation_id: str, message_id: str) -> None:
        ids = self._by_conversation.get(conversation_id)
        if ids is None:
            return
        ids.discard(message_id)
        if not ids:
            del self._by_conversation[conversation_id]
