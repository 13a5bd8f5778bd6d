"""
Generation-scoped timers

Named, cancellable asyncio timers bound to a session generation. A timer whose
generation was superseded by a teardown does nothing when it fires.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class SessionTimers:
    """
    Timers for one tenant session.

    Scheduling a name that is already pending replaces the pending timer.
    """

    def __init__(self, tenant_id: str, current_generation: Callable[[], int]):
        self.tenant_id = tenant_id
        self._current_generation = current_generation
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def schedule(
        self,
        name: str,
        delay: float,
        callback: Callable[[], Awaitable[None]],
        generation: int | None = None,
    ) -> asyncio.Task[None]:
        """
        Run ``callback`` after ``delay`` seconds unless cancelled or stale.

        Args:
            name: Timer name, unique per session
            delay: Seconds to wait
            callback: Coroutine function to run on expiry
            generation: Generation the timer belongs to (defaults to current)
        """
        self.cancel(name)
        if generation is None:
            generation = self._current_generation()

        task = asyncio.create_task(
            self._run(name, delay, callback, generation),
            name=f"timer-{name}-{self.tenant_id}",
        )
        self._tasks[name] = task
        task.add_done_callback(lambda t, n=name: self._forget(n, t))
        return task

    async def _run(
        self,
        name: str,
        delay: float,
        callback: Callable[[], Awaitable[None]],
        generation: int,
    ) -> None:
        await asyncio.sleep(delay)

        current = self._current_generation()
        if current != generation:
            logger.debug(
                f"Stale timer '{name}' ignored",
                extra={"tenant_id": self.tenant_id, "generation": generation, "current": current},
            )
            return

        # Detach before running so the callback may reschedule or cancel_all freely
        self._tasks.pop(name, None)
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Timer '{name}' callback failed", extra={"tenant_id": self.tenant_id})

    def _forget(self, name: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]

    def is_pending(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def pending(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    def cancel(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for name in list(self._tasks):
            self.cancel(name)
