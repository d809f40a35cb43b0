"""
Timer capability: wake one enrollment at a future instant.

Timers are an optimisation on top of the tick. Every suspension is persisted
with its `due_at`, so a lost timer only delays the wake-up to the next tick.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from app.core.clock import Clock

logger = logging.getLogger(__name__)


class Timer(ABC):

    @abstractmethod
    def schedule(self, enrollment_id: str, at: datetime) -> None:
        ...

    def cancel(self, enrollment_id: str) -> None:
        """Best effort; a timer that cannot withdraw a wake-up leaves it to fire harmlessly."""


class NullTimer(Timer):
    """Rely on tick polling alone."""

    def schedule(self, enrollment_id: str, at: datetime) -> None:
        logger.debug(f"[TIMER] {enrollment_id} due at {at.isoformat()} (picked up by tick)")


class AsyncioTimer(Timer):
    """In-process timer on the running event loop. A newer schedule replaces an older one."""

    def __init__(self, callback: Callable[[str], Awaitable[object]], clock: Optional[Clock] = None):
        self.callback = callback
        self.clock = clock or Clock()
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def schedule(self, enrollment_id: str, at: datetime) -> None:
        loop = asyncio.get_running_loop()
        self.cancel(enrollment_id)
        delay = max((at - self.clock.now()).total_seconds(), 0.0)
        self._handles[enrollment_id] = loop.call_later(delay, self._fire, enrollment_id)
        logger.debug(f"[TIMER] {enrollment_id} scheduled in {delay:.1f}s")

    def _fire(self, enrollment_id: str) -> None:
        self._handles.pop(enrollment_id, None)
        asyncio.ensure_future(self._run(enrollment_id))

    async def _run(self, enrollment_id: str) -> None:
        try:
            await self.callback(enrollment_id)
        except Exception as e:
            logger.error(f"[TIMER] Wake-up of {enrollment_id} failed: {e}", exc_info=True)

    def cancel(self, enrollment_id: str) -> None:
        handle = self._handles.pop(enrollment_id, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def __len__(self) -> int:
        return len(self._handles)


class CeleryTimer(Timer):
    """Enqueue an `advance_enrollment_task` with an ETA."""

    def schedule(self, enrollment_id: str, at: datetime) -> None:
        from app.tasks import advance_enrollment_task

        advance_enrollment_task.apply_async(args=[enrollment_id], eta=at)
        logger.info(f"[TIMER] Queued advance of {enrollment_id} for {at.isoformat()}")
