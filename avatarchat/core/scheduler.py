"""
AvatarChat — Scheduler

Delayed work (reconnect timers) goes through a Scheduler so tests can
drive time by hand instead of sleeping.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

logger = logging.getLogger("avatarchat.scheduler")

Job = Callable[[], Awaitable[Any]]


class TimerHandle(Protocol):

    def cancel(self) -> None:
        ...

    def cancelled(self) -> bool:
        ...


class Scheduler(Protocol):

    def call_later(self, delay: float, job: Job, name: str = "") -> TimerHandle:
        """Run `await job()` after `delay` seconds."""
        ...


class _TaskTimer:
    """TimerHandle backed by an asyncio task that sleeps then runs the job."""

    def __init__(self, task: "asyncio.Task[None]") -> None:
        self._task = task

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    def cancelled(self) -> bool:
        return self._task.cancelled()


class AsyncioScheduler:
    """Default scheduler: one task per timer on the running loop."""

    def call_later(self, delay: float, job: Job, name: str = "") -> TimerHandle:
        async def _run() -> None:
            await asyncio.sleep(delay)
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduled job {name or job!r} failed: {e}", exc_info=True)

        task = asyncio.get_running_loop().create_task(_run(), name=name or None)
        return _TaskTimer(task)
