"""
AvatarChat — Callback dispatch

Observers may be plain functions or coroutine functions. Plain ones run
inline; coroutines are scheduled on the running loop. Either way an
observer that raises is logged and never takes the caller down.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Set

logger = logging.getLogger("avatarchat.callbacks")

# Strong refs so fire-and-forget observer tasks are not collected mid-flight
_pending: Set["asyncio.Task[Any]"] = set()


def invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
    except Exception as e:
        logger.error(f"Observer {getattr(callback, '__name__', callback)!r} failed: {e}", exc_info=True)
        return

    if asyncio.iscoroutine(result):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            result.close()
            logger.warning("Coroutine observer called without a running loop — skipped")
            return
        task = loop.create_task(result)
        _pending.add(task)
        task.add_done_callback(_finished)


def _finished(task: "asyncio.Task[Any]") -> None:
    _pending.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"Async observer failed: {task.exception()}")
