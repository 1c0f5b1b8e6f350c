"""Background task bookkeeping for the sync server."""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskRegistry:
    """Holds strong references to fire-and-forget tasks.

    The event loop keeps only weak references, so refresh runs and client
    sends are registered here until they finish. Failures are logged when the
    task ends; `shutdown` cancels whatever is still running.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[object]] = set()

    def spawn(self, coro: Coroutine[object, object, T], name: Optional[str] = None) -> asyncio.Task[T]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)  # type: ignore[arg-type]
        task.add_done_callback(self._finished)  # type: ignore[arg-type]
        return task

    def _finished(self, task: asyncio.Task[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Task %s failed: %s", task.get_name(), exc, exc_info=exc)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel running tasks and wait at most `timeout` seconds for them."""
        running = [task for task in self._tasks if not task.done()]
        if not running:
            return
        for task in running:
            task.cancel()
        _, stuck = await asyncio.wait(running, timeout=timeout)
        for task in stuck:
            logger.warning("Task %s still running %.1fs after cancel", task.get_name(), timeout)

    def task_count(self) -> int:
        return len(self._tasks)
