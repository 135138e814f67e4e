from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """Tracks the controller's background coroutines so stop can cancel them.

    Tasks remove themselves when done; a task that ends with an exception
    other than cancellation is logged instead of being silently dropped.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def create_task(
        self, coro: Coroutine[Any, Any, Any], *, name: str | None = None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=exc,
            )

    def cancel_all(self) -> int:
        """Request cancellation of every live task; returns how many."""
        cancelled = 0
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
                cancelled += 1
        return cancelled

    async def wait_all_cancelled(self, timeout: float = 5.0) -> bool:
        """Wait for tracked tasks to finish. Returns False on timeout."""
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning(
                "%d background task(s) still running after %.1fs",
                len(still_pending),
                timeout,
            )
            return False
        return True

    @property
    def tasks(self) -> set[asyncio.Task[Any]]:
        return set(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)
