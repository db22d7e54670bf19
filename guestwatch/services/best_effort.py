"""Fire-and-forget side effects.

A best-effort task is dispatched without awaiting it; its result is only
observed for logging. Failures are caught at the dispatch site and never
reach the caller.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BestEffortDispatcher:
    """Runs coroutines in the background and logs their failures.

    Pending tasks are referenced until they finish so they are not garbage
    collected mid-flight, and can be drained on shutdown.
    """

    def __init__(self):
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Schedule ``coro`` and return immediately.

        Args:
            name: Label used in log messages
            coro: Coroutine to run

        Returns:
            The scheduled task
        """
        task = asyncio.create_task(coro, name=name)
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning(f"Best-effort task {task.get_name()} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Best-effort task {task.get_name()} failed: {exc}")
        else:
            logger.debug(f"Best-effort task {task.get_name()} completed")

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for all pending tasks to finish.

        Args:
            timeout: Seconds to wait before cancelling what is left
        """
        if not self._pending:
            return
        tasks = list(self._pending)
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            logger.warning(f"Cancelling unfinished best-effort task {task.get_name()}")
            task.cancel()
