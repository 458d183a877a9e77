"""Supervised registry of background tasks (tenant loops and job pollers).

Tasks are tracked by key so callers can ask whether a job still has a live
poller, await every task deterministically in tests, and cancel everything on
shutdown. Finished tasks stay visible for a short grace period, then are
discarded.
"""

import asyncio
from typing import Coroutine

import structlog

logger = structlog.get_logger(__name__)


class TaskRegistry:
    """Keyed set of asyncio tasks with crash logging and delayed discard."""

    def __init__(self, retention_seconds: float = 60.0):
        """Initialize registry.

        Args:
            retention_seconds: How long a finished task handle is kept before discard
        """
        self.retention_seconds = retention_seconds
        self._tasks: dict[str, asyncio.Task] = {}
        self._discard_handles: dict[str, asyncio.TimerHandle] = {}

    def spawn(self, key: str, coro: Coroutine) -> asyncio.Task:
        """Start a task under key, replacing any finished task with the same key.

        Raises:
            RuntimeError: If a task with the same key is still running
        """
        current = self._tasks.get(key)
        if current is not None and not current.done():
            coro.close()
            raise RuntimeError(f"Task {key} is already running")

        handle = self._discard_handles.pop(key, None)
        if handle is not None:
            handle.cancel()

        task = asyncio.create_task(coro, name=key)
        self._tasks[key] = task
        task.add_done_callback(lambda finished: self._on_done(key, finished))
        return task

    def get(self, key: str) -> asyncio.Task | None:
        return self._tasks.get(key)

    def is_active(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def active_keys(self, prefix: str = "") -> list[str]:
        return [
            key for key, task in self._tasks.items() if key.startswith(prefix) and not task.done()
        ]

    async def wait_all(self, timeout: float | None = None) -> None:
        """Wait until no tracked task is running.

        Tasks spawned while waiting (e.g. pollers started by a tenant loop) are
        awaited too.

        Raises:
            TimeoutError: If tasks are still running after timeout seconds
        """
        async with asyncio.timeout(timeout):
            while True:
                pending = [task for task in self._tasks.values() if not task.done()]
                if not pending:
                    return
                await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_all(self) -> None:
        """Cancel every running task and wait for them to finish."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for handle in self._discard_handles.values():
            handle.cancel()
        self._discard_handles.clear()
        self._tasks.clear()
        logger.info("tasks.cancelled", count=len(pending))

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.debug("task.cancelled", task=key)
        else:
            exc = task.exception()
            if exc is not None:
                logger.error(
                    "task.crashed",
                    task=key,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=exc,
                )

        if self.retention_seconds <= 0:
            self._discard(key, task)
            return
        loop = asyncio.get_running_loop()
        self._discard_handles[key] = loop.call_later(
            self.retention_seconds, self._discard, key, task
        )

    def _discard(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        self._discard_handles.pop(key, None)
