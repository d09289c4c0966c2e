"""Runner for detached background work (review triggers and review runs)."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """Runs coroutines detached from the caller.

    Submitting returns immediately. Tasks are held until they finish (so they
    are not garbage collected mid-flight), at most max_concurrency of them
    do work at the same time, and an exception escaping a task is logged
    instead of disappearing. Each task is still expected to handle its own
    errors; the logging here is the last line.
    """

    def __init__(self, max_concurrency: int = 4):
        self.max_concurrency = max_concurrency
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def submit(
        self,
        factory: Callable[[], Awaitable[Any]],
        name: str,
        on_cancel: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> asyncio.Task:
        """
        Schedule work on the running event loop.

        Args:
            factory: Zero-argument callable returning the coroutine to run.
            name: Task name used in logs.
            on_cancel: Awaited if the task is cancelled while still waiting
                for a slot, i.e. before factory() was ever called.

        Returns:
            The created task.
        """
        if self._closed:
            raise RuntimeError("BackgroundTaskRunner is closed")
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)

        task = asyncio.create_task(self._run(factory, name, on_cancel), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("Submitted background task %s (%d active)", name, len(self._tasks))
        return task

    async def _run(
        self,
        factory: Callable[[], Awaitable[Any]],
        name: str,
        on_cancel: Optional[Callable[[], Awaitable[Any]]],
    ) -> Any:
        try:
            await self._semaphore.acquire()
        except asyncio.CancelledError:
            logger.debug("Background task %s cancelled before it started", name)
            if on_cancel is not None:
                try:
                    await on_cancel()
                except Exception as e:
                    logger.error("Cancel handler of %s failed: %s", name, e, exc_info=True)
            raise
        try:
            return await factory()
        finally:
            self._semaphore.release()

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug("Background task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every submitted task, including ones they submit, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self, timeout: Optional[float] = 10.0) -> None:
        """Stop accepting work, give running tasks up to timeout seconds, then cancel them."""
        self._closed = True
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d unfinished background task(s) on shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
