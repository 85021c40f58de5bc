"""
Background work

Long-running work (export requests, download and ingestion) runs as
asyncio tasks so webhook acknowledgment never waits on it.
"""

from typing import Any, Coroutine
import asyncio

import structlog

logger = structlog.get_logger(__name__)


class BackgroundRunner:
    """
    Tracks fire-and-forget tasks.

    Failures are logged and counted; ``drain`` waits for everything
    outstanding (used on shutdown and in tests).
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self._submitted = 0
        self._failed = 0

    def submit(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._submitted += 1
        return task

    async def _run(self, coro: Coroutine[Any, Any, Any], name: str) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            logger.info("Background task cancelled", task=name)
            raise
        except Exception:
            self._failed += 1
            logger.exception("Background task failed", task=name)
            return None

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until no tasks are outstanding, including ones submitted meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def stats(self) -> dict:
        return {
            "pending": len(self._tasks),
            "submitted": self._submitted,
            "failed": self._failed,
        }
