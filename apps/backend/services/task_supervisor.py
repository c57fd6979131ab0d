"""
Supervised background tasks.

Lifecycle notices (spare filled, spare cancelled) go out after the request
handler has returned. Every task is tracked until it finishes and any
exception it raises is logged, so nothing fails unobserved.
"""

import asyncio
import logging
from typing import Awaitable, Optional, Set

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """Tracks fire-and-forget coroutines and logs their failures."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        """Schedule coro on the running loop and track it until done."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info(f"Background task {task.get_name()} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Background task {task.get_name()} failed: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for all currently tracked tasks to finish."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Give tasks a grace period, then cancel whatever is left."""
        await self.wait_idle(timeout=timeout)
        remaining = set(self._tasks)
        for task in remaining:
            task.cancel()
        if remaining:
            logger.warning(f"Cancelled {len(remaining)} background task(s) on shutdown")
            await asyncio.gather(*remaining, return_exceptions=True)


# Global singleton
_supervisor = TaskSupervisor()


def get_task_supervisor() -> TaskSupervisor:
    """Get the global task supervisor instance."""
    return _supervisor
