"""Fire-and-forget dispatch for best-effort triggers.

Submitted work runs at most once with no delivery guarantee: nothing is
persisted, and tasks still pending at shutdown are cancelled after
:meth:`BackgroundDispatcher.drain` times out.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any

import structlog

logger = structlog.get_logger()


class BackgroundDispatcher:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, work: Awaitable[Any], *, name: str = "background_dispatch") -> asyncio.Task[Any]:
        """Schedule ``work`` without awaiting it. The task is referenced until it finishes."""
        task = asyncio.ensure_future(work)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_task_failed", task=task.get_name(), error=str(exc), exc_info=exc)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight tasks, cancelling whatever is left after ``timeout``."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, still_pending = await asyncio.wait(tasks, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            logger.warning("background_tasks_cancelled", count=len(still_pending))
