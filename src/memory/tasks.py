from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskFailure:
    name: str
    error: BaseException
    failed_at: datetime


class BackgroundTaskQueue:
    """Runs detached units of work whose outcome never reaches the submitter.

    Failures are logged and kept in a bounded ``failures`` channel instead of
    surfacing as unobserved-exception warnings.
    """

    def __init__(self, max_failures: int = 100) -> None:
        self._pending: set[asyncio.Task] = set()
        self.failures: deque[TaskFailure] = deque(maxlen=max_failures)
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, name: str) -> bool:
        return any(task.get_name() == name for task in self._pending)

    def submit(self, name: str, work: Callable[[], Awaitable[object]]) -> Optional[asyncio.Task]:
        if self._closed:
            logger.warning("Task queue closed; dropping background task %s", name)
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; dropping background task %s", name)
            return None
        task = loop.create_task(work(), name=name)
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task %s failed: %s", task.get_name(), error, exc_info=error)
            self.failures.append(
                TaskFailure(name=task.get_name(), error=error, failed_at=datetime.now(timezone.utc))
            )

    async def drain(self) -> None:
        """Wait until every submitted task has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self, timeout: float = 5.0) -> None:
        self._closed = True
        if not self._pending:
            return
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Cancelling %s background tasks still running at shutdown", len(self._pending))
            for task in list(self._pending):
                task.cancel()
            await asyncio.gather(*list(self._pending), return_exceptions=True)
