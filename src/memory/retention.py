"""Periodic retention cleanup for conversation memory.

Each tick purges recent messages, thread items and runs older than their
TTLs. Threads and their rolling summaries are never purged, so continuity
survives item expiry.

Assumption: items are only folded into the summary once a thread holds more
than ``min_items_for_summary`` items. A thread that receives fewer items than
that within ``item_ttl_hours`` has its oldest items purged without ever being
summarized. Raising the item TTL or lowering the summarization threshold
narrows that gap.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from src.config.memory import MemorySettings

from .store import SQLiteThreadStore

logger = logging.getLogger(__name__)


class RetentionScheduler:
    def __init__(self, store: Optional[SQLiteThreadStore], settings: MemorySettings) -> None:
        self._store = store
        self._settings = settings
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            logger.info("Retention job already running")
            return
        if self._store is None:
            logger.warning("Storage not configured; retention job not started")
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="memory-retention")
        logger.info(
            "Scheduled retention cleanup every %ss (items TTL %sh, runs TTL %sh)",
            self._settings.cleanup_interval_seconds,
            self._settings.item_ttl_hours,
            self._settings.run_ttl_hours,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Retention job stopped")

    async def _loop(self) -> None:
        await asyncio.sleep(self._settings.cleanup_initial_delay_seconds)
        while True:
            await self.run_cleanup()
            await asyncio.sleep(self._settings.cleanup_interval_seconds)

    async def run_cleanup(self) -> dict[str, int]:
        """Run every purge once; a failing purge does not stop the others."""
        if self._store is None:
            return {"messages": 0, "items": 0, "runs": 0}

        logger.info("Starting retention cleanup")
        started = time.monotonic()
        counts = {
            "messages": await self._purge("messages", self._store.purge_old_messages, self._settings.message_ttl_hours),
            "items": await self._purge("items", self._store.purge_old_items, self._settings.item_ttl_hours),
            "runs": await self._purge("runs", self._store.purge_old_runs, self._settings.run_ttl_hours),
        }
        logger.info(
            "Retention cleanup complete in %.0fms: %s messages, %s thread items, %s runs",
            (time.monotonic() - started) * 1000,
            counts["messages"],
            counts["items"],
            counts["runs"],
        )
        return counts

    async def run_cleanup_now(self) -> int:
        """Manual trigger; returns the total number of purged rows."""
        logger.info("Manual retention cleanup triggered")
        counts = await self.run_cleanup()
        return sum(counts.values())

    @staticmethod
    async def _purge(name: str, purge: Callable[[float], Awaitable[int]], ttl_hours: float) -> int:
        try:
            return await purge(ttl_hours)
        except Exception:  # noqa: BLE001 - next tick retries
            logger.exception("Failed to purge %s older than %sh", name, ttl_hours)
            return 0
