"""Repeating timer that triggers reconciliation passes."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class AutoSyncScheduler:
    """Run a sync callable every ``interval_minutes``.

    Each pass is spawned as its own task, so stopping the timer never
    interrupts a pass that already started.
    """

    def __init__(self, sync: Callable[[], Awaitable[Any]]):
        """Initialize scheduler.

        Args:
            sync: Coroutine function running one pass
        """
        self.sync = sync
        self.interval_minutes: Optional[float] = None
        self.logger = logger.getChild('scheduler')
        self._timer: Optional[asyncio.Task] = None
        self._passes: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self, interval_minutes: float) -> None:
        """Start the timer, replacing any running one.

        Must be called from inside a running event loop.
        """
        if interval_minutes <= 0:
            raise ValueError("Sync interval must be positive")

        self.stop()
        self.interval_minutes = interval_minutes
        self._timer = asyncio.ensure_future(self._tick(interval_minutes * 60))
        self.logger.info(f"Auto-sync started with {interval_minutes} minute interval")

    def stop(self) -> None:
        """Cancel the timer; in-flight passes run to completion."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self.logger.info("Auto-sync stopped")

    async def _tick(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            task = asyncio.ensure_future(self._run_pass())
            self._passes.add(task)
            task.add_done_callback(self._passes.discard)

    async def _run_pass(self) -> None:
        try:
            await self.sync()
        except Exception:
            self.logger.exception("Scheduled sync failed")

    async def wait_idle(self) -> None:
        """Wait for passes already spawned by the timer."""
        while self._passes:
            await asyncio.gather(*list(self._passes))
