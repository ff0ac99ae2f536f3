"""Periodic monitoring loop driving PositionManager.monitor_all_positions()."""
import asyncio
from typing import Optional, Set

from .logging_setup import logger


class MonitoringLoop:
    """Runs a monitoring tick every ``interval_seconds`` until stopped.

    Ticks never overlap: a tick that starts while the previous one is still
    running is skipped with a warning. An error inside a tick is logged and
    that tick abandoned; the loop keeps going.
    """

    def __init__(self, manager, interval_seconds: float = 30.0):
        self.manager = manager
        self.interval = interval_seconds
        self.ticks = 0
        self.skipped_ticks = 0
        self.failed_ticks = 0
        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._running: Set[asyncio.Future] = set()

    @property
    def is_running(self) -> bool:
        return self._tick_lock.locked()

    async def tick(self) -> bool:
        """Run one monitoring pass. Returns False if skipped because one is running."""
        if self._tick_lock.locked():
            self.skipped_ticks += 1
            logger.warning(f"Previous monitoring tick still running, skipping | skipped={self.skipped_ticks}")
            return False

        async with self._tick_lock:
            self.ticks += 1
            try:
                await self.manager.monitor_all_positions()
            except Exception:
                self.failed_ticks += 1
                logger.exception(f"Monitoring tick failed | tick={self.ticks}")
        return True

    async def run(self, max_ticks: Optional[int] = None) -> None:
        """Tick every interval until stop() is called (or max_ticks were started)."""
        logger.info(f"Monitoring loop started | interval={self.interval}s")
        self._stop_event.clear()
        started = 0
        while not self._stop_event.is_set():
            task = asyncio.ensure_future(self.tick())
            self._running.add(task)
            task.add_done_callback(self._running.discard)
            started += 1
            if max_ticks is not None and started >= max_ticks:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)
        logger.info(f"Monitoring loop stopped | ticks={self.ticks} skipped={self.skipped_ticks}")

    def stop(self) -> None:
        self._stop_event.set()
