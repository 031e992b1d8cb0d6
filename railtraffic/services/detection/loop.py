"""
Periodic detection runner.
"""
import asyncio
import logging
import threading
from datetime import datetime
from typing import List, Optional

from railtraffic.services.detection.detector import ConflictDetector
from railtraffic.services.detection.models import Conflict
from railtraffic.services.optimization.models import utcnow

logger = logging.getLogger(__name__)


class DetectionLoop:
    """
    Runs a detection cycle every ``interval_seconds`` in a worker thread.

    A tick that arrives while the previous cycle is still running is skipped,
    never queued.
    """

    def __init__(self, detector: ConflictDetector, interval_seconds: float = 5.0, enabled: bool = True):
        self.detector = detector
        self.interval_seconds = interval_seconds
        self.enabled = enabled
        self.cycles = 0
        self.skipped = 0
        self.last_cycle_at: Optional[datetime] = None
        self.last_conflicts: List[Conflict] = []
        self._cycle_lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None

    def toggle(self, enabled: bool) -> bool:
        self.enabled = enabled
        logger.info(f"Conflict detection {'enabled' if enabled else 'disabled'}")
        return self.enabled

    def run_cycle(self) -> Optional[List[Conflict]]:
        """Run one cycle unless one is already running; returns None when skipped."""
        if not self._cycle_lock.acquire(blocking=False):
            self.skipped += 1
            logger.warning("Detection cycle still running, skipping this tick")
            return None
        try:
            conflicts = self.detector.detect()
            self.cycles += 1
            self.last_cycle_at = utcnow()
            self.last_conflicts = conflicts
            return conflicts
        finally:
            self._cycle_lock.release()

    async def run(self) -> None:
        logger.info(f"Detection loop started, every {self.interval_seconds}s")
        pending: Optional[asyncio.Future] = None
        while True:
            await asyncio.sleep(self.interval_seconds)
            if not self.enabled:
                continue
            if pending is not None and not pending.done():
                self.skipped += 1
                logger.warning("Detection cycle overran its period, skipping this tick")
                continue
            pending = asyncio.ensure_future(asyncio.to_thread(self.run_cycle))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Detection loop stopped")
