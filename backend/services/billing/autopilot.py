"""
InvoLex Billing Engine - Auto-Pilot Scheduler

Owns the background task that scans the inbox on a fixed interval while
auto-pilot is on. The task scans immediately, then once per interval; a failed
tick is logged and the loop keeps going. stop() cancels and awaits the task, so
no scan fires after it returns.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from services.billing.config import AUTOPILOT_INTERVAL_SECONDS

logger = logging.getLogger(__name__)


class AutopilotScheduler:
    def __init__(
        self,
        scan: Callable[[], Awaitable[Any]],
        interval_seconds: float = AUTOPILOT_INTERVAL_SECONDS,
    ):
        self._scan = scan
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.run_count = 0
        self.last_run_at: Optional[str] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Auto-pilot worker stopped")

    async def _run(self):
        logger.info("Auto-pilot worker started (interval: %.0f seconds)", self.interval_seconds)
        while True:
            try:
                await self._scan()
                self.last_error = None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.last_error = str(e)
                logger.error("Auto-pilot scan error: %s", str(e))
            self.run_count += 1
            self.last_run_at = datetime.now(timezone.utc).isoformat()

            await asyncio.sleep(self.interval_seconds)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "run_count": self.run_count,
            "last_run_at": self.last_run_at,
            "last_error": self.last_error,
        }
