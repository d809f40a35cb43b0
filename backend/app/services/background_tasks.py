import asyncio
import logging
from typing import Optional

from app.services.engine import CampaignEngine

logger = logging.getLogger(__name__)


class BackgroundTaskManager:
    """
    In-process scheduler: runs the engine tick on a fixed interval inside the
    API's event loop. Used when SCHEDULER_MODE is "inprocess" instead of
    Celery beat.
    """

    def __init__(self, engine: CampaignEngine, interval_seconds: float = 5.0, error_backoff_seconds: Optional[float] = None):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.error_backoff_seconds = error_backoff_seconds if error_backoff_seconds is not None else interval_seconds * 2
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self.iterations = 0

    async def start(self):
        """Start the background tick loop"""
        if self.running:
            logger.warning("Background task manager is already running")
            return
        self.running = True
        self.task = asyncio.create_task(self._run_background_tasks())
        logger.info(f"=== BACKGROUND TASK MANAGER STARTED (every {self.interval_seconds}s) ===")

    async def stop(self):
        """Stop the background tick loop"""
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        timer = self.engine.executor.timer
        if hasattr(timer, "cancel_all"):
            timer.cancel_all()
        logger.info("=== BACKGROUND TASK MANAGER STOPPED ===")

    async def _run_background_tasks(self):
        """Main background task loop"""
        while self.running:
            self.iterations += 1
            try:
                await self.engine.tick()
            except Exception as e:
                logger.error(f"Error in background tick {self.iterations}: {e}", exc_info=True)
                await asyncio.sleep(self.error_backoff_seconds)
                continue
            await asyncio.sleep(self.interval_seconds)
