import asyncio
from datetime import datetime
from typing import List
from pharmalink import config
from pharmalink.db import get_db
from pharmalink.services.broadcast import broadcast_engine
from pharmalink.services.request_store import RequestStore
from pharmalink.utils.logger import log_event, EventTypes
import logging

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodically flips overdue active requests to ``expired``.

    The write path checks ``expiresAt`` itself, so a missed sweep only delays
    the status change and the closing notices; it never lets a late response in.
    """

    def __init__(self, interval_seconds: float = None):
        self.interval_seconds = interval_seconds if interval_seconds is not None else config.EXPIRY_SWEEP_INTERVAL_SECONDS
        self.is_running = False
        self.task = None

    async def start(self):
        """Start the expiry sweep background task"""
        if self.is_running:
            return

        self.is_running = True
        self.task = asyncio.create_task(self._sweep_loop())
        logger.info("Expiry sweeper started")

    async def stop(self):
        """Stop the expiry sweep background task"""
        if not self.is_running:
            return

        self.is_running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        logger.info("Expiry sweeper stopped")

    async def sweep_once(self, now: datetime = None) -> List[str]:
        expired = await RequestStore(get_db()).expire_overdue(now)
        if expired:
            await broadcast_engine.refresh()
        return expired

    async def _sweep_loop(self):
        """Main sweep loop"""
        while self.is_running:
            try:
                expired = await self.sweep_once()
                await log_event(EventTypes.EXPIRY_SWEEP_COMPLETED, {
                    "expired": len(expired),
                    "timestamp": datetime.utcnow().isoformat()
                })
            except Exception as e:
                logger.error(f"Error during expiry sweep: {e}")
                await log_event(EventTypes.EXPIRY_SWEEP_ERROR, {
                    "error": str(e),
                    "timestamp": datetime.utcnow().isoformat()
                })

            await asyncio.sleep(self.interval_seconds)


# Global instance
expiry_sweeper = ExpirySweeper()


async def start_expiry_sweeper():
    """Start the expiry sweeper"""
    await expiry_sweeper.start()


async def stop_expiry_sweeper():
    """Stop the expiry sweeper"""
    await expiry_sweeper.stop()
