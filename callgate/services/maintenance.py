"""
Periodic cache maintenance.
Uses APScheduler to purge expired entries from both cache tiers.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from callgate.services.cache import CacheStore
from callgate.utils import log_call


class CacheMaintenance:
    """Interval job that runs CacheStore.cleanup_expired()."""

    JOB_ID = "cache_cleanup_job"

    def __init__(self, cache: CacheStore, interval_minutes: int = 30):
        self.cache = cache
        self.interval_minutes = interval_minutes
        self.scheduler = AsyncIOScheduler()
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    @log_call
    async def cleanup_job(self) -> int:
        """Purge expired cache entries."""
        removed = await self.cache.cleanup_expired()
        logger.info(f"Cache cleanup completed: {removed} expired entries removed")
        return removed

    def start(self) -> None:
        """Start the scheduler. Requires a running event loop."""
        if self._is_running:
            logger.warning("Cache maintenance is already running")
            return

        self.scheduler.add_job(
            self.cleanup_job,
            trigger="interval",
            minutes=self.interval_minutes,
            id=self.JOB_ID,
            name="Cache Cleanup",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(
            f"Cache maintenance started (every {self.interval_minutes} minutes)"
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self._is_running:
            return
        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("Cache maintenance stopped")

    async def run_now(self) -> int:
        """Run a cleanup immediately, outside the schedule."""
        return await self.cleanup_job()
