import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import settings
from ingestion.store import JobStore

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Periodic housekeeping: deletes extracted batches past their expiry."""

    def __init__(self, job_store: JobStore,
                 interval_minutes: int = settings.RETENTION_SWEEP_INTERVAL_MINUTES):
        self.scheduler = AsyncIOScheduler()
        self.job_store = job_store
        self.interval_minutes = interval_minutes

    async def purge_expired_batches(self) -> int:
        """Job to enforce the data retention window"""
        logger.info("Scheduler: Starting retention sweep")
        try:
            purged = await self.job_store.purge_expired_batches()
        except Exception as e:
            logger.error(f"Scheduler: Retention sweep failed - {e}")
            return 0
        if purged:
            logger.info(f"Scheduler: Purged {purged} expired batches")
        return purged

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.purge_expired_batches,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="retention_sweep",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Maintenance scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Maintenance scheduler stopped")
