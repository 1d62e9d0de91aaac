"""Background scheduler for periodic sync"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from taskbridge.config import settings
from taskbridge.models.base import SessionLocal
from taskbridge.services.sync_service import SyncService

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "sync_cycle"


class SyncScheduler:
    """Scheduler for the periodic sync cycle"""

    def __init__(self, interval_minutes: int = None):
        self.scheduler = BackgroundScheduler()
        self.interval_minutes = interval_minutes or settings.polling_interval_minutes

    def start(self):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("Sync scheduler started")
        self.schedule_sync()

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")

    def schedule_sync(self, interval_minutes: int = None):
        """(Re)schedule the sync job"""
        if interval_minutes is not None:
            self.interval_minutes = interval_minutes

        existing = self.scheduler.get_job(SYNC_JOB_ID)
        if existing is not None:
            self.scheduler.remove_job(SYNC_JOB_ID)

        # A slow cycle must not overlap the next tick; missed ticks collapse into one run
        self.scheduler.add_job(
            func=self._sync_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled sync every {self.interval_minutes} minutes")

    def _sync_job(self):
        """Job function running one sync cycle"""
        db = SessionLocal()
        try:
            logger.info("Running scheduled sync")
            result = SyncService(db).run_cycle()
            logger.info(f"Scheduled sync finished: {result.to_dict()}")
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}")
        finally:
            db.close()


# Global scheduler instance
scheduler = SyncScheduler()
