"""Background scheduler for periodic sync and person backfill"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from issuesync.config import settings
from issuesync.errors import IssueSyncError, SyncInProgress
from issuesync.models.base import SessionLocal
from issuesync.services.backfill import backfill_person_refs
from issuesync.services.sync_service import SyncOptions, SyncService

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "sync_issues"
BACKFILL_JOB_ID = "backfill_person_refs"


class SyncScheduler:
    """Scheduler for periodic issue synchronization"""

    def __init__(self):
        self.scheduler = BackgroundScheduler()

    def start(self):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("Sync scheduler started")
        self.schedule_jobs()

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")

    def schedule_jobs(self):
        """Schedule the sync and backfill jobs from settings"""
        if settings.github_owner and settings.github_repo:
            self.scheduler.add_job(
                func=self._sync_job,
                trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
                id=SYNC_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(
                f"Scheduled sync of {settings.target} every {settings.sync_interval_minutes} minutes"
            )
        else:
            logger.warning("GITHUB_OWNER/GITHUB_REPO not set; periodic sync disabled")

        self.scheduler.add_job(
            func=self._backfill_job,
            trigger=IntervalTrigger(minutes=settings.backfill_interval_minutes),
            id=BACKFILL_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled person backfill every {settings.backfill_interval_minutes} minutes")

    def _sync_job(self):
        """Job function to sync the configured repository"""
        db = SessionLocal()
        try:
            logger.info(f"Running scheduled sync for {settings.target}")
            options = SyncOptions(
                batch_size=settings.sync_batch_size,
                sync_limit=settings.sync_limit,
                triggered_by="scheduler",
            )
            result = SyncService(db).run_sync(options)
            logger.info(f"Scheduled sync completed for {settings.target}: {result.counters}")
        except SyncInProgress as e:
            logger.info(f"Skipping scheduled sync: {e.message}")
        except IssueSyncError as e:
            logger.error(f"Scheduled sync failed for {settings.target} ({e.kind}): {e.message}")
        except Exception as e:
            logger.error(f"Scheduled sync failed for {settings.target}: {e}")
        finally:
            db.close()

    def _backfill_job(self):
        """Job function to link issues to Person rows"""
        db = SessionLocal()
        try:
            backfill_person_refs(db)
        except Exception as e:
            logger.error(f"Scheduled person backfill failed: {e}")
        finally:
            db.close()


# Global scheduler instance
scheduler = SyncScheduler()
