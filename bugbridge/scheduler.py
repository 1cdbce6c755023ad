"""Background scheduler for periodic bridge passes"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from bugbridge.config import settings
from bugbridge.models.base import SessionLocal
from bugbridge.services.bridge_service import BridgeService
from bugbridge.services.errors import PassInProgressError

logger = logging.getLogger(__name__)

JOB_ID = "bridge_sync"


class BridgeScheduler:
    """Runs import then export every ``sync_interval_minutes``"""

    def __init__(self, settings=settings, session_factory=SessionLocal):
        self.settings = settings
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler()

    def start(self):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("Bridge scheduler started")
        self.schedule(self.settings.sync_interval_minutes)

    def stop(self):
        """Stop the scheduler"""
        self.scheduler.shutdown()
        logger.info("Bridge scheduler stopped")

    def schedule(self, interval_minutes: int):
        # A single scheduled instance at a time; BridgeService guards the
        # store against API-triggered passes.
        self.scheduler.add_job(
            func=self._sync_job,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(f"Scheduled bridge sync every {interval_minutes} minutes")

    def _sync_job(self):
        """Job function running one sync"""
        db = self.session_factory()
        try:
            logger.info("Running scheduled bridge sync")
            result = BridgeService(db, self.settings).sync()
            logger.info(f"Scheduled sync completed: {result}")
        except PassInProgressError as e:
            logger.info(f"Scheduled sync skipped: {e}")
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}")
        finally:
            db.close()


# Global scheduler instance
scheduler = BridgeScheduler()
