"""Background scheduler for periodic incremental sync"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from adosync.config import settings
from adosync.models import AdoConnection, JobType
from adosync.models.base import SessionLocal
from adosync.services.sync_service import SyncService

logger = logging.getLogger(__name__)

JOB_ID = "sync_all_connections"


class SyncScheduler:
    """Runs an incremental sync of every connection on a fixed interval"""

    def __init__(self, session_factory=SessionLocal):
        self.scheduler = AsyncIOScheduler()
        self._session_factory = session_factory
        self._sync_service: Optional[SyncService] = None

    def start(self, sync_service: SyncService, interval_minutes: Optional[int] = None):
        """Start the scheduler (no-op when the interval is 0)"""
        interval = settings.sync_interval_minutes if interval_minutes is None else interval_minutes
        if interval <= 0:
            logger.info("Scheduled sync disabled (SYNC_INTERVAL_MINUTES=0)")
            return

        self._sync_service = sync_service
        self.scheduler.add_job(
            func=self._sync_all_job,
            trigger=IntervalTrigger(minutes=interval),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"Sync scheduler started; syncing all connections every {interval} minutes")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Sync scheduler stopped")

    async def _connection_ids(self):
        async with self._session_factory() as db:
            result = await db.execute(select(AdoConnection.id).order_by(AdoConnection.id))
            return list(result.scalars().all())

    async def _sync_all_job(self):
        """Job function: incremental sync of each connection, one at a time"""
        for connection_id in await self._connection_ids():
            try:
                logger.info(f"Running scheduled sync for connection {connection_id}")
                result = await self._sync_service.sync_connection(
                    connection_id, JobType.INCREMENTAL_SYNC, actor_id="scheduler"
                )
                logger.info(
                    f"Scheduled sync completed for connection {connection_id}: "
                    f"{result.items_synced} items, {len(result.errors)} errors"
                )
            except Exception as e:
                logger.error(f"Scheduled sync failed for connection {connection_id}: {e}")


# Global scheduler instance
scheduler = SyncScheduler()
