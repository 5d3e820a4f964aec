"""Background scheduler for CA sync and expiration notices."""

import asyncio
import functools
from typing import Optional, Set
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import async_sessionmaker
import structlog

from certkeeper.core.config import Settings, get_settings
from certkeeper.services.certificate_service import sync_all_cas
from certkeeper.services.notification_service import send_expiration_notifications

logger = structlog.get_logger()

SYNC_JOB = "certificate_sync"
NOTIFICATION_JOB = "expiration_notifications"


class JobScheduler:
    """
    Owns the periodic jobs: an hourly sweep syncing each CA whose sync interval
    has elapsed, and a daily notification run.

    Each job type runs at most once at a time, whether started by the scheduler
    or triggered manually.
    """

    def __init__(self, session_factory: async_sessionmaker, settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self.notification_hour = self.settings.notification_schedule_hour
        self._running: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def is_job_running(self, job_id: str) -> bool:
        return job_id in self._running

    def start(self, notification_hour: Optional[int] = None) -> None:
        """Register the cron jobs and start the scheduler on the running event loop."""
        if self.running:
            return
        if notification_hour is not None:
            self.notification_hour = notification_hour

        self._scheduler = AsyncIOScheduler(timezone=self.settings.scheduler_timezone)
        self._scheduler.add_job(
            self.run_sync_job,
            "cron",
            minute=0,
            id=SYNC_JOB,
            name="Hourly CA Certificate Sync",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.run_notification_job,
            "cron",
            hour=self.notification_hour,
            minute=0,
            id=NOTIFICATION_JOB,
            name="Daily Expiration Notifications",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Scheduler started",
            sync="hourly",
            notifications_hour=self.notification_hour,
            timezone=self.settings.scheduler_timezone,
        )

    def reschedule_notifications(self, hour: int) -> None:
        """Move the daily notification run to a new hour."""
        self.notification_hour = hour
        if self.running:
            self._scheduler.reschedule_job(NOTIFICATION_JOB, trigger="cron", hour=hour, minute=0)
        logger.info("Notification schedule changed", notifications_hour=hour)

    def stop(self) -> None:
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Scheduler stopped")

    async def wait_for_triggered(self) -> None:
        """Wait for manually triggered jobs still in flight."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _sync_once(self, due_only: bool = False) -> None:
        logger.info("Starting certificate sync", due_only=due_only)
        try:
            async with self.session_factory() as db:
                report = await sync_all_cas(db, due_only=due_only)
            logger.info(
                "Certificate sync completed",
                synced=report.synced,
                skipped=report.skipped,
                errors=len(report.errors),
                statuses_updated=report.statuses_updated,
            )
        except Exception as e:
            logger.error("Certificate sync job failed", error=str(e))

    async def _notify_once(self) -> None:
        logger.info("Starting notification check")
        try:
            async with self.session_factory() as db:
                result = await send_expiration_notifications(db)
            logger.info(
                "Notification check completed",
                success=result.success,
                sent=result.sent,
                failed=result.failed,
            )
        except Exception as e:
            logger.error("Notification job failed", error=str(e))

    async def _guarded(self, job_id: str, job) -> None:
        try:
            await job()
        finally:
            self._running.discard(job_id)

    def _claim(self, job_id: str) -> bool:
        if job_id in self._running:
            logger.info("Job already running, skipping", job=job_id)
            return False
        self._running.add(job_id)
        return True

    async def run_sync_job(self) -> None:
        """One sync sweep across the CAs whose sync interval has elapsed. Never raises."""
        if self._claim(SYNC_JOB):
            await self._guarded(SYNC_JOB, functools.partial(self._sync_once, due_only=True))

    async def run_notification_job(self) -> None:
        """One expiration notification run. Never raises."""
        if self._claim(NOTIFICATION_JOB):
            await self._guarded(NOTIFICATION_JOB, self._notify_once)

    def _spawn(self, job_id: str, job) -> bool:
        if not self._claim(job_id):
            return False

        task = asyncio.create_task(self._guarded(job_id, job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    def trigger_sync(self) -> bool:
        """Start a sync of every CA in the background; False if one is already running."""
        return self._spawn(SYNC_JOB, self._sync_once)

    def trigger_notifications(self) -> bool:
        return self._spawn(NOTIFICATION_JOB, self._notify_once)
