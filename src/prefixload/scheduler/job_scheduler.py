"""Cron scheduling of backup runs."""

import asyncio
from concurrent.futures import Executor
from datetime import datetime
from pathlib import Path
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config.schema import PrefixloadConfig
from ..config.settings import SyncSettings
from ..core import LocalFileError, PrefixloadError, SyncEngine, SyncReport
from ..core.sync_engine import ProgressCallback
from ..storage import BaseStorageClient, StorageError
from ..utils.logging import get_logger, log_async_execution_time

BACKUP_JOB_ID = "prefixload-backup"


class SchedulerError(PrefixloadError):
    """Raised when a backup cannot be scheduled."""
    pass


def create_trigger(cron_expression: str) -> CronTrigger:
    """Parse a five-field crontab expression (minute hour day month day_of_week).

    Raises:
        SchedulerError: If the expression is not valid crontab syntax
    """
    if len(cron_expression.split()) != 5:
        raise SchedulerError(
            f"Invalid cron expression '{cron_expression}': expected 5 fields "
            "(minute hour day month day_of_week)"
        )
    try:
        return CronTrigger.from_crontab(cron_expression)
    except ValueError as e:
        raise SchedulerError(f"Invalid cron expression '{cron_expression}': {e}")


def next_fire_time(trigger: CronTrigger) -> Optional[datetime]:
    return trigger.get_next_fire_time(None, datetime.now(trigger.timezone))


class BackupScheduler:
    """Runs the sync engine every time a cron trigger fires.

    One engine is shared by all firings; ``max_instances=1`` keeps a slow
    backup from overlapping the next one.
    """

    def __init__(
        self,
        client: BaseStorageClient,
        config: PrefixloadConfig,
        settings: SyncSettings,
        progress_callback: Optional[ProgressCallback] = None,
        executor: Optional[Executor] = None
    ):
        self.client = client
        self.config = config
        self.engine = SyncEngine.from_settings(
            client, config, settings, progress_callback=progress_callback, executor=executor
        )
        self.logger = get_logger(self.__class__.__name__)

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 300,
            }
        )
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._job_missed, EVENT_JOB_MISSED)

        self.run_count = 0
        self.last_report: Optional[SyncReport] = None
        self._stop_requested = False
        self._stopped: Optional[asyncio.Event] = None

    def add_backup_job(self, trigger: CronTrigger) -> Job:
        """Register (or replace) the backup job."""
        job = self.scheduler.add_job(
            self.run_backup,
            trigger=trigger,
            id=BACKUP_JOB_ID,
            name=f"Backup {self.config.local_directory_path} -> {self.config.bucket}",
            replace_existing=True,
        )
        self.logger.info(
            "Backup job scheduled",
            job_id=BACKUP_JOB_ID,
            trigger=str(trigger),
            next_run=str(next_fire_time(trigger))
        )
        return job

    @log_async_execution_time
    async def run_backup(self) -> Optional[SyncReport]:
        """One scheduled pass.

        Storage and directory errors are logged and the schedule keeps going;
        the next firing retries from scratch.
        """
        self.run_count += 1
        self.logger.info("Scheduled backup starting", run=self.run_count)

        try:
            if not await self.client.check_bucket_access():
                self.logger.error("Access denied to bucket", bucket=self.config.bucket)
                return None
            if self._stop_requested:
                return None

            directory = Path(self.config.local_directory_path).expanduser()
            report = await self.engine.run(self.config.directory_struct, directory)
        except (StorageError, LocalFileError) as e:
            self.logger.error("Scheduled backup failed", run=self.run_count, error=str(e))
            return None

        self.last_report = report
        self.logger.info(
            "Scheduled backup finished",
            run=self.run_count,
            uploaded=report.uploaded,
            skipped=report.skipped,
            failed=report.failed
        )
        return report

    async def serve(self) -> None:
        """Start the scheduler and block until ``request_stop`` is called."""
        self._stopped = asyncio.Event()
        if self._stop_requested:
            self._stopped.set()

        self.scheduler.start()
        self.logger.info("Scheduler started", jobs=len(self.scheduler.get_jobs()))
        try:
            await self._stopped.wait()
        finally:
            self.scheduler.shutdown(wait=False)
            self.logger.info("Scheduler stopped", runs=self.run_count)

    def request_stop(self):
        """Cancel the backup in flight, if any, and end ``serve``."""
        self._stop_requested = True
        self.engine.request_stop()
        if self._stopped is not None:
            self._stopped.set()

    def _job_error(self, event):
        self.logger.error(
            "Scheduled job raised",
            job_id=event.job_id,
            error=repr(event.exception)
        )

    def _job_missed(self, event):
        self.logger.warning(
            "Scheduled job missed",
            job_id=event.job_id,
            scheduled_run_time=str(event.scheduled_run_time)
        )
