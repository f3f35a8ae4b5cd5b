"""Scheduled backups."""

from .job_scheduler import (
    BACKUP_JOB_ID,
    BackupScheduler,
    SchedulerError,
    create_trigger,
    next_fire_time,
)

__all__ = [
    "BACKUP_JOB_ID",
    "BackupScheduler",
    "SchedulerError",
    "create_trigger",
    "next_fire_time",
]
