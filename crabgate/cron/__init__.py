"""Cron service for scheduled agent tasks."""

from crabgate.cron.service import CronService, compute_next_run, validate_schedule
from crabgate.cron.types import CronJob, CronJobState, CronSchedule, CronStore

__all__ = [
    "CronService",
    "CronJob",
    "CronJobState",
    "CronSchedule",
    "CronStore",
    "compute_next_run",
    "validate_schedule",
]
