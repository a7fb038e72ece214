from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import Settings
from .runner import ReminderRunError, ReminderRunner

logger = logging.getLogger(__name__)

REMINDER_JOB_ID = "rescue_reminders_daily"


def run_scheduled_batch(runner: ReminderRunner) -> None:
    """Job body for the daily trigger; a failed batch is logged and retried next tick."""
    try:
        runner.run_once(triggered_by="schedule")
    except ReminderRunError as exc:
        logger.error("scheduled reminder run did not complete: %s", exc)


def create_reminder_scheduler(runner: ReminderRunner, settings: Settings) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 3600},
        timezone=settings.reminder_schedule_timezone,
    )
    scheduler.add_job(
        run_scheduled_batch,
        CronTrigger(
            hour=settings.reminder_schedule_hour,
            minute=settings.reminder_schedule_minute,
            timezone=settings.reminder_schedule_timezone,
        ),
        args=[runner],
        id=REMINDER_JOB_ID,
        replace_existing=True,
    )
    return scheduler


def start_reminder_scheduler(scheduler: BackgroundScheduler) -> None:
    if scheduler.running:
        return
    scheduler.start()
    job = scheduler.get_job(REMINDER_JOB_ID)
    logger.info(
        "reminder scheduler started; next run at %s",
        job.next_run_time.isoformat() if job is not None and job.next_run_time else "unscheduled",
    )


def stop_reminder_scheduler(scheduler: BackgroundScheduler) -> None:
    if not scheduler.running:
        return
    # waits for an in-flight batch to finish before returning
    scheduler.shutdown(wait=True)
    logger.info("reminder scheduler stopped")
