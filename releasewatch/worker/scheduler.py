"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from releasewatch.config import settings
from releasewatch.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview (cron times are UTC):
    - Queue dispatch every settings.dispatch_interval_minutes; items only go
      out when it is the target hour in the subscriber's timezone, so the
      interval should stay at or below an hour
    - Daily digests queued every day, weekly digests on weekly_queue_day,
      monthly digests on the last day of the month
    - No-tracking reminders queued on reminder_queue_day, ahead of their
      local send day
    - Terminal queue rows purged daily

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler(timezone="UTC")
    dispatch_interval = max(1, int(settings.dispatch_interval_minutes))

    scheduler.add_job(
        task_runner.run_scheduled_dispatch,
        IntervalTrigger(minutes=dispatch_interval),
        id="queue_dispatch",
        name="Dispatch due digest emails",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.run_scheduled_queue,
        CronTrigger(hour=settings.daily_queue_hour, minute=0),
        args=["daily"],
        id="queue_daily",
        name="Queue daily digests",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.run_scheduled_queue,
        CronTrigger(day_of_week=settings.weekly_queue_day, hour=settings.weekly_queue_hour, minute=0),
        args=["weekly"],
        id="queue_weekly",
        name="Queue weekly digests",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.run_scheduled_queue,
        CronTrigger(day="last", hour=settings.monthly_queue_hour, minute=0),
        args=["monthly"],
        id="queue_monthly",
        name="Queue monthly digests",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.run_scheduled_no_tracking_reminder,
        CronTrigger(day=settings.reminder_queue_day, hour=settings.reminder_queue_hour, minute=0),
        id="queue_no_tracking_reminder",
        name="Queue no-tracking reminders",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.run_scheduled_purge,
        CronTrigger(hour=settings.purge_hour, minute=0),
        id="queue_purge",
        name="Purge old terminal queue items",
        max_instances=1,
        replace_existing=True,
    )

    logger.info(
        f"Scheduler configured: dispatch every {dispatch_interval} minutes, "
        f"daily queue at {settings.daily_queue_hour}:00, weekly queue on "
        f"{settings.weekly_queue_day} at {settings.weekly_queue_hour}:00, monthly queue on the "
        f"last day at {settings.monthly_queue_hour}:00, no-tracking reminders on day "
        f"{settings.reminder_queue_day} at {settings.reminder_queue_hour}:00, purge at {settings.purge_hour}:00 (UTC)"
    )

    return scheduler
