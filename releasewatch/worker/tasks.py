"""Background tasks: queue digests and reminders, dispatch the queue, purge old rows."""

import logging
from contextlib import suppress
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from releasewatch import metrics
from releasewatch.config import settings
from releasewatch.db.models import Subscriber, Subscription
from releasewatch.db.session import AsyncSessionLocal
from releasewatch.digest.generator import DigestGenerator, digest_generator
from releasewatch.notify.dispatcher import Dispatcher, DispatchSummary
from releasewatch.notify.queue import EnqueueResult, NotificationQueue, notification_queue
from releasewatch.notify.suppression import is_suppressed, suppressed_user_ids
from releasewatch.utils.time import utcnow
from releasewatch.worker.dispatch_lock import DispatchLockManager, dispatch_lock_manager
from releasewatch.worker.scheduling import (
    calculate_reminder_time,
    calculate_scheduled_time,
    lookback_days,
)

logger = logging.getLogger(__name__)


@dataclass
class QueueRunSummary:
    """Outcome of one enqueue run."""

    frequency: str
    total_users: int = 0
    queued: int = 0
    duplicates: int = 0
    with_updates: int = 0
    all_quiet: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TaskRunner:
    """
    Runner for background tasks.

    - queue_digests builds and enqueues one digest per eligible subscriber
    - queue_no_tracking_reminders nudges subscribers who track nothing
    - dispatch_queue sends due items under the Redis run lock
    - purge_queue removes old terminal rows
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        generator: Optional[DigestGenerator] = None,
        queue: Optional[NotificationQueue] = None,
        dispatcher: Optional[Dispatcher] = None,
        lock_manager: Optional[DispatchLockManager] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.generator = generator or digest_generator
        self.queue = queue or notification_queue
        self._dispatcher = dispatcher
        self.lock_manager = lock_manager or dispatch_lock_manager

    @property
    def dispatcher(self) -> Dispatcher:
        if self._dispatcher is None:
            self._dispatcher = Dispatcher(session_factory=self.session_factory, queue=self.queue)
        return self._dispatcher

    async def initialize(self):
        """Initialize task runner."""
        logger.info("Task runner initialized")

    async def close(self):
        """Clean up resources."""
        transport = getattr(self._dispatcher, "transport", None)
        if transport is not None and hasattr(transport, "close"):
            await transport.close()
        await self.lock_manager.close()

    async def queue_digests(self, frequency: str, now: Optional[datetime] = None) -> QueueRunSummary:
        """
        Build and enqueue digests for every subscriber on this frequency.

        Subscribers over the hard-bounce threshold, tracking nothing, or
        opting out of all-quiet mail with nothing new are skipped. A failure
        for one subscriber is recorded and the run continues.

        Args:
            frequency: daily/weekly/monthly
            now: Reference time (naive UTC, defaults to now)

        Returns:
            QueueRunSummary
        """
        days = lookback_days(frequency)
        now = now or utcnow()
        summary = QueueRunSummary(frequency=frequency)

        async with self.session_factory() as db:
            result = await db.execute(
                select(
                    Subscriber.id,
                    Subscriber.email,
                    Subscriber.timezone,
                    Subscriber.all_quiet_preference,
                )
                .where(
                    Subscriber.email_notifications.is_(True),
                    Subscriber.notification_frequency == frequency,
                )
                .order_by(Subscriber.id)
            )
            subscribers = result.all()
            suppressed = await suppressed_user_ids(db, [row.id for row in subscribers], now=now)

        summary.total_users = len(subscribers)
        logger.info(f"Queueing {frequency} digests for {len(subscribers)} subscriber(s)")

        for user_id, email, timezone, all_quiet_preference in subscribers:
            if not email:
                summary.skipped += 1
                continue
            if user_id in suppressed:
                logger.info(f"Skipping user {user_id}: too many hard bounces")
                metrics.queue_suppressed_total.inc()
                summary.skipped += 1
                continue

            timezone = timezone or settings.default_timezone
            try:
                async with self.session_factory() as db:
                    tracked = await db.scalar(
                        select(func.count(Subscription.id)).where(Subscription.user_id == user_id)
                    )
                    if not tracked:
                        logger.debug(f"Skipping user {user_id}: no tracked products")
                        summary.skipped += 1
                        continue

                    payload = await self.generator.build_digest_payload(
                        db, user_id, days, frequency=frequency, now=now
                    )

                    if (
                        not payload.has_updates
                        and all_quiet_preference == "new_products_only"
                        and not payload.new_products
                    ):
                        logger.debug(f"Skipping user {user_id}: nothing new and all-quiet mail is off")
                        summary.skipped += 1
                        continue

                    enqueue_result = await self.queue.enqueue(
                        db,
                        user_id=user_id,
                        email=email,
                        email_type=f"{frequency}_digest",
                        payload=payload,
                        scheduled_for=calculate_scheduled_time(frequency, timezone, now=now),
                        timezone=timezone,
                    )
            except Exception as e:
                logger.error(f"Failed to queue {frequency} digest for user {user_id}: {e}", exc_info=True)
                summary.errors.append({"user_id": user_id, "email": email, "error": str(e)})
                continue

            if not enqueue_result.success:
                summary.errors.append(
                    {"user_id": user_id, "email": email, "error": enqueue_result.error}
                )
                continue

            if enqueue_result.duplicate:
                summary.duplicates += 1
            else:
                summary.queued += 1
            if payload.has_updates:
                summary.with_updates += 1
            else:
                summary.all_quiet += 1

        logger.info(
            f"{frequency.capitalize()} queue run complete: users={summary.total_users} "
            f"queued={summary.queued} duplicates={summary.duplicates} "
            f"with_updates={summary.with_updates} all_quiet={summary.all_quiet} "
            f"skipped={summary.skipped} errors={len(summary.errors)}"
        )
        return summary

    async def queue_no_tracking_reminders(self, now: Optional[datetime] = None) -> QueueRunSummary:
        """
        Enqueue the monthly reminder for subscribers who track nothing.

        Every recipient gets the same popular-products list with a subject
        picked for them. Keys are scoped to the local month of the send, so a
        re-run within the month is a no-op.
        """
        now = now or utcnow()
        summary = QueueRunSummary(frequency="no_tracking_reminder")

        async with self.session_factory() as db:
            result = await db.execute(
                select(Subscriber.id, Subscriber.email, Subscriber.timezone)
                .outerjoin(Subscription, Subscription.user_id == Subscriber.id)
                .where(
                    Subscriber.email_notifications.is_(True),
                    Subscription.id.is_(None),
                )
                .order_by(Subscriber.id)
            )
            subscribers = result.all()
            suppressed = await suppressed_user_ids(db, [row.id for row in subscribers], now=now)
            base_payload = await self.generator.build_reminder_payload(db, now=now)

        summary.total_users = len(subscribers)
        logger.info(
            f"Queueing no-tracking reminders for {len(subscribers)} subscriber(s) "
            f"({len(base_payload.popular_products)} popular products)"
        )

        for user_id, email, timezone in subscribers:
            if not email:
                summary.skipped += 1
                continue
            if user_id in suppressed:
                logger.info(f"Skipping user {user_id}: too many hard bounces")
                metrics.queue_suppressed_total.inc()
                summary.skipped += 1
                continue

            timezone = timezone or settings.default_timezone
            try:
                async with self.session_factory() as db:
                    enqueue_result = await self.queue.enqueue(
                        db,
                        user_id=user_id,
                        email=email,
                        email_type="no_tracking_reminder",
                        payload=self.generator.personalize_reminder(base_payload),
                        scheduled_for=calculate_reminder_time(timezone, now=now),
                        timezone=timezone,
                    )
            except Exception as e:
                logger.error(f"Failed to queue no-tracking reminder for user {user_id}: {e}", exc_info=True)
                summary.errors.append({"user_id": user_id, "email": email, "error": str(e)})
                continue

            if not enqueue_result.success:
                summary.errors.append(
                    {"user_id": user_id, "email": email, "error": enqueue_result.error}
                )
            elif enqueue_result.duplicate:
                summary.duplicates += 1
            else:
                summary.queued += 1

        logger.info(
            f"No-tracking reminder run complete: users={summary.total_users} "
            f"queued={summary.queued} duplicates={summary.duplicates} "
            f"skipped={summary.skipped} errors={len(summary.errors)}"
        )
        return summary

    async def queue_test_send(self, user_id: int, frequency: Optional[str] = None) -> EnqueueResult:
        """
        Enqueue a digest for one user, due immediately and ahead of scheduled mail.

        Raises:
            LookupError: Unknown user
        """
        now = utcnow()
        async with self.session_factory() as db:
            subscriber = await db.get(Subscriber, user_id)
            if subscriber is None:
                raise LookupError(f"Subscriber {user_id} not found")

            if await is_suppressed(db, user_id, now=now):
                logger.info(f"Refusing test send to user {user_id}: too many hard bounces")
                metrics.queue_suppressed_total.inc()
                metrics.record_enqueue("test_digest", "rejected")
                return EnqueueResult(
                    success=False, error="Recipient suppressed after repeated hard bounces"
                )

            frequency = frequency or subscriber.notification_frequency
            payload = await self.generator.build_digest_payload(
                db, user_id, lookback_days(frequency), frequency=frequency, now=now
            )
            return await self.queue.enqueue(
                db,
                user_id=user_id,
                email=subscriber.email,
                email_type="test_digest",
                payload=payload,
                scheduled_for=now,
                timezone=subscriber.timezone or settings.default_timezone,
                priority=settings.manual_send_priority,
            )

    async def dispatch_queue(
        self,
        target_hour: Optional[int] = None,
        bypass_timezone: bool = False,
    ) -> Optional[DispatchSummary]:
        """
        Dispatch due items, holding the run lock when enabled.

        Returns:
            DispatchSummary, or None if another dispatch run holds the lock
        """
        if not settings.dispatch_lock_enabled:
            return await self.dispatcher.dispatch_pending(target_hour, bypass_timezone)

        run_id = uuid4().hex
        lock_token = await self.lock_manager.acquire_lock(run_id)
        if not lock_token:
            lock_info = await self.lock_manager.get_lock_info()
            logger.info(
                f"Dispatch already running; skipping (lock_run_id: "
                f"{((lock_info or {}).get('run_id') or '')[:16]}, ttl_s: {(lock_info or {}).get('ttl_seconds')})"
            )
            return None

        try:
            return await self.dispatcher.dispatch_pending(target_hour, bypass_timezone)
        finally:
            released = False
            with suppress(Exception):
                released = await self.lock_manager.release_lock(run_id, lock_token)
            if not released:
                logger.warning(f"Failed to release dispatch lock for run_id: {run_id[:16]}...")

    async def purge_queue(self, older_than_days: Optional[int] = None) -> int:
        """Delete terminal queue rows past the retention window."""
        async with self.session_factory() as db:
            return await self.queue.purge_terminal(db, older_than_days)

    # Scheduler entrypoints

    async def run_scheduled_dispatch(self):
        """Hourly dispatch job."""
        try:
            await self.dispatch_queue()
            metrics.record_scheduler_run("dispatch", True)
        except Exception as e:
            metrics.record_scheduler_run("dispatch", False)
            logger.error(f"Scheduled dispatch failed: {e}", exc_info=True)

    async def run_scheduled_queue(self, frequency: str):
        """Daily/weekly/monthly enqueue job."""
        job_type = f"queue_{frequency}"
        try:
            await self.queue_digests(frequency)
            metrics.record_scheduler_run(job_type, True)
        except Exception as e:
            metrics.record_scheduler_run(job_type, False)
            logger.error(f"Scheduled {frequency} queue run failed: {e}", exc_info=True)

    async def run_scheduled_no_tracking_reminder(self):
        """Monthly no-tracking reminder job."""
        try:
            await self.queue_no_tracking_reminders()
            metrics.record_scheduler_run("queue_no_tracking_reminder", True)
        except Exception as e:
            metrics.record_scheduler_run("queue_no_tracking_reminder", False)
            logger.error(f"Scheduled no-tracking reminder run failed: {e}", exc_info=True)

    async def run_scheduled_purge(self):
        """Daily purge job."""
        try:
            await self.purge_queue()
            metrics.record_scheduler_run("purge", True)
        except Exception as e:
            metrics.record_scheduler_run("purge", False)
            logger.error(f"Scheduled purge failed: {e}", exc_info=True)


task_runner = TaskRunner()
