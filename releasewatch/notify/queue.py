"""Durable, idempotent notification queue backed by the notification_queue table."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from releasewatch.config import settings
from releasewatch.db.models import QUEUE_STATUSES, TERMINAL_QUEUE_STATUSES, QueueItem
from releasewatch.digest.payload import DigestPayload, ReminderPayload
from releasewatch.metrics import record_enqueue
from releasewatch.utils.time import as_naive_utc, utcnow
from releasewatch.worker.scheduling import target_calendar_date

logger = logging.getLogger(__name__)

# At most one of these per user per local calendar month
MONTH_SCOPED_EMAIL_TYPES = frozenset({"no_tracking_reminder"})


@dataclass
class EnqueueResult:
    """Outcome of an enqueue call."""

    success: bool
    queue_id: Optional[int] = None
    duplicate: bool = False
    idempotency_key: Optional[str] = None
    error: Optional[str] = None


def make_idempotency_key(user_id: int, email_type: str, target_date: date) -> str:
    """One job per user, email type and local calendar day (or month)."""
    if email_type in MONTH_SCOPED_EMAIL_TYPES:
        return f"{user_id}-{email_type}-{target_date:%Y-%m}"
    return f"{user_id}-{email_type}-{target_date.isoformat()}"


def _dialect_insert(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported database dialect for queue upsert: {dialect}")


class NotificationQueue:
    """Enqueue, claim and housekeeping operations on queue items."""

    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = max_attempts or settings.max_send_attempts

    async def enqueue(
        self,
        db: AsyncSession,
        user_id: int,
        email: Optional[str],
        email_type: str,
        payload: Union[DigestPayload, ReminderPayload, dict],
        scheduled_for: datetime,
        timezone: str,
        priority: int = 0,
    ) -> EnqueueResult:
        """
        Insert a job unless one with the same idempotency key already exists.

        Re-enqueueing the same (user, email type, local day) is a successful
        no-op, so retried scheduler triggers are safe. Reminder types are
        keyed by local month instead.

        Args:
            db: Database session
            user_id: Subscriber id
            email: Recipient address
            email_type: e.g. weekly_digest
            payload: Digest or reminder payload
            scheduled_for: Earliest send time (naive UTC or aware)
            timezone: Subscriber's IANA timezone
            priority: Higher is dispatched first

        Returns:
            EnqueueResult
        """
        if not email or "@" not in email:
            record_enqueue(email_type, "rejected")
            logger.warning(f"Rejected enqueue for user {user_id}: missing recipient address")
            return EnqueueResult(success=False, error="Missing recipient address")

        scheduled_for = as_naive_utc(scheduled_for)
        key = make_idempotency_key(
            user_id, email_type, target_calendar_date(scheduled_for, timezone)
        )
        if isinstance(payload, (DigestPayload, ReminderPayload)):
            payload = payload.to_queue_json()

        now = utcnow()
        insert = _dialect_insert(db)
        stmt = (
            insert(QueueItem)
            .values(
                user_id=user_id,
                email=email,
                email_type=email_type,
                payload=payload,
                status="pending",
                scheduled_for=scheduled_for,
                timezone=timezone,
                priority=priority,
                attempts=0,
                max_attempts=self.max_attempts,
                idempotency_key=key,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
            .returning(QueueItem.id)
        )

        result = await db.execute(stmt)
        queue_id = result.scalar_one_or_none()
        await db.commit()

        if queue_id is None:
            record_enqueue(email_type, "duplicate")
            logger.debug(f"Duplicate enqueue ignored: {key}")
            return EnqueueResult(success=True, duplicate=True, idempotency_key=key)

        record_enqueue(email_type, "inserted")
        logger.info(f"Queued {email_type} for user {user_id} at {scheduled_for.isoformat()} (id={queue_id})")
        return EnqueueResult(success=True, queue_id=queue_id, idempotency_key=key)

    async def claim(self, db: AsyncSession, queue_id: int) -> bool:
        """
        Atomically move a pending item to processing and count the attempt.

        Returns:
            True if this caller owns the item; False if another worker got it
            first or it is no longer pending
        """
        result = await db.execute(
            update(QueueItem)
            .where(
                QueueItem.id == queue_id,
                QueueItem.status == "pending",
                QueueItem.attempts < QueueItem.max_attempts,
            )
            .values(
                status="processing",
                attempts=QueueItem.attempts + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    async def requeue_stale(
        self, db: AsyncSession, older_than_seconds: float, now: Optional[datetime] = None
    ) -> Dict[str, int]:
        """
        Recover items left in processing by a run that died before bookkeeping.

        Items untouched for ``older_than_seconds`` go back to pending, or to
        failed when their attempts are used up.

        Returns:
            {"requeued": n, "failed": n}
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=older_than_seconds)
        stale = (QueueItem.status == "processing", QueueItem.updated_at < cutoff)
        error = f"Abandoned in processing for over {int(older_than_seconds)}s"

        requeued = await db.execute(
            update(QueueItem)
            .where(*stale, QueueItem.attempts < QueueItem.max_attempts)
            .values(status="pending", last_error=error, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        failed = await db.execute(
            update(QueueItem)
            .where(*stale, QueueItem.attempts >= QueueItem.max_attempts)
            .values(status="failed", last_error=error, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        counts = {"requeued": requeued.rowcount or 0, "failed": failed.rowcount or 0}
        if counts["requeued"] or counts["failed"]:
            logger.warning(
                f"Recovered stale processing items: requeued={counts['requeued']} "
                f"failed={counts['failed']}"
            )
        return counts

    async def fetch_due(
        self, db: AsyncSession, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[QueueItem]:
        """Pending items due by ``now``, highest priority first, then oldest schedule."""
        now = now or utcnow()
        result = await db.execute(
            select(QueueItem)
            .where(
                QueueItem.status == "pending",
                QueueItem.scheduled_for <= now,
                QueueItem.attempts < QueueItem.max_attempts,
            )
            .order_by(QueueItem.priority.desc(), QueueItem.scheduled_for.asc(), QueueItem.id.asc())
            .limit(limit or settings.dispatch_batch_size)
        )
        return list(result.scalars().all())

    async def queue_summary(self, db: AsyncSession) -> Dict[str, object]:
        """Counts per status (every status present, zero when empty) and the next due time."""
        result = await db.execute(
            select(QueueItem.status, func.count(QueueItem.id)).group_by(QueueItem.status)
        )
        counts = {status: 0 for status in QUEUE_STATUSES}
        for status, count in result.all():
            counts[status] = count

        next_result = await db.execute(
            select(func.min(QueueItem.scheduled_for)).where(QueueItem.status == "pending")
        )
        next_scheduled = next_result.scalar_one_or_none()

        return {
            **counts,
            "total": sum(counts.values()),
            "next_scheduled_for": next_scheduled.isoformat() if next_scheduled else None,
        }

    async def cancel_pending(self, db: AsyncSession, queue_id: Optional[int] = None) -> int:
        """
        Cancel one pending item, or every pending item when no id is given.

        Returns:
            Number of items cancelled
        """
        stmt = update(QueueItem).where(QueueItem.status == "pending")
        if queue_id is not None:
            stmt = stmt.where(QueueItem.id == queue_id)
        result = await db.execute(
            stmt.values(status="cancelled", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        cancelled = result.rowcount or 0
        logger.info(f"Cancelled {cancelled} pending queue item(s)")
        return cancelled

    async def purge_terminal(
        self, db: AsyncSession, older_than_days: Optional[int] = None, now: Optional[datetime] = None
    ) -> int:
        """
        Delete sent/failed/cancelled items older than the retention window.

        Returns:
            Number of rows deleted
        """
        days = older_than_days if older_than_days is not None else settings.queue_retention_days
        cutoff = (now or utcnow()) - timedelta(days=days)
        result = await db.execute(
            delete(QueueItem)
            .where(
                QueueItem.status.in_(TERMINAL_QUEUE_STATUSES),
                QueueItem.created_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        deleted = result.rowcount or 0
        logger.info(f"Purged {deleted} terminal queue item(s) older than {days} days")
        return deleted


notification_queue = NotificationQueue()
