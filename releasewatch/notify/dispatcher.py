"""Queue dispatcher: claims due items and sends them through a bounded worker pool."""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from releasewatch.config import settings
from releasewatch.db.models import NotificationLog, QueueItem, Sponsor, Subscription
from releasewatch.db.session import AsyncSessionLocal
from releasewatch.logging_config import get_logger
from releasewatch.metrics import dispatch_duration_seconds, record_send
from releasewatch.notify.formatters import DigestRenderer, RenderedEmail, build_headers
from releasewatch.notify.queue import NotificationQueue, notification_queue
from releasewatch.notify.transport import EmailTransport, EmailValidationError, ResendTransport
from releasewatch.utils.rate_limiter import RateLimiter
from releasewatch.utils.time import utcnow
from releasewatch.worker.scheduling import is_target_hour

logger = logging.getLogger(__name__)


@dataclass
class DispatchSummary:
    """Counts for one dispatch invocation."""

    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    recovered: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Dispatcher:
    """
    Sends due queue items.

    Each item is handled in its own session:
    claim -> render -> rate limit -> send (with timeout) -> bookkeeping.
    Transport errors and timeouts put the item back to pending until
    max_attempts is reached; validation errors fail it immediately.
    Items a previous run left in processing are recovered first.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        transport: Optional[EmailTransport] = None,
        renderer: Optional[DigestRenderer] = None,
        queue: Optional[NotificationQueue] = None,
        rate_limiter: Optional[RateLimiter] = None,
        concurrency: Optional[int] = None,
        batch_size: Optional[int] = None,
        send_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.transport = transport or ResendTransport()
        self.renderer = renderer or DigestRenderer()
        self.queue = queue or notification_queue
        self.rate_limiter = rate_limiter or RateLimiter()
        self.concurrency = max(1, concurrency or settings.dispatch_concurrency)
        self.batch_size = batch_size or settings.dispatch_batch_size
        self.send_timeout = send_timeout or settings.transport_timeout_seconds

    async def dispatch_pending(
        self,
        target_hour: Optional[int] = None,
        bypass_timezone: bool = False,
        now: Optional[datetime] = None,
    ) -> DispatchSummary:
        """
        Dispatch one batch of due items.

        Args:
            target_hour: Local hour items must be sent at (defaults to config)
            bypass_timezone: Skip the local-hour check (manual/test sends)
            now: Reference time (naive UTC, defaults to now)

        Returns:
            DispatchSummary
        """
        started = time.monotonic()
        now = now or utcnow()
        summary = DispatchSummary()

        async with self.session_factory() as db:
            stale = await self.queue.requeue_stale(
                db, self.send_timeout + settings.stale_processing_grace_seconds, now=now
            )
            summary.recovered = stale["requeued"] + stale["failed"]
            due = await self.queue.fetch_due(db, now=now, limit=self.batch_size)
            candidates = [(item.id, item.timezone) for item in due]

        eligible = []
        for queue_id, timezone in candidates:
            if bypass_timezone or is_target_hour(timezone, target_hour, now):
                eligible.append(queue_id)
            else:
                summary.skipped += 1

        if bypass_timezone and eligible:
            logger.info("Bypassing timezone filter for this dispatch")

        logger.info(
            f"Dispatching {len(eligible)} item(s) "
            f"({len(candidates)} due, {summary.skipped} outside their send hour)"
        )

        jobs: asyncio.Queue = asyncio.Queue()
        for queue_id in eligible:
            jobs.put_nowait(queue_id)

        async def worker():
            while True:
                try:
                    queue_id = jobs.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    await self._process(queue_id, summary)
                except Exception as e:
                    # Item stays in processing until a later run finds it stale
                    logger.error(f"Bookkeeping failed for queue item {queue_id}: {e}", exc_info=True)
                    summary.errors.append({"queue_id": queue_id, "error": str(e)})

        workers = min(self.concurrency, len(eligible))
        if workers:
            await asyncio.gather(*(worker() for _ in range(workers)))

        duration = time.monotonic() - started
        dispatch_duration_seconds.observe(duration)
        logger.info(
            f"Dispatch complete in {duration:.1f}s: processed={summary.processed} "
            f"sent={summary.sent} failed={summary.failed} skipped={summary.skipped}"
        )
        return summary

    async def _process(self, queue_id: int, summary: DispatchSummary) -> None:
        async with self.session_factory() as db:
            if not await self.queue.claim(db, queue_id):
                logger.debug(f"Queue item {queue_id} claimed elsewhere; skipping")
                summary.skipped += 1
                return

            summary.processed += 1
            item_logger = get_logger(__name__, queue_id=queue_id)
            item = await db.get(QueueItem, queue_id, populate_existing=True)

            try:
                if not item.email:
                    raise EmailValidationError("Missing recipient address")
                rendered = self.renderer.render(item)

                await self.rate_limiter.acquire()
                send_started = time.monotonic()
                message_id = await asyncio.wait_for(
                    self.transport.send(
                        item.email,
                        rendered.subject,
                        rendered.html,
                        rendered.text,
                        build_headers(item.id, item.user_id),
                    ),
                    timeout=self.send_timeout,
                )
            except EmailValidationError as e:
                await self._record_failure(db, item, str(e), summary, terminal=True)
                return
            except asyncio.TimeoutError:
                await self._record_failure(
                    db, item, f"Send timed out after {self.send_timeout}s", summary
                )
                return
            except Exception as e:
                await self._record_failure(db, item, str(e) or e.__class__.__name__, summary)
                return

            latency = time.monotonic() - send_started
            email_type, email, user_id = item.email_type, item.email, item.user_id
            await self._record_success(db, item, rendered, message_id)
            summary.sent += 1
            record_send(email_type, "sent", latency)
            item_logger.info(f"Sent {email_type} to {email}", extra={"user_id": user_id})

    async def _record_failure(
        self,
        db: AsyncSession,
        item: QueueItem,
        error: str,
        summary: DispatchSummary,
        terminal: bool = False,
    ) -> None:
        """Back to pending for a later pass, or failed when attempts are used up."""
        final = terminal or item.attempts >= item.max_attempts
        item.status = "failed" if final else "pending"
        item.last_error = error[:2000]
        item.updated_at = utcnow()
        await db.commit()

        summary.failed += 1
        summary.errors.append(
            {
                "queue_id": item.id,
                "user_id": item.user_id,
                "error": error,
                "attempts": item.attempts,
                "final": final,
            }
        )
        record_send(item.email_type, "failed" if final else "retry")

        if final:
            logger.error(
                f"Queue item {item.id} failed permanently after {item.attempts} attempt(s): {error}"
            )
        else:
            logger.warning(
                f"Queue item {item.id} attempt {item.attempts}/{item.max_attempts} failed: {error}"
            )

    async def _record_success(
        self,
        db: AsyncSession,
        item: QueueItem,
        rendered: RenderedEmail,
        message_id: str,
    ) -> None:
        """Mark sent, log the send, then advance last-notified versions row by row."""
        now = utcnow()
        user_id = item.user_id
        payload = item.payload or {}
        updates = payload.get("updates") or []

        item.status = "sent"
        item.provider_message_id = message_id
        item.sent_at = now
        item.last_error = None
        item.updated_at = now
        db.add(
            NotificationLog(
                queue_item_id=item.id,
                user_id=item.user_id,
                email=item.email,
                email_type=item.email_type,
                subject=rendered.subject,
                updates=updates,
                provider_message_id=message_id,
                status="sent",
            )
        )
        await db.commit()

        # Separate statements: a failure here only delays that product's
        # bookkeeping, the digest check will not re-report an unchanged version
        for entry in updates:
            try:
                await db.execute(
                    update(Subscription)
                    .where(
                        Subscription.user_id == user_id,
                        Subscription.product_id == entry["product_id"],
                    )
                    .values(last_notified_version=entry["new_version"], last_notified_at=now)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error(
                    f"Failed to update last notified version for user {user_id}, "
                    f"product {entry.get('product_id')}: {e}"
                )

        sponsor = payload.get("sponsor")
        if sponsor:
            try:
                stmt = update(Sponsor).values(impression_count=Sponsor.impression_count + 1)
                if sponsor.get("id") is not None:
                    stmt = stmt.where(Sponsor.id == sponsor["id"])
                else:
                    stmt = stmt.where(Sponsor.is_active.is_(True))
                await db.execute(stmt.execution_options(synchronize_session=False))
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error(f"Failed to count sponsor impression: {e}")
