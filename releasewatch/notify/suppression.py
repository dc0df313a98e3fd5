"""Bounce tracking, recipient suppression and provider delivery events."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional, Set

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from releasewatch.config import settings
from releasewatch.db.models import BounceRecord, NotificationLog, Sponsor, Subscriber
from releasewatch.metrics import bounces_recorded_total
from releasewatch.utils.time import utcnow

logger = logging.getLogger(__name__)

# Provider event type -> notification log status
DELIVERY_STATUSES = {
    "email.delivered": "delivered",
    "email.opened": "opened",
    "email.clicked": "clicked",
}


def _window_start(now: Optional[datetime], window_days: Optional[int]) -> datetime:
    days = window_days if window_days is not None else settings.bounce_window_days
    return (now or utcnow()) - timedelta(days=days)


async def hard_bounce_count(
    db: AsyncSession,
    user_id: int,
    now: Optional[datetime] = None,
    window_days: Optional[int] = None,
) -> int:
    """Hard bounces for a user inside the trailing window."""
    result = await db.execute(
        select(func.count(BounceRecord.id)).where(
            BounceRecord.user_id == user_id,
            BounceRecord.bounce_type == "hard",
            BounceRecord.created_at >= _window_start(now, window_days),
        )
    )
    return result.scalar_one()


async def is_suppressed(
    db: AsyncSession,
    user_id: int,
    now: Optional[datetime] = None,
) -> bool:
    """True if the user has reached the hard-bounce threshold."""
    return await hard_bounce_count(db, user_id, now=now) >= settings.bounce_threshold


async def suppressed_user_ids(
    db: AsyncSession,
    user_ids: Iterable[int],
    now: Optional[datetime] = None,
) -> Set[int]:
    """Subset of user_ids at or over the hard-bounce threshold (one query)."""
    ids = list(user_ids)
    if not ids:
        return set()
    result = await db.execute(
        select(BounceRecord.user_id)
        .where(
            BounceRecord.user_id.in_(ids),
            BounceRecord.bounce_type == "hard",
            BounceRecord.created_at >= _window_start(now, None),
        )
        .group_by(BounceRecord.user_id)
        .having(func.count(BounceRecord.id) >= settings.bounce_threshold)
    )
    return set(result.scalars().all())


async def record_bounce(
    db: AsyncSession,
    user_id: int,
    email: str,
    bounce_type: str,
    reason: Optional[str] = None,
    provider_message_id: Optional[str] = None,
) -> BounceRecord:
    """
    Append a bounce record.

    Reaching the hard-bounce threshold also turns off the subscriber's
    email notifications.
    """
    if bounce_type not in ("hard", "soft"):
        raise ValueError(f"Unknown bounce type: {bounce_type}")

    bounce = BounceRecord(
        user_id=user_id,
        email=email,
        bounce_type=bounce_type,
        reason=reason,
        provider_message_id=provider_message_id,
    )
    db.add(bounce)
    await db.flush()
    bounces_recorded_total.labels(bounce_type=bounce_type).inc()

    if bounce_type == "hard" and await is_suppressed(db, user_id):
        await _disable_notifications(db, user_id)
        logger.warning(f"Disabled notifications for user {user_id} after repeated hard bounces")

    await db.commit()
    logger.info(f"Recorded {bounce_type} bounce for user {user_id}: {reason}")
    return bounce


async def _disable_notifications(db: AsyncSession, user_id: int) -> None:
    await db.execute(
        update(Subscriber)
        .where(Subscriber.id == user_id)
        .values(email_notifications=False)
        .execution_options(synchronize_session=False)
    )


async def _find_log(db: AsyncSession, provider_message_id: str) -> Optional[NotificationLog]:
    result = await db.execute(
        select(NotificationLog)
        .where(NotificationLog.provider_message_id == provider_message_id)
        .order_by(NotificationLog.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def handle_provider_event(db: AsyncSession, event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply one provider webhook event.

    delivered/opened/clicked advance the notification log; bounced records a
    bounce of the reported type; complained records a hard bounce and turns
    notifications off.

    Args:
        db: Database session
        event: Provider payload with ``type`` and ``data.email_id``

    Returns:
        Dict describing what was applied
    """
    event_type = event.get("type", "")
    data = event.get("data") or {}
    message_id = data.get("email_id")
    if not message_id:
        raise ValueError("Event is missing data.email_id")

    log = await _find_log(db, message_id)
    now = utcnow()

    if event_type in DELIVERY_STATUSES:
        if log is None:
            return {"event": event_type, "applied": False, "reason": "unknown message"}
        log.status = DELIVERY_STATUSES[event_type]
        if event_type == "email.opened":
            log.opened_at = now
        elif event_type == "email.clicked":
            log.clicked_at = now
            await _track_sponsor_click(db, (data.get("click") or {}).get("link"))
        await db.commit()
        return {"event": event_type, "applied": True}

    if event_type in ("email.bounced", "email.complained"):
        if log is None:
            logger.warning(f"Bounce event for unknown message {message_id}")
            return {"event": event_type, "applied": False, "reason": "unknown message"}

        recipients = data.get("to") or [log.email]
        recipient = recipients[0] if recipients else log.email

        if event_type == "email.bounced":
            bounce = data.get("bounce") or {}
            bounce_type = bounce.get("type") if bounce.get("type") in ("hard", "soft") else "soft"
            reason = bounce.get("message") or "Unknown reason"
            log.status = "bounced"
            log.bounced_at = now
        else:
            bounce_type = "hard"
            reason = "Spam complaint"
            log.status = "complained"
            await _disable_notifications(db, log.user_id)
            logger.warning(f"Disabled notifications for user {log.user_id} after spam complaint")

        await record_bounce(
            db,
            user_id=log.user_id,
            email=recipient,
            bounce_type=bounce_type,
            reason=reason,
            provider_message_id=message_id,
        )
        return {"event": event_type, "applied": True, "bounce_type": bounce_type}

    logger.info(f"Ignoring unhandled provider event type: {event_type}")
    return {"event": event_type, "applied": False, "reason": "unhandled event type"}


async def _track_sponsor_click(db: AsyncSession, link: Optional[str]) -> None:
    if not link:
        return
    result = await db.execute(select(Sponsor).where(Sponsor.is_active.is_(True)))
    for sponsor in result.scalars().all():
        if sponsor.cta_url and sponsor.cta_url in link:
            sponsor.click_count = (sponsor.click_count or 0) + 1
            logger.debug(f"Tracked sponsor click for {sponsor.name}")
            break
