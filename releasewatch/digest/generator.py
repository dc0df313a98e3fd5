"""Per-subscriber digest assembly."""

import logging
import random
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from releasewatch.config import settings
from releasewatch.db.models import Product, Sponsor, Subscription
from releasewatch.digest.messages import pick_all_quiet_message, pick_reminder_subject
from releasewatch.digest.payload import (
    DigestPayload,
    NewProductEntry,
    PopularProductEntry,
    ReminderPayload,
    SponsorBlock,
    UpdateEntry,
)
from releasewatch.metrics import digest_product_errors_total, record_digest_built
from releasewatch.utils.sources import first_available
from releasewatch.utils.time import utcnow
from releasewatch.versions.history import load_verified_history
from releasewatch.versions.parser import compare
from releasewatch.versions.resolver import previous_version, resolve_current_version

logger = logging.getLogger(__name__)

# When a release happened: vendor date if known, else when we detected it
EFFECTIVE_DATE_SOURCES = (
    ("release_date", lambda record: record.release_date),
    ("detected_at", lambda record: record.detected_at),
)

# Old version shown next to the new one: prior history entry, else what the
# subscriber was last told about
OLD_VERSION_SOURCES = (
    ("history", lambda ctx: ctx["previous"].version if ctx["previous"] is not None else None),
    ("last_notified", lambda ctx: ctx["subscription"].last_notified_version),
)


class DigestGenerator:
    """Builds digest payloads from subscriptions and verified version history."""

    def __init__(
        self,
        max_updates: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        self.max_updates = max_updates or settings.max_updates_per_email
        self.rng = rng

    async def build_digest_payload(
        self,
        db: AsyncSession,
        user_id: int,
        lookback_days: int,
        frequency: str = "weekly",
        now: Optional[datetime] = None,
    ) -> DigestPayload:
        """
        Assemble the digest for one subscriber.

        A product is reported when its current version was released inside the
        window and differs from the version the subscriber was last notified
        about. A failure on one product drops only that product.

        Args:
            db: Database session
            user_id: Subscriber id
            lookback_days: Window size in days
            frequency: daily/weekly/monthly, carried into the payload
            now: Reference time (naive UTC, defaults to now)

        Returns:
            DigestPayload (all-quiet message set when there are no updates)
        """
        now = now or utcnow()
        since = now - timedelta(days=lookback_days)

        result = await db.execute(
            select(Subscription, Product)
            .join(Product, Subscription.product_id == Product.id)
            .where(Subscription.user_id == user_id)
        )
        tracked = result.all()

        history = await load_verified_history(db, [product.id for _, product in tracked])

        candidates = []
        for subscription, product in tracked:
            try:
                entry = self._build_update_entry(
                    subscription, product, history.get(product.id, []), since
                )
            except Exception as e:
                digest_product_errors_total.inc()
                logger.error(
                    f"Skipping product {product.id} in digest for user {user_id}: {e}",
                    exc_info=True,
                )
                continue
            if entry is not None:
                candidates.append(entry)

        candidates.sort(key=lambda pair: pair[0], reverse=True)
        total_updates = len(candidates)
        updates = [entry for _, entry in candidates[:self.max_updates]]

        new_products = await self._load_new_products(db, since)
        sponsor = await self._load_sponsor(db, now)

        payload = DigestPayload(
            updates=updates,
            new_products=new_products,
            sponsor=sponsor,
            all_quiet_message=None if updates else pick_all_quiet_message(self.rng),
            tracked_count=len(tracked),
            total_updates=total_updates,
            has_more=total_updates > len(updates),
            dashboard_url=f"{settings.app_url}/dashboard",
            frequency=frequency,
        )

        record_digest_built(payload.has_updates)
        logger.info(
            f"Built {frequency} digest for user {user_id}: {len(updates)} of "
            f"{total_updates} updates, {len(new_products)} new products"
        )
        return payload

    def _build_update_entry(
        self,
        subscription: Subscription,
        product: Product,
        records: list,
        since: datetime,
    ) -> Optional[tuple]:
        """Return (effective_date, UpdateEntry), or None if nothing to report."""
        current = resolve_current_version(records)
        if current is None:
            return None

        effective = first_available(current, EFFECTIVE_DATE_SOURCES)
        if effective is None or effective < since:
            return None

        last_notified = subscription.last_notified_version
        if last_notified and compare(current.version, last_notified) == 0:
            return None

        old_version = first_available(
            {"previous": previous_version(records, current), "subscription": subscription},
            OLD_VERSION_SOURCES,
            default="N/A",
        )

        entry = UpdateEntry(
            product_id=product.id,
            name=product.name,
            manufacturer=product.manufacturer,
            category=product.category,
            old_version=old_version,
            new_version=current.version,
            release_date=effective,
            release_notes=list(current.notes or []),
            update_type=current.update_type or "patch",
        )
        return effective, entry

    async def build_reminder_payload(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> ReminderPayload:
        """
        Shared body of the no-tracking reminder: popular products and the sponsor.

        The subject line is left empty; callers pick one per recipient.
        """
        now = now or utcnow()
        return ReminderPayload(
            popular_products=await self.load_popular_products(db, limit),
            sponsor=await self._load_sponsor(db, now),
            dashboard_url=f"{settings.app_url}/dashboard",
        )

    def personalize_reminder(self, base: ReminderPayload) -> ReminderPayload:
        """Copy of the shared reminder with a subject picked for one recipient."""
        return base.model_copy(update={"subject_line": pick_reminder_subject(self.rng)})

    async def load_popular_products(
        self, db: AsyncSession, limit: Optional[int] = None
    ) -> List[PopularProductEntry]:
        """Most-tracked products, with current versions from verified history."""
        limit = limit or settings.popular_products_limit
        tracker_count = func.count(Subscription.id).label("tracker_count")
        result = await db.execute(
            select(Product, tracker_count)
            .join(Subscription, Subscription.product_id == Product.id)
            .group_by(Product.id)
            .order_by(tracker_count.desc(), Product.id.asc())
            .limit(limit)
        )
        rows = result.all()
        if not rows:
            return []

        history = await load_verified_history(db, [product.id for product, _ in rows])

        entries = []
        for product, count in rows:
            current = resolve_current_version(history.get(product.id, []))
            entries.append(
                PopularProductEntry(
                    product_id=product.id,
                    name=product.name,
                    manufacturer=product.manufacturer,
                    category=product.category,
                    current_version=current.version if current is not None else "N/A",
                    tracker_count=count,
                )
            )
        return entries

    async def _load_new_products(self, db: AsyncSession, since: datetime) -> List[NewProductEntry]:
        """Platform-wide products added inside the window, newest first."""
        result = await db.execute(
            select(Product)
            .where(Product.created_at >= since)
            .order_by(Product.created_at.desc(), Product.id.desc())
        )
        products = list(result.scalars().all())
        if not products:
            return []

        history = await load_verified_history(db, [p.id for p in products])

        entries = []
        for product in products:
            current = resolve_current_version(history.get(product.id, []))
            entries.append(
                NewProductEntry(
                    product_id=product.id,
                    name=product.name,
                    manufacturer=product.manufacturer,
                    category=product.category,
                    initial_version=current.version if current is not None else "N/A",
                    added_date=product.created_at,
                )
            )
        return entries

    async def _load_sponsor(self, db: AsyncSession, now: datetime) -> Optional[SponsorBlock]:
        """Active sponsor whose dates cover today, else any active sponsor."""
        today = now.date()

        result = await db.execute(
            select(Sponsor)
            .where(
                Sponsor.is_active.is_(True),
                Sponsor.start_date.is_not(None),
                Sponsor.end_date.is_not(None),
                Sponsor.start_date <= today,
                Sponsor.end_date >= today,
            )
            .order_by(Sponsor.start_date.desc(), Sponsor.id.desc())
            .limit(1)
        )
        sponsor = result.scalar_one_or_none()

        if sponsor is None:
            result = await db.execute(
                select(Sponsor)
                .where(Sponsor.is_active.is_(True))
                .order_by(Sponsor.id.desc())
                .limit(1)
            )
            sponsor = result.scalar_one_or_none()

        if sponsor is None:
            return None
        return SponsorBlock.model_validate(sponsor)


digest_generator = DigestGenerator()
