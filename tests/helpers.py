"""Test doubles and seed helpers shared across test modules."""

import asyncio
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from releasewatch.db.models import BounceRecord, Product, Subscriber, Subscription, VersionRecord
from releasewatch.notify.formatters import RenderedEmail
from releasewatch.notify.transport import EmailValidationError

# Fixed reference time used across tests (a Wednesday, naive UTC)
NOW = datetime(2024, 6, 12, 12, 0, 0)
LONG_AGO = datetime(2023, 1, 1)


class FakeTransport:
    """Records sends instead of calling the provider."""

    def __init__(self, fail_with=None, delay=0.0):
        self.fail_with = fail_with
        self.delay = delay
        self.sent = []

    async def send(self, to, subject, html, text, headers=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"to": to, "subject": subject, "headers": headers})
        return f"msg-{len(self.sent)}"


class FakeRenderer:
    def __init__(self, fail=False):
        self.fail = fail

    def render(self, item):
        if self.fail:
            raise EmailValidationError("Template rendering failed: boom")
        return RenderedEmail(subject="1 update today", html="<p>hi</p>", text="hi")


class FakeLockManager:
    """In-memory stand-in for the Redis dispatch lock."""

    def __init__(self, held=False):
        self.held = held
        self.released = []

    async def acquire_lock(self, run_id, ttl_seconds=None):
        return None if self.held else "token"

    async def release_lock(self, run_id, token):
        self.released.append((run_id, token))
        return True

    async def force_unlock(self):
        was_held, self.held = self.held, False
        return was_held

    async def get_lock_info(self):
        return {"run_id": "other-run", "ttl_seconds": 100} if self.held else None

    async def close(self):
        pass


async def make_product(
    db: AsyncSession,
    name: str = "Cobra Plugin",
    manufacturer: str = "Acme Audio",
    category: str = "Plugins",
    created_at: datetime = LONG_AGO,
) -> Product:
    product = Product(
        name=name,
        manufacturer=manufacturer,
        category=category,
        website=f"https://example.com/{name.lower().replace(' ', '-')}",
        created_at=created_at,
    )
    db.add(product)
    await db.commit()
    return product


async def make_subscriber(
    db: AsyncSession,
    email: str = "sam@example.com",
    frequency: str = "weekly",
    timezone: str = "America/New_York",
    all_quiet_preference: str = "always",
    email_notifications: bool = True,
) -> Subscriber:
    subscriber = Subscriber(
        email=email,
        notification_frequency=frequency,
        timezone=timezone,
        all_quiet_preference=all_quiet_preference,
        email_notifications=email_notifications,
    )
    db.add(subscriber)
    await db.commit()
    return subscriber


async def subscribe(
    db: AsyncSession,
    subscriber: Subscriber,
    product: Product,
    last_notified_version: Optional[str] = None,
) -> Subscription:
    subscription = Subscription(
        user_id=subscriber.id,
        product_id=product.id,
        last_notified_version=last_notified_version,
    )
    db.add(subscription)
    await db.commit()
    return subscription


async def add_version(
    db: AsyncSession,
    product: Product,
    version: str,
    release_date: Optional[datetime] = None,
    verified: bool = True,
    is_current_override: bool = False,
    notes: Optional[List[str]] = None,
    update_type: Optional[str] = None,
    detected_at: datetime = LONG_AGO,
) -> VersionRecord:
    record = VersionRecord(
        product_id=product.id,
        version=version,
        release_date=release_date,
        detected_at=detected_at,
        verified=verified,
        is_current_override=is_current_override,
        notes=notes,
        update_type=update_type,
    )
    db.add(record)
    await db.commit()
    return record


async def add_hard_bounces(db: AsyncSession, subscriber: Subscriber, count: int = 3) -> None:
    db.add_all(
        [
            BounceRecord(user_id=subscriber.id, email=subscriber.email, bounce_type="hard")
            for _ in range(count)
        ]
    )
    await db.commit()
