"""SQLAlchemy database models."""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from releasewatch.utils.sources import first_available
from releasewatch.utils.time import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

QUEUE_STATUSES = ("pending", "processing", "sent", "failed", "cancelled")
TERMINAL_QUEUE_STATUSES = ("sent", "failed", "cancelled")

VERSION_CHECK_URL_SOURCES = (
    ("version_source_url", lambda product: product.version_source_url),
    ("website", lambda product: product.website),
)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Product(Base):
    """Third-party software product being tracked."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    manufacturer: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(128), nullable=False)
    website: Mapped[str] = mapped_column(Text, nullable=False)
    version_source_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version_source_type: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )  # webpage, rss, forum, pdf
    source_config: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    # Relationships
    versions: Mapped[list["VersionRecord"]] = relationship(
        "VersionRecord",
        back_populates="product",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    subscriptions: Mapped[list["Subscription"]] = relationship(
        "Subscription",
        back_populates="product",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def version_check_url(self) -> str:
        """URL the ingestion step checks for new versions."""
        return first_available(self, VERSION_CHECK_URL_SOURCES, default="")


class VersionRecord(Base):
    """One released version of a product."""

    __tablename__ = "version_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    version: Mapped[str] = mapped_column(String(128), nullable=False)
    previous_version: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    release_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    notes: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    raw_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    update_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # scraper, manual, ...

    # Verification
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_current_override: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationships
    product: Mapped["Product"] = relationship("Product", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("product_id", "version", name="uq_version_product_version"),
        CheckConstraint(
            "update_type IS NULL OR update_type IN ('major', 'minor', 'patch')",
            name="ck_version_update_type",
        ),
        Index("ix_version_records_product_verified", "product_id", "verified"),
    )


class Subscriber(Base):
    """A user who can receive digests, with their delivery preferences."""

    __tablename__ = "subscribers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    timezone: Mapped[str] = mapped_column(
        String(64), default="America/New_York", nullable=False
    )
    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notification_frequency: Mapped[str] = mapped_column(
        String(16), default="weekly", nullable=False
    )  # daily, weekly, monthly
    all_quiet_preference: Mapped[str] = mapped_column(
        String(32), default="always", nullable=False
    )  # always, new_products_only
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    # Relationships
    subscriptions: Mapped[list["Subscription"]] = relationship(
        "Subscription",
        back_populates="subscriber",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Subscription(Base):
    """A subscriber tracking a product, with the last version they were told about."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("subscribers.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    last_notified_version: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    # Relationships
    subscriber: Mapped["Subscriber"] = relationship("Subscriber", back_populates="subscriptions")
    product: Mapped["Product"] = relationship("Product", back_populates="subscriptions")

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_subscription_user_product"),
    )


class QueueItem(Base):
    """Durable email job."""

    __tablename__ = "notification_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    email_type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC", nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'sent', 'failed', 'cancelled')",
            name="ck_queue_status",
        ),
        Index("ix_queue_status_scheduled", "status", "scheduled_for"),
    )


class NotificationLog(Base):
    """Immutable record of a sent email; delivery events advance its status."""

    __tablename__ = "notification_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    queue_item_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    email_type: Mapped[str] = mapped_column(String(32), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updates: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True, index=True
    )
    status: Mapped[str] = mapped_column(String(16), default="sent", nullable=False)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    bounced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )


class BounceRecord(Base):
    """Append-only bounce signal from the email provider."""

    __tablename__ = "bounce_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    bounce_type: Mapped[str] = mapped_column(String(8), nullable=False)  # hard, soft
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("bounce_type IN ('hard', 'soft')", name="ck_bounce_type"),
        Index("ix_bounce_user_type_created", "user_id", "bounce_type", "created_at"),
    )


class Sponsor(Base):
    """Sponsor block shown at the bottom of digests."""

    __tablename__ = "sponsors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    tagline: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cta_url: Mapped[str] = mapped_column(Text, nullable=False)
    cta_text: Mapped[str] = mapped_column(String(64), default="Learn More", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    impression_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    click_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
