"""Version history store: merges detected versions and applies operator actions."""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from releasewatch.config import settings
from releasewatch.db.models import Product, VersionRecord
from releasewatch.utils.time import as_naive_utc, utcnow
from releasewatch.versions.parser import (
    classify_update_type,
    compare,
    normalize_version,
    should_ignore_version,
)
from releasewatch.versions.resolver import resolve_current_version

logger = logging.getLogger(__name__)


class RecordNotFoundError(LookupError):
    """Raised when a product or version record does not exist."""


def _merge_notes(existing: Optional[list], incoming: Optional[Iterable[str]]) -> Optional[list]:
    if not incoming:
        return existing
    merged = list(existing or [])
    for note in incoming:
        if note and note not in merged:
            merged.append(note)
    return merged


def _nearest_lower_version(records: Iterable[VersionRecord], version: str) -> Optional[str]:
    best = None
    for record in records:
        if compare(record.version, version) >= 0:
            continue
        if best is None or compare(record.version, best) > 0:
            best = record.version
    return best


async def _get_product(db: AsyncSession, product_id: int) -> Product:
    product = await db.get(Product, product_id)
    if product is None:
        raise RecordNotFoundError(f"Product {product_id} not found")
    return product


async def _get_record(db: AsyncSession, record_id: int) -> VersionRecord:
    record = await db.get(VersionRecord, record_id)
    if record is None:
        raise RecordNotFoundError(f"Version record {record_id} not found")
    return record


def _apply_merge(
    record: VersionRecord,
    previous_version: Optional[str],
    release_date: Optional[datetime],
    notes: Optional[List[str]],
    raw_notes: Optional[str],
    update_type: Optional[str],
    verified: bool,
    verified_by: Optional[str],
) -> None:
    """Fill gaps on an existing row; never un-verify it."""
    if record.release_date is None and release_date is not None:
        record.release_date = release_date
    if record.previous_version is None and previous_version:
        record.previous_version = previous_version
    if record.update_type is None and update_type:
        record.update_type = update_type
    if not record.raw_notes and raw_notes:
        record.raw_notes = raw_notes
    record.notes = _merge_notes(record.notes, notes)
    if verified and not record.verified:
        record.verified = True
        record.verified_by = verified_by
        record.verified_at = utcnow()


async def record_version(
    db: AsyncSession,
    product_id: int,
    version: str,
    previous_version: Optional[str] = None,
    release_date: Optional[datetime] = None,
    notes: Optional[List[str]] = None,
    raw_notes: Optional[str] = None,
    update_type: Optional[str] = None,
    source: Optional[str] = None,
    verified: bool = False,
    verified_by: Optional[str] = None,
    detected_at: Optional[datetime] = None,
) -> Optional[VersionRecord]:
    """
    Insert a detected version or merge it into the existing row.

    Drafts from ingestion arrive unverified; operator entries arrive verified.

    Args:
        db: Database session
        product_id: Product the version belongs to
        version: Version string as detected (normalized before storing)
        previous_version: Version this one replaced, if the source says so
        release_date: Vendor release date
        notes: Release note bullet points
        raw_notes: Unstructured release notes
        update_type: major/minor/patch; derived when omitted
        source: Where the version was detected
        verified: Approve immediately
        verified_by: Operator approving the record
        detected_at: Detection time (defaults to now)

    Returns:
        Stored record, or None if the version is filtered out for this product

    Raises:
        RecordNotFoundError: Product does not exist
        ValueError: Version is empty after normalization
    """
    product = await _get_product(db, product_id)

    # Columns hold naive UTC; scrapers and the API hand over offset timestamps
    if release_date is not None:
        release_date = as_naive_utc(release_date)
    if detected_at is not None:
        detected_at = as_naive_utc(detected_at)

    normalized = normalize_version(version, product.name)
    if not normalized:
        raise ValueError(f"Empty version for product {product_id}: {version!r}")

    if should_ignore_version(product.name, normalized):
        logger.info(f"Ignoring version {normalized} for {product.name} (release channel mismatch)")
        return None

    result = await db.execute(
        select(VersionRecord).where(VersionRecord.product_id == product_id)
    )
    existing_records = list(result.scalars().all())
    existing = next((r for r in existing_records if r.version == normalized), None)

    if existing is not None:
        _apply_merge(
            existing, previous_version, release_date, notes, raw_notes,
            update_type, verified, verified_by,
        )
        await db.commit()
        logger.debug(f"Merged version {normalized} into record {existing.id}")
        return existing

    if previous_version is None:
        previous_version = _nearest_lower_version(existing_records, normalized)
    if update_type is None and previous_version:
        update_type = classify_update_type(previous_version, normalized).value

    now = utcnow()
    record = VersionRecord(
        product_id=product_id,
        version=normalized,
        previous_version=previous_version,
        release_date=release_date,
        detected_at=detected_at or now,
        notes=list(notes) if notes else None,
        raw_notes=raw_notes,
        update_type=update_type,
        source=source,
        verified=verified,
        verified_by=verified_by if verified else None,
        verified_at=now if verified else None,
    )
    db.add(record)

    try:
        await db.commit()
    except IntegrityError:
        # Another writer stored the same version first; merge into theirs
        await db.rollback()
        result = await db.execute(
            select(VersionRecord).where(
                VersionRecord.product_id == product_id,
                VersionRecord.version == normalized,
            )
        )
        existing = result.scalar_one()
        _apply_merge(
            existing, previous_version, release_date, notes, raw_notes,
            update_type, verified, verified_by,
        )
        await db.commit()
        return existing

    logger.info(
        f"Recorded version {normalized} for {product.name} "
        f"(verified={verified}, previous={previous_version})"
    )
    return record


async def verify_version(
    db: AsyncSession, record_id: int, verified_by: Optional[str] = None
) -> VersionRecord:
    """Approve a record so it can surface in digests."""
    record = await _get_record(db, record_id)
    if not record.verified:
        record.verified = True
        record.verified_by = verified_by
        record.verified_at = utcnow()
        await db.commit()
        logger.info(f"Verified version record {record_id} ({record.version}) by {verified_by}")
    return record


async def set_current_override(
    db: AsyncSession, record_id: int, verified_by: Optional[str] = None
) -> VersionRecord:
    """
    Pin a record as the product's current version.

    Pinning also verifies the record, and clears the pin on every other
    record of the same product.
    """
    record = await _get_record(db, record_id)

    await db.execute(
        update(VersionRecord)
        .where(
            VersionRecord.product_id == record.product_id,
            VersionRecord.id != record.id,
            VersionRecord.is_current_override.is_(True),
        )
        .values(is_current_override=False)
        .execution_options(synchronize_session="fetch")
    )

    record.is_current_override = True
    if not record.verified:
        record.verified = True
        record.verified_by = verified_by
        record.verified_at = utcnow()

    await db.commit()
    logger.info(f"Pinned version {record.version} as current for product {record.product_id}")
    return record


async def clear_current_override(db: AsyncSession, product_id: int) -> int:
    """
    Remove any pin on the product.

    Returns:
        Number of records unpinned
    """
    result = await db.execute(
        update(VersionRecord)
        .where(
            VersionRecord.product_id == product_id,
            VersionRecord.is_current_override.is_(True),
        )
        .values(is_current_override=False)
        .execution_options(synchronize_session="fetch")
    )
    await db.commit()
    cleared = result.rowcount or 0
    if cleared:
        logger.info(f"Cleared current-version override for product {product_id}")
    return cleared


async def load_verified_history(
    db: AsyncSession,
    product_ids: Iterable[int],
    chunk_size: Optional[int] = None,
) -> Dict[int, List[VersionRecord]]:
    """
    Load verified records for many products, grouped by product.

    Product ids are queried in chunks to keep the IN clause bounded.

    Args:
        db: Database session
        product_ids: Products to load
        chunk_size: Products per query (defaults to config)

    Returns:
        Dict of product_id -> verified records (products with none are absent)
    """
    ids = list(dict.fromkeys(product_ids))
    chunk_size = chunk_size or settings.history_chunk_size
    history: Dict[int, List[VersionRecord]] = defaultdict(list)

    for start in range(0, len(ids), chunk_size):
        chunk = ids[start:start + chunk_size]
        result = await db.execute(
            select(VersionRecord).where(
                VersionRecord.product_id.in_(chunk),
                VersionRecord.verified.is_(True),
            )
        )
        for record in result.scalars().all():
            history[record.product_id].append(record)

    return dict(history)


async def get_current_version(db: AsyncSession, product_id: int) -> Optional[VersionRecord]:
    """Resolve the product's current version from stored verified history."""
    history = await load_verified_history(db, [product_id])
    return resolve_current_version(history.get(product_id, []))
