"""Tests for the version history store."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from helpers import add_version, make_product
from releasewatch.db.models import VersionRecord
from releasewatch.versions.history import (
    RecordNotFoundError,
    clear_current_override,
    get_current_version,
    load_verified_history,
    record_version,
    set_current_override,
    verify_version,
)


@pytest.mark.asyncio
async def test_record_version_normalizes_and_derives_fields(db_session):
    product = await make_product(db_session)
    await add_version(db_session, product, "1.9.0")

    record = await record_version(
        db_session, product.id, "v2.0.0", release_date=datetime(2024, 6, 10), source="scraper"
    )

    assert record.version == "2.0.0"
    assert record.previous_version == "1.9.0"
    assert record.update_type == "major"
    assert record.verified is False
    assert record.source == "scraper"


@pytest.mark.asyncio
async def test_record_version_merges_duplicates(db_session):
    product = await make_product(db_session)

    first = await record_version(db_session, product.id, "2.1", notes=["Fixed crash"])
    second = await record_version(
        db_session,
        product.id,
        "Version 2.1",
        release_date=datetime(2024, 6, 1),
        notes=["Fixed crash", "Faster startup"],
        verified=True,
        verified_by="ops",
    )

    assert second.id == first.id
    assert second.notes == ["Fixed crash", "Faster startup"]
    assert second.release_date == datetime(2024, 6, 1)
    assert second.verified is True

    result = await db_session.execute(
        select(VersionRecord).where(VersionRecord.product_id == product.id)
    )
    assert len(result.scalars().all()) == 1


@pytest.mark.asyncio
async def test_merge_never_unverifies(db_session):
    product = await make_product(db_session)
    await record_version(db_session, product.id, "3.0", verified=True, verified_by="ops")

    merged = await record_version(db_session, product.id, "3.0", verified=False)
    assert merged.verified is True
    assert merged.verified_by == "ops"


@pytest.mark.asyncio
async def test_record_version_filters_release_channel(db_session):
    product = await make_product(db_session, name="Cobra")
    assert await record_version(db_session, product.id, "2.0.0-beta") is None


@pytest.mark.asyncio
async def test_record_version_rejects_empty_and_unknown_product(db_session):
    product = await make_product(db_session)
    with pytest.raises(ValueError):
        await record_version(db_session, product.id, "  ")
    with pytest.raises(RecordNotFoundError):
        await record_version(db_session, 9999, "1.0.0")


@pytest.mark.asyncio
async def test_verify_and_current_version(db_session):
    product = await make_product(db_session)
    draft = await record_version(db_session, product.id, "1.5.0")

    assert await get_current_version(db_session, product.id) is None

    verified = await verify_version(db_session, draft.id, verified_by="ops")
    assert verified.verified is True
    assert verified.verified_by == "ops"
    assert (await get_current_version(db_session, product.id)).version == "1.5.0"


@pytest.mark.asyncio
async def test_verify_unknown_record(db_session):
    with pytest.raises(RecordNotFoundError):
        await verify_version(db_session, 4242)


@pytest.mark.asyncio
async def test_override_pins_one_record_per_product(db_session):
    product = await make_product(db_session)
    old = await add_version(db_session, product, "1.0.0")
    mid = await add_version(db_session, product, "1.1.0", verified=False)
    await add_version(db_session, product, "2.0.0")

    await set_current_override(db_session, old.id, verified_by="ops")
    assert (await get_current_version(db_session, product.id)).version == "1.0.0"

    pinned = await set_current_override(db_session, mid.id, verified_by="ops")
    assert pinned.verified is True
    assert (await get_current_version(db_session, product.id)).version == "1.1.0"

    result = await db_session.execute(
        select(VersionRecord).where(
            VersionRecord.product_id == product.id,
            VersionRecord.is_current_override.is_(True),
        )
    )
    assert [r.id for r in result.scalars().all()] == [mid.id]

    assert await clear_current_override(db_session, product.id) == 1
    assert (await get_current_version(db_session, product.id)).version == "2.0.0"


@pytest.mark.asyncio
async def test_load_verified_history_chunks_and_groups(db_session):
    products = [await make_product(db_session, name=f"Tool {i}") for i in range(5)]
    for product in products:
        await add_version(db_session, product, "1.0.0")
        await add_version(db_session, product, "1.1.0", verified=False)

    history = await load_verified_history(db_session, [p.id for p in products], chunk_size=2)

    assert set(history) == {p.id for p in products}
    assert all(len(records) == 1 for records in history.values())
    assert await load_verified_history(db_session, []) == {}


@pytest.mark.asyncio
async def test_record_version_stores_offset_timestamps_as_utc(db_session, session_factory):
    product = await make_product(db_session)
    eastern = timezone(timedelta(hours=-5))

    inserted = await record_version(
        db_session,
        product.id,
        "3.0.0",
        release_date=datetime(2024, 6, 2, 23, 0, tzinfo=eastern),
        detected_at=datetime(2024, 6, 3, 1, 30, tzinfo=timezone.utc),
        verified=True,
    )
    await record_version(db_session, product.id, "3.1.0")
    await record_version(
        db_session,
        product.id,
        "v3.1.0",
        release_date=datetime(2024, 6, 9, 20, 0, tzinfo=eastern),
    )

    async with session_factory() as fresh:
        result = await fresh.execute(
            select(VersionRecord).where(VersionRecord.product_id == product.id)
        )
        stored = {r.version: r for r in result.scalars().all()}

    assert stored["3.0.0"].id == inserted.id
    assert stored["3.0.0"].release_date == datetime(2024, 6, 3, 4, 0)
    assert stored["3.0.0"].detected_at == datetime(2024, 6, 3, 1, 30)
    assert stored["3.1.0"].release_date == datetime(2024, 6, 10, 1, 0)
