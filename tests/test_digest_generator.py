"""Tests for digest assembly."""

import random
from datetime import date, datetime, timedelta

import pytest

from helpers import NOW, add_version, make_product, make_subscriber, subscribe
from releasewatch.db.models import Sponsor
from releasewatch.digest import generator as generator_module
from releasewatch.digest.generator import DigestGenerator
from releasewatch.digest.messages import ALL_QUIET_MESSAGES, NO_TRACKING_SUBJECTS


@pytest.mark.asyncio
async def test_update_reported_once_per_version(db_session):
    user = await make_subscriber(db_session)
    product = await make_product(db_session)
    await add_version(db_session, product, "1.0.0", release_date=NOW - timedelta(days=60))
    await add_version(
        db_session,
        product,
        "1.1.0",
        release_date=NOW - timedelta(days=2),
        notes=["New reverb engine"],
        update_type="minor",
    )
    await subscribe(db_session, user, product, last_notified_version="1.0.0")

    payload = await DigestGenerator().build_digest_payload(db_session, user.id, 7, now=NOW)

    assert payload.has_updates
    assert payload.all_quiet_message is None
    assert payload.tracked_count == 1
    [entry] = payload.updates
    assert entry.old_version == "1.0.0"
    assert entry.new_version == "1.1.0"
    assert entry.update_type == "minor"
    assert entry.release_notes == ["New reverb engine"]


@pytest.mark.asyncio
async def test_nothing_reported_when_already_notified(db_session):
    user = await make_subscriber(db_session)
    product = await make_product(db_session)
    await add_version(db_session, product, "1.1.0", release_date=NOW - timedelta(days=2))
    await subscribe(db_session, user, product, last_notified_version="v1.1.0")

    payload = await DigestGenerator(rng=random.Random(1)).build_digest_payload(
        db_session, user.id, 7, now=NOW
    )

    assert payload.updates == []
    assert not payload.has_updates
    assert payload.all_quiet_message in ALL_QUIET_MESSAGES


@pytest.mark.asyncio
async def test_release_outside_window_is_not_reported(db_session):
    user = await make_subscriber(db_session)
    product = await make_product(db_session)
    await add_version(db_session, product, "2.0.0", release_date=NOW - timedelta(days=10))
    await subscribe(db_session, user, product, last_notified_version="1.0.0")

    payload = await DigestGenerator().build_digest_payload(db_session, user.id, 7, now=NOW)
    assert payload.updates == []


@pytest.mark.asyncio
async def test_detected_at_used_when_release_date_missing(db_session):
    user = await make_subscriber(db_session)
    product = await make_product(db_session)
    await add_version(db_session, product, "2.0.0", detected_at=NOW - timedelta(hours=5))
    await subscribe(db_session, user, product)

    payload = await DigestGenerator().build_digest_payload(db_session, user.id, 1, now=NOW)

    [entry] = payload.updates
    assert entry.old_version == "N/A"
    assert entry.update_type == "patch"


@pytest.mark.asyncio
async def test_old_version_falls_back_to_last_notified(db_session):
    user = await make_subscriber(db_session)
    product = await make_product(db_session)
    await add_version(db_session, product, "3.0.0", release_date=NOW - timedelta(days=1))
    await subscribe(db_session, user, product, last_notified_version="2.4.0")

    payload = await DigestGenerator().build_digest_payload(db_session, user.id, 7, now=NOW)
    assert payload.updates[0].old_version == "2.4.0"


@pytest.mark.asyncio
async def test_unverified_versions_never_surface(db_session):
    user = await make_subscriber(db_session)
    product = await make_product(db_session)
    await add_version(db_session, product, "1.0.0", release_date=NOW - timedelta(days=30))
    await add_version(db_session, product, "2.0.0", release_date=NOW - timedelta(days=1), verified=False)
    await subscribe(db_session, user, product, last_notified_version="1.0.0")

    payload = await DigestGenerator().build_digest_payload(db_session, user.id, 7, now=NOW)
    assert payload.updates == []


@pytest.mark.asyncio
async def test_updates_sorted_newest_first_and_truncated(db_session):
    user = await make_subscriber(db_session)
    for i in range(4):
        product = await make_product(db_session, name=f"Tool {i}")
        await add_version(db_session, product, "2.0.0", release_date=NOW - timedelta(days=i + 1))
        await subscribe(db_session, user, product, last_notified_version="1.0.0")

    payload = await DigestGenerator(max_updates=2).build_digest_payload(
        db_session, user.id, 7, now=NOW
    )

    assert [u.name for u in payload.updates] == ["Tool 0", "Tool 1"]
    assert payload.total_updates == 4
    assert payload.has_more is True


@pytest.mark.asyncio
async def test_failing_product_is_skipped(db_session, monkeypatch):
    user = await make_subscriber(db_session)
    good = await make_product(db_session, name="Good Tool")
    bad = await make_product(db_session, name="Bad Tool")
    for product in (good, bad):
        await add_version(db_session, product, "2.0.0", release_date=NOW - timedelta(days=1))
        await subscribe(db_session, user, product, last_notified_version="1.0.0")

    real_resolve = generator_module.resolve_current_version

    def flaky_resolve(records):
        records = list(records)
        if records and records[0].product_id == bad.id:
            raise RuntimeError("corrupt history")
        return real_resolve(records)

    monkeypatch.setattr(generator_module, "resolve_current_version", flaky_resolve)

    payload = await DigestGenerator().build_digest_payload(db_session, user.id, 7, now=NOW)
    assert [u.name for u in payload.updates] == ["Good Tool"]


@pytest.mark.asyncio
async def test_new_products_and_sponsor(db_session):
    user = await make_subscriber(db_session)
    fresh = await make_product(db_session, name="Fresh Synth", created_at=NOW - timedelta(days=2))
    await add_version(db_session, fresh, "0.9.0")
    db_session.add_all(
        [
            Sponsor(name="Always On", cta_url="https://always.example.com", is_active=True),
            Sponsor(
                name="June Promo",
                cta_url="https://june.example.com",
                is_active=True,
                start_date=date(2024, 6, 1),
                end_date=date(2024, 6, 30),
            ),
            Sponsor(name="Inactive", cta_url="https://off.example.com", is_active=False),
        ]
    )
    await db_session.commit()

    payload = await DigestGenerator().build_digest_payload(db_session, user.id, 7, now=NOW)

    [new_product] = payload.new_products
    assert new_product.name == "Fresh Synth"
    assert new_product.initial_version == "0.9.0"
    assert payload.sponsor.name == "June Promo"
    assert payload.sponsor.cta_text == "Learn More"


@pytest.mark.asyncio
async def test_sponsor_falls_back_to_any_active(db_session):
    user = await make_subscriber(db_session)
    db_session.add_all(
        [
            Sponsor(
                name="Expired",
                cta_url="https://old.example.com",
                is_active=True,
                start_date=date(2024, 1, 1),
                end_date=date(2024, 1, 31),
            ),
        ]
    )
    await db_session.commit()

    payload = await DigestGenerator().build_digest_payload(
        db_session, user.id, 7, now=datetime(2024, 6, 12)
    )
    assert payload.sponsor.name == "Expired"


@pytest.mark.asyncio
async def test_queue_json_round_trips_through_payload_model(db_session):
    user = await make_subscriber(db_session)
    product = await make_product(db_session)
    await add_version(db_session, product, "1.1.0", release_date=NOW - timedelta(days=1))
    await subscribe(db_session, user, product, last_notified_version="1.0.0")

    payload = await DigestGenerator().build_digest_payload(
        db_session, user.id, 7, frequency="daily", now=NOW
    )
    data = payload.to_queue_json()

    assert data["has_updates"] is True
    assert data["frequency"] == "daily"
    assert isinstance(data["updates"][0]["release_date"], str)


@pytest.mark.asyncio
async def test_popular_products_ranked_by_trackers(db_session):
    products = [await make_product(db_session, name=f"Tool {i}") for i in range(4)]
    await add_version(db_session, products[1], "1.0.0")
    await add_version(db_session, products[1], "1.2.0", is_current_override=True)
    await add_version(db_session, products[1], "2.0.0")
    users = [await make_subscriber(db_session, email=f"user{i}@example.com") for i in range(3)]
    for user in users:
        await subscribe(db_session, user, products[1])
    await subscribe(db_session, users[0], products[3])
    await subscribe(db_session, users[1], products[3])
    await subscribe(db_session, users[2], products[2])

    popular = await DigestGenerator().load_popular_products(db_session, limit=2)

    assert [(p.name, p.tracker_count) for p in popular] == [("Tool 1", 3), ("Tool 3", 2)]
    # The pinned version wins over the highest one
    assert popular[0].current_version == "1.2.0"
    assert popular[1].current_version == "N/A"


@pytest.mark.asyncio
async def test_reminder_payload_subject_is_picked_per_recipient(db_session):
    db_session.add(
        Sponsor(name="Acme", cta_url="https://acme.example.com", is_active=True)
    )
    await db_session.commit()
    generator = DigestGenerator(rng=random.Random(3))

    base = await generator.build_reminder_payload(db_session, now=NOW)
    first = generator.personalize_reminder(base)
    second = generator.personalize_reminder(base)

    assert base.subject_line is None
    assert base.popular_products == []
    assert base.sponsor.name == "Acme"
    assert first.subject_line in NO_TRACKING_SUBJECTS
    assert second.subject_line in NO_TRACKING_SUBJECTS
    assert first.sponsor == base.sponsor
