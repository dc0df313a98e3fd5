"""Tests for bounce suppression and provider events."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from helpers import make_subscriber
from releasewatch.db.models import BounceRecord, NotificationLog, Sponsor, Subscriber
from releasewatch.notify.suppression import (
    handle_provider_event,
    hard_bounce_count,
    is_suppressed,
    record_bounce,
    suppressed_user_ids,
)
from releasewatch.utils.time import utcnow


async def _log(db, user, message_id="msg-1"):
    log = NotificationLog(
        user_id=user.id,
        email=user.email,
        email_type="weekly_digest",
        subject="1 update for your tracked software",
        provider_message_id=message_id,
        status="sent",
    )
    db.add(log)
    await db.commit()
    return log


async def _reload(db, model, id):
    return await db.get(model, id, populate_existing=True)


@pytest.mark.asyncio
async def test_threshold_suppresses_and_disables(db_session):
    user = await make_subscriber(db_session)

    for _ in range(2):
        await record_bounce(db_session, user.id, user.email, "hard", "mailbox full")
    await record_bounce(db_session, user.id, user.email, "soft", "greylisted")
    assert not await is_suppressed(db_session, user.id)
    assert (await _reload(db_session, Subscriber, user.id)).email_notifications is True

    await record_bounce(db_session, user.id, user.email, "hard", "no such user")
    assert await hard_bounce_count(db_session, user.id) == 3
    assert await is_suppressed(db_session, user.id)
    assert (await _reload(db_session, Subscriber, user.id)).email_notifications is False


@pytest.mark.asyncio
async def test_bounces_outside_window_do_not_count(db_session):
    user = await make_subscriber(db_session)
    old = utcnow() - timedelta(days=45)
    db_session.add_all(
        [
            BounceRecord(user_id=user.id, email=user.email, bounce_type="hard", created_at=old)
            for _ in range(3)
        ]
    )
    await db_session.commit()

    assert await hard_bounce_count(db_session, user.id) == 0
    assert not await is_suppressed(db_session, user.id)


@pytest.mark.asyncio
async def test_suppressed_user_ids(db_session):
    noisy = await make_subscriber(db_session, email="noisy@example.com")
    quiet = await make_subscriber(db_session, email="quiet@example.com")
    db_session.add_all(
        [BounceRecord(user_id=noisy.id, email=noisy.email, bounce_type="hard") for _ in range(3)]
        + [BounceRecord(user_id=quiet.id, email=quiet.email, bounce_type="soft") for _ in range(5)]
    )
    await db_session.commit()

    assert await suppressed_user_ids(db_session, [noisy.id, quiet.id]) == {noisy.id}
    assert await suppressed_user_ids(db_session, []) == set()


@pytest.mark.asyncio
async def test_record_bounce_rejects_unknown_type(db_session):
    user = await make_subscriber(db_session)
    with pytest.raises(ValueError):
        await record_bounce(db_session, user.id, user.email, "medium")


@pytest.mark.asyncio
async def test_delivery_events_advance_log(db_session):
    user = await make_subscriber(db_session)
    log = await _log(db_session, user)

    result = await handle_provider_event(
        db_session, {"type": "email.delivered", "data": {"email_id": "msg-1"}}
    )
    assert result["applied"] is True
    assert (await _reload(db_session, NotificationLog, log.id)).status == "delivered"

    await handle_provider_event(db_session, {"type": "email.opened", "data": {"email_id": "msg-1"}})
    log = await _reload(db_session, NotificationLog, log.id)
    assert log.status == "opened"
    assert log.opened_at is not None


@pytest.mark.asyncio
async def test_click_on_sponsor_link_is_counted(db_session):
    user = await make_subscriber(db_session)
    log = await _log(db_session, user)
    sponsor = Sponsor(name="Acme", cta_url="https://acme.example.com/offer", is_active=True)
    db_session.add(sponsor)
    await db_session.commit()

    await handle_provider_event(
        db_session,
        {
            "type": "email.clicked",
            "data": {
                "email_id": "msg-1",
                "click": {"link": "https://acme.example.com/offer?utm_source=digest"},
            },
        },
    )

    assert (await _reload(db_session, NotificationLog, log.id)).clicked_at is not None
    assert (await _reload(db_session, Sponsor, sponsor.id)).click_count == 1


@pytest.mark.asyncio
async def test_bounce_event_records_type(db_session):
    user = await make_subscriber(db_session)
    log = await _log(db_session, user)

    result = await handle_provider_event(
        db_session,
        {
            "type": "email.bounced",
            "data": {
                "email_id": "msg-1",
                "to": [user.email],
                "bounce": {"type": "hard", "message": "Mailbox does not exist"},
            },
        },
    )

    assert result["bounce_type"] == "hard"
    log = await _reload(db_session, NotificationLog, log.id)
    assert log.status == "bounced"
    assert log.bounced_at is not None
    bounce = (await db_session.execute(select(BounceRecord))).scalar_one()
    assert bounce.reason == "Mailbox does not exist"
    assert bounce.provider_message_id == "msg-1"


@pytest.mark.asyncio
async def test_bounce_without_type_defaults_to_soft(db_session):
    user = await make_subscriber(db_session)
    await _log(db_session, user)

    result = await handle_provider_event(
        db_session, {"type": "email.bounced", "data": {"email_id": "msg-1"}}
    )
    assert result["bounce_type"] == "soft"


@pytest.mark.asyncio
async def test_complaint_disables_notifications(db_session):
    user = await make_subscriber(db_session)
    log = await _log(db_session, user)

    result = await handle_provider_event(
        db_session, {"type": "email.complained", "data": {"email_id": "msg-1"}}
    )

    assert result["bounce_type"] == "hard"
    assert (await _reload(db_session, NotificationLog, log.id)).status == "complained"
    assert (await _reload(db_session, Subscriber, user.id)).email_notifications is False
    bounce = (await db_session.execute(select(BounceRecord))).scalar_one()
    assert bounce.reason == "Spam complaint"


@pytest.mark.asyncio
async def test_unknown_message_and_event_types(db_session):
    result = await handle_provider_event(
        db_session, {"type": "email.delivered", "data": {"email_id": "nope"}}
    )
    assert result["applied"] is False

    result = await handle_provider_event(
        db_session, {"type": "email.sent", "data": {"email_id": "nope"}}
    )
    assert result == {"event": "email.sent", "applied": False, "reason": "unhandled event type"}

    with pytest.raises(ValueError):
        await handle_provider_event(db_session, {"type": "email.delivered", "data": {}})
