"""
tests/test_notifications.py
In-app notifications: inbox listing, read state, effect dispatch and the
scheduled-notification sweep.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification import dispatcher
from services.notification.dispatcher import NotificationEffect, ScheduleEffect
from shared.models.models import (
    Booking,
    BookingStatus,
    Notification,
    NotificationType,
    ScheduledNotification,
    ScheduleStatus,
    Service,
    User,
)
from tasks.notification_tasks import sweep_once
from tests.conftest import auth_headers


def _notification(user: User, title: str = "Hello", is_read: bool = False) -> Notification:
    return Notification(
        user_id=user.id,
        type=NotificationType.BOOKING,
        title=title,
        message=f"{title} body",
        is_read=is_read,
    )


async def _accepted_booking(db: AsyncSession, client_user: User, service: Service) -> Booking:
    booking = Booking(
        client_id=client_user.id,
        service_id=service.id,
        provider_id=service.provider_id,
        date=(datetime.now(timezone.utc) + timedelta(days=2)).date(),
        time=datetime.strptime("10:00", "%H:%M").time(),
        total_price=service.price,
        status=BookingStatus.ACCEPTED,
    )
    db.add(booking)
    await db.commit()
    return booking


def _reminder(user_id, booking_id, due_at, key="reminder-1") -> ScheduleEffect:
    return ScheduleEffect(
        idempotency_key=key,
        user_id=user_id,
        booking_id=booking_id,
        title="Upcoming booking",
        message="Reminder",
        due_at=due_at,
    )


# ── Inbox ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_get_notifications_empty(client: AsyncClient, client_user: User):
    """User with no notifications gets empty list."""
    response = await client.get("/notifications", headers=auth_headers(client_user))
    assert response.status_code == 200
    data = response.json()
    assert data["items"] == []
    assert data["total"] == 0


@pytest.mark.asyncio
async def test_get_notifications_returns_own(
    client: AsyncClient, client_user: User, other_client: User, db: AsyncSession
):
    """User sees their own notifications only."""
    mine = _notification(client_user, "Mine")
    db.add_all([mine, _notification(other_client, "Theirs")])
    await db.commit()

    response = await client.get("/notifications", headers=auth_headers(client_user))
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["id"] == str(mine.id)


@pytest.mark.asyncio
async def test_unread_only_filter_and_count(
    client: AsyncClient, client_user: User, db: AsyncSession
):
    db.add_all([
        _notification(client_user, "One"),
        _notification(client_user, "Two"),
        _notification(client_user, "Old", is_read=True),
    ])
    await db.commit()
    headers = auth_headers(client_user)

    unread = await client.get("/notifications", headers=headers, params={"unread_only": True})
    assert unread.json()["total"] == 2

    count = await client.get("/notifications/unread-count", headers=headers)
    assert count.json()["unread_count"] == 2


@pytest.mark.asyncio
async def test_mark_single_notification_read(
    client: AsyncClient, client_user: User, db: AsyncSession
):
    notif = _notification(client_user)
    db.add(notif)
    await db.commit()

    response = await client.post(
        f"/notifications/{notif.id}/read", headers=auth_headers(client_user)
    )
    assert response.status_code == 200

    await db.refresh(notif)
    assert notif.is_read is True
    assert notif.read_at is not None


@pytest.mark.asyncio
async def test_cannot_mark_someone_elses_notification(
    client: AsyncClient, client_user: User, other_client: User, db: AsyncSession
):
    notif = _notification(other_client)
    db.add(notif)
    await db.commit()

    response = await client.post(
        f"/notifications/{notif.id}/read", headers=auth_headers(client_user)
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_mark_all_read(client: AsyncClient, client_user: User, db: AsyncSession):
    db.add_all([_notification(client_user, str(i)) for i in range(3)])
    await db.commit()
    headers = auth_headers(client_user)

    response = await client.post("/notifications/read-all", headers=headers)
    assert response.status_code == 200
    count = await client.get("/notifications/unread-count", headers=headers)
    assert count.json()["unread_count"] == 0


# ── Dispatch ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dispatch_failure_does_not_stop_other_effects(
    db: AsyncSession, client_user: User, monkeypatch
):
    """A failing effect is logged and skipped; the committed state is untouched."""
    original_emit = dispatcher.emit

    async def flaky_emit(db, user_id, title, message, type, booking_id=None):
        if title == "boom":
            raise RuntimeError("notification store unavailable")
        return await original_emit(db, user_id, title, message, type, booking_id)

    # The rollback after a failure expires loaded instances
    user_id = client_user.id
    monkeypatch.setattr(dispatcher, "emit", flaky_emit)
    applied = await dispatcher.dispatch(db, [
        NotificationEffect(user_id=user_id, title="boom", message="x"),
        NotificationEffect(user_id=user_id, title="ok", message="y"),
    ])

    assert applied == 1
    titles = (await db.scalars(
        select(Notification.title).where(Notification.user_id == user_id)
    )).all()
    assert titles == ["ok"]


@pytest.mark.asyncio
async def test_booking_transition_survives_notification_failure(
    client: AsyncClient,
    client_user: User,
    provider_user: User,
    service: Service,
    db: AsyncSession,
    monkeypatch,
):
    async def broken_emit(*args, **kwargs):
        raise RuntimeError("notification store unavailable")

    monkeypatch.setattr(dispatcher, "emit", broken_emit)
    response = await client.post(
        "/bookings",
        headers=auth_headers(client_user),
        json={
            "service_id": str(service.id),
            "date": (datetime.now(timezone.utc) + timedelta(days=3)).date().isoformat(),
            "time": "10:00",
        },
    )
    assert response.status_code == 201

    booking = await db.scalar(select(Booking).where(Booking.id == uuid.UUID(response.json()["id"])))
    assert booking.status == BookingStatus.PENDING
    assert await db.scalar(select(func.count(Notification.id))) == 0


@pytest.mark.asyncio
async def test_scheduling_same_key_twice_is_noop(
    db: AsyncSession, client_user: User, service: Service
):
    booking = await _accepted_booking(db, client_user, service)
    due = datetime.now(timezone.utc) + timedelta(hours=1)
    await dispatcher.dispatch(db, [_reminder(client_user.id, booking.id, due)])
    await dispatcher.dispatch(db, [_reminder(client_user.id, booking.id, due)])

    count = await db.scalar(select(func.count(ScheduledNotification.id)))
    assert count == 1


# ── Sweep ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sweep_delivers_due_reminders_once(
    db: AsyncSession, client_user: User, service: Service
):
    booking = await _accepted_booking(db, client_user, service)
    now = datetime.now(timezone.utc)
    await dispatcher.dispatch(db, [
        _reminder(client_user.id, booking.id, now - timedelta(minutes=1), key="due"),
        _reminder(client_user.id, booking.id, now + timedelta(hours=5), key="later"),
    ])

    first = await dispatcher.sweep(db, now=now)
    second = await dispatcher.sweep(db, now=now)

    assert (first.delivered, first.dropped) == (1, 0)
    assert (second.delivered, second.dropped) == (0, 0)
    delivered = (await db.scalars(
        select(Notification).where(Notification.user_id == client_user.id)
    )).all()
    assert len(delivered) == 1
    assert delivered[0].type == NotificationType.REMINDER

    row = await db.scalar(
        select(ScheduledNotification)
        .where(ScheduledNotification.idempotency_key == "due")
        .execution_options(populate_existing=True)
    )
    assert row.status == ScheduleStatus.SENT
    assert row.notification_id == delivered[0].id


@pytest.mark.asyncio
async def test_overlapping_sweeps_deliver_each_reminder_once(
    db: AsyncSession, session_factory, client_user: User, service: Service
):
    booking = await _accepted_booking(db, client_user, service)
    now = datetime.now(timezone.utc)
    await dispatcher.dispatch(db, [
        _reminder(client_user.id, booking.id, now - timedelta(minutes=i + 1), key=f"due-{i}")
        for i in range(5)
    ])

    async def run() -> int:
        async with session_factory() as session:
            return (await dispatcher.sweep(session, now=now)).delivered

    delivered = await asyncio.gather(run(), run(), run())

    assert sum(delivered) == 5
    assert await db.scalar(select(func.count(Notification.id))) == 5
    statuses = (await db.scalars(select(ScheduledNotification.status))).all()
    assert set(statuses) == {ScheduleStatus.SENT}


@pytest.mark.asyncio
async def test_sweep_drops_reminder_for_cancelled_booking(
    db: AsyncSession, client_user: User, service: Service
):
    booking = await _accepted_booking(db, client_user, service)
    now = datetime.now(timezone.utc)
    await dispatcher.dispatch(db, [_reminder(client_user.id, booking.id, now - timedelta(minutes=1))])

    booking.status = BookingStatus.CANCELLED
    await db.commit()

    result = await dispatcher.sweep(db, now=now)
    assert (result.delivered, result.dropped) == (0, 1)
    assert await db.scalar(select(func.count(Notification.id))) == 0


@pytest.mark.asyncio
async def test_missed_sweeps_catch_up(db: AsyncSession, client_user: User, service: Service):
    """Rows that became due while no sweep ran are all delivered by the next one."""
    booking = await _accepted_booking(db, client_user, service)
    now = datetime.now(timezone.utc)
    await dispatcher.dispatch(db, [
        _reminder(client_user.id, booking.id, now - timedelta(hours=3), key="a"),
        _reminder(client_user.id, booking.id, now - timedelta(hours=2), key="b"),
    ])

    result = await dispatcher.sweep(db, now=now)
    assert result.delivered == 2


@pytest.mark.asyncio
async def test_sweep_endpoint_is_admin_only(
    client: AsyncClient, client_user: User, admin_user: User
):
    assert (await client.post("/notifications/sweep", headers=auth_headers(client_user))).status_code == 403

    response = await client.post("/notifications/sweep", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json() == {"delivered": 0, "dropped": 0}


@pytest.mark.asyncio
async def test_beat_task_sweeps_with_its_own_engine(
    db: AsyncSession, client_user: User, service: Service
):
    booking = await _accepted_booking(db, client_user, service)
    due = datetime.now(timezone.utc) - timedelta(minutes=1)
    await dispatcher.dispatch(db, [_reminder(client_user.id, booking.id, due)])

    assert await sweep_once() == {"delivered": 1, "dropped": 0}
    assert await sweep_once() == {"delivered": 0, "dropped": 0}
    assert await db.scalar(select(func.count(Notification.id))) == 1
