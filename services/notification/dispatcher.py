"""
services/notification/dispatcher.py
Notification effects and their delivery.

Core services never write notifications themselves: they return effects
(NotificationEffect / ScheduleEffect) alongside their state change. The
caller commits the state change first and then hands the effects to
dispatch(), so a failing notification can never undo a booking transition.

Scheduled notifications (booking reminders) are rows in
scheduled_notifications keyed by an idempotency key and delivered by
sweep(), which the Celery beat runs every minute.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Union

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import (
    Booking,
    BookingStatus,
    Notification,
    NotificationType,
    ScheduledNotification,
    ScheduleStatus,
)

logger = logging.getLogger(__name__)


# ── Effects ───────────────────────────────────────────────────

@dataclass(frozen=True)
class NotificationEffect:
    """Deliver an in-app notification now."""
    user_id: uuid.UUID
    title: str
    message: str
    type: NotificationType = NotificationType.BOOKING
    booking_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class ScheduleEffect:
    """Deliver an in-app notification once due_at has passed."""
    idempotency_key: str
    user_id: uuid.UUID
    title: str
    message: str
    due_at: datetime
    type: NotificationType = NotificationType.REMINDER
    booking_id: Optional[uuid.UUID] = None


Effect = Union[NotificationEffect, ScheduleEffect]


@dataclass
class SweepResult:
    delivered: int = 0
    dropped: int = 0


# ── Immediate Delivery ────────────────────────────────────────

async def emit(
    db: AsyncSession,
    user_id: uuid.UUID,
    title: str,
    message: str,
    type: NotificationType,
    booking_id: Optional[uuid.UUID] = None,
) -> Notification:
    """Append an unread notification for user_id."""
    notification = Notification(
        user_id=user_id,
        booking_id=booking_id,
        type=type,
        title=title,
        message=message,
        is_read=False,
    )
    db.add(notification)
    await db.flush()
    return notification


async def schedule(db: AsyncSession, effect: ScheduleEffect) -> Optional[ScheduledNotification]:
    """Register a future notification. Re-scheduling the same key is a no-op."""
    existing = await db.scalar(
        select(ScheduledNotification.id).where(
            ScheduledNotification.idempotency_key == effect.idempotency_key
        )
    )
    if existing:
        return None

    row = ScheduledNotification(
        idempotency_key=effect.idempotency_key,
        user_id=effect.user_id,
        booking_id=effect.booking_id,
        type=effect.type,
        title=effect.title,
        message=effect.message,
        due_at=effect.due_at,
        status=ScheduleStatus.PENDING,
    )
    db.add(row)
    await db.flush()
    return row


async def dispatch(db: AsyncSession, effects: Iterable[Effect]) -> int:
    """
    Apply effects one by one, each in its own commit.
    Must be called after the triggering change has been committed.
    A failure is logged and rolled back; the remaining effects still run.
    Returns the number of effects applied.
    """
    applied = 0
    for effect in effects:
        try:
            if isinstance(effect, ScheduleEffect):
                await schedule(db, effect)
            else:
                await emit(
                    db,
                    user_id=effect.user_id,
                    title=effect.title,
                    message=effect.message,
                    type=effect.type,
                    booking_id=effect.booking_id,
                )
            await db.commit()
            applied += 1
        except Exception:
            logger.exception(
                "Notification dispatch failed (user=%s, title=%r)", effect.user_id, effect.title
            )
            await db.rollback()
    return applied


# ── Scheduled Sweep ───────────────────────────────────────────

def _claimable(now: datetime):
    stale_before = now - timedelta(seconds=settings.NOTIFICATION_CLAIM_TIMEOUT_SECONDS)
    return or_(
        ScheduledNotification.status == ScheduleStatus.PENDING,
        and_(
            ScheduledNotification.status == ScheduleStatus.PROCESSING,
            ScheduledNotification.claimed_at < stale_before,
        ),
    )


async def _claim(db: AsyncSession, scheduled_id: uuid.UUID, now: datetime) -> bool:
    """
    Atomically move one row to 'processing'. Only one concurrent sweep can
    match the WHERE clause, so only one gets rowcount == 1.
    """
    result = await db.execute(
        update(ScheduledNotification)
        .where(ScheduledNotification.id == scheduled_id, _claimable(now))
        .values(
            status=ScheduleStatus.PROCESSING,
            claimed_at=now,
            attempts=ScheduledNotification.attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _deliver(db: AsyncSession, scheduled_id: uuid.UUID, now: datetime) -> bool:
    """Emit a claimed row. Returns False when the row was dropped instead."""
    row = await db.scalar(
        select(ScheduledNotification)
        .where(ScheduledNotification.id == scheduled_id)
        .execution_options(populate_existing=True)
    )

    if row.booking_id is not None:
        booking_status = await db.scalar(
            select(Booking.status).where(Booking.id == row.booking_id)
        )
        if booking_status != BookingStatus.ACCEPTED:
            row.status = ScheduleStatus.CANCELLED
            return False

    notification = await emit(
        db,
        user_id=row.user_id,
        title=row.title,
        message=row.message,
        type=row.type,
        booking_id=row.booking_id,
    )
    row.status = ScheduleStatus.SENT
    row.sent_at = now
    row.notification_id = notification.id
    return True


async def sweep(
    db: AsyncSession,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> SweepResult:
    """
    Deliver every scheduled notification that is due.

    Safe to run concurrently with itself: rows are claimed one at a time with
    a conditional UPDATE, and the notification insert and the 'sent' mark are
    committed together. Safe to skip: due rows stay pending until a sweep
    processes them. A row left in 'processing' by a crashed sweep becomes
    claimable again after NOTIFICATION_CLAIM_TIMEOUT_SECONDS.
    """
    now = now or datetime.now(timezone.utc)
    result = SweepResult()

    due_ids = (
        await db.scalars(
            select(ScheduledNotification.id)
            .where(ScheduledNotification.due_at <= now, _claimable(now))
            .order_by(ScheduledNotification.due_at.asc())
            .limit(batch_size or settings.NOTIFICATION_SWEEP_BATCH_SIZE)
        )
    ).all()

    for scheduled_id in due_ids:
        if not await _claim(db, scheduled_id, now):
            continue
        try:
            if await _deliver(db, scheduled_id, now):
                result.delivered += 1
            else:
                result.dropped += 1
            await db.commit()
        except Exception:
            logger.exception("Scheduled notification %s failed; will retry", scheduled_id)
            await db.rollback()

    if due_ids:
        logger.info(
            "Notification sweep: %d due, %d delivered, %d dropped",
            len(due_ids), result.delivered, result.dropped,
        )
    return result
