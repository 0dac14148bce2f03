"""
services/booking/engine.py
Booking status transition engine.

    pending  → accepted | cancelled
    accepted → completed | cancelled
    completed, cancelled: terminal

Every operation takes the session explicitly, validates actor and state
before touching anything, and returns the booking together with the
notification effects to dispatch once the caller has committed.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.notification.dispatcher import Effect, NotificationEffect, ScheduleEffect
from services.wallet import ledger
from shared.models.models import (
    Booking,
    BookingAuditLog,
    BookingStatus,
    Payment,
    PaymentStatus,
    ProviderProfile,
    Service,
    ServiceStatus,
    User,
)
from shared.utils.errors import Conflict, Forbidden, InvalidTransition, NotFound, SlotTaken

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.ACCEPTED, BookingStatus.CANCELLED}),
    BookingStatus.ACCEPTED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.ACCEPTED)

REJECTION_NOTE = "Rejected by provider"
DEFAULT_CANCEL_NOTE = "Cancelled by client"


@dataclass
class TransitionResult:
    booking: Booking
    effects: list[Effect] = field(default_factory=list)


# ── Helpers ───────────────────────────────────────────────────

def _describe(booking: Booking) -> str:
    return f"{booking.date:%Y-%m-%d} at {booking.time:%H:%M}"


def _append_note(booking: Booking, note: str) -> None:
    booking.notes = f"{booking.notes}\n{note}" if booking.notes else note


def _check_transition(booking: Booking, target: BookingStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[booking.status]:
        raise InvalidTransition(
            f"Cannot move booking from '{booking.status.value}' to '{target.value}'",
            {"booking_id": str(booking.id), "status": booking.status.value},
        )


def _log_status_change(
    db: AsyncSession,
    booking: Booking,
    from_status: Optional[BookingStatus],
    actor_id: uuid.UUID,
    reason: Optional[str] = None,
) -> None:
    """Append an immutable audit log entry for every status change."""
    db.add(BookingAuditLog(
        booking_id=booking.id,
        from_status=from_status.value if from_status else None,
        to_status=booking.status.value,
        changed_by_id=actor_id,
        reason=reason,
    ))


async def _lock_booking(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    booking = await db.scalar(
        select(Booking).where(Booking.id == booking_id).with_for_update()
    )
    if booking is None:
        raise NotFound("Booking not found")
    return booking


async def _provider_user_id(db: AsyncSession, provider_id: uuid.UUID) -> uuid.UUID:
    return await db.scalar(
        select(ProviderProfile.user_id).where(ProviderProfile.id == provider_id)
    )


async def _service_title(db: AsyncSession, service_id: uuid.UUID) -> str:
    return await db.scalar(select(Service.title).where(Service.id == service_id)) or "service"


async def _load_as_provider(
    db: AsyncSession, booking_id: uuid.UUID, actor_id: uuid.UUID
) -> Booking:
    booking = await _lock_booking(db, booking_id)
    if await _provider_user_id(db, booking.provider_id) != actor_id:
        raise Forbidden("Only the booking's provider can do this")
    return booking


def reminder_effects(booking: Booking, provider_user_id: uuid.UUID, title: str) -> list[Effect]:
    """Reminders for both participants, due BOOKING_REMINDER_LEAD_HOURS before start."""
    now = datetime.now(timezone.utc)
    starts_at = booking.starts_at
    if starts_at <= now:
        return []
    due_at = max(starts_at - timedelta(hours=settings.BOOKING_REMINDER_LEAD_HOURS), now)
    return [
        ScheduleEffect(
            idempotency_key=f"booking-reminder:{booking.id}:{user_id}",
            user_id=user_id,
            booking_id=booking.id,
            title="Upcoming booking",
            message=f"Reminder: '{title}' is scheduled for {_describe(booking)}.",
            due_at=due_at,
        )
        for user_id in (booking.client_id, provider_user_id)
    ]


# ── Operations ────────────────────────────────────────────────

async def create_booking(
    db: AsyncSession,
    client: User,
    service_id: uuid.UUID,
    booking_date: date,
    booking_time: time,
    notes: Optional[str] = None,
) -> TransitionResult:
    """
    Create a pending booking at the service's current price.
    Must be the first write of the session: a lost race on the slot index
    rolls the session back.
    """
    service = await db.scalar(select(Service).where(Service.id == service_id))
    if service is None or service.status != ServiceStatus.ACTIVE:
        raise NotFound("Service not found or not available")

    provider = await db.scalar(
        select(ProviderProfile).where(ProviderProfile.id == service.provider_id)
    )
    if provider is None:
        raise NotFound("Service not found or not available")
    if provider.user_id == client.id:
        raise Conflict("You cannot book your own service")

    taken = await db.scalar(
        select(Booking.id).where(
            Booking.provider_id == provider.id,
            Booking.date == booking_date,
            Booking.time == booking_time,
            Booking.status.in_(ACTIVE_STATUSES),
        )
    )
    if taken:
        raise SlotTaken("This time slot is no longer available")

    booking = Booking(
        client_id=client.id,
        service_id=service.id,
        provider_id=provider.id,
        date=booking_date,
        time=booking_time,
        total_price=service.price,
        notes=notes,
        status=BookingStatus.PENDING,
    )
    db.add(booking)
    try:
        await db.flush()
    except IntegrityError:
        # Concurrent request won the slot between the check and the insert
        await db.rollback()
        raise SlotTaken("This time slot is no longer available")

    _log_status_change(db, booking, None, client.id)
    await db.flush()

    logger.info("Booking %s created for service %s by %s", booking.id, service.id, client.id)
    return TransitionResult(booking, [
        NotificationEffect(
            user_id=provider.user_id,
            booking_id=booking.id,
            title="New booking",
            message=f"{client.name} booked '{service.title}' for {_describe(booking)}.",
        )
    ])


async def accept_booking(
    db: AsyncSession, booking_id: uuid.UUID, actor_id: uuid.UUID
) -> TransitionResult:
    booking = await _load_as_provider(db, booking_id, actor_id)
    _check_transition(booking, BookingStatus.ACCEPTED)

    previous = booking.status
    booking.status = BookingStatus.ACCEPTED
    booking.accepted_at = datetime.now(timezone.utc)
    _log_status_change(db, booking, previous, actor_id)
    await db.flush()

    title = await _service_title(db, booking.service_id)
    effects: list[Effect] = [
        NotificationEffect(
            user_id=booking.client_id,
            booking_id=booking.id,
            title="Booking accepted",
            message=f"Your booking for '{title}' on {_describe(booking)} was accepted.",
        )
    ]
    effects.extend(reminder_effects(booking, actor_id, title))
    return TransitionResult(booking, effects)


async def reject_booking(
    db: AsyncSession, booking_id: uuid.UUID, actor_id: uuid.UUID
) -> TransitionResult:
    booking = await _load_as_provider(db, booking_id, actor_id)
    if booking.status != BookingStatus.PENDING:
        raise InvalidTransition(
            f"Only pending bookings can be rejected (booking is '{booking.status.value}')",
            {"booking_id": str(booking.id), "status": booking.status.value},
        )

    previous = booking.status
    booking.status = BookingStatus.CANCELLED
    booking.cancelled_at = datetime.now(timezone.utc)
    _append_note(booking, REJECTION_NOTE)
    _log_status_change(db, booking, previous, actor_id, REJECTION_NOTE)
    await db.flush()

    title = await _service_title(db, booking.service_id)
    return TransitionResult(booking, [
        NotificationEffect(
            user_id=booking.client_id,
            booking_id=booking.id,
            title="Booking declined",
            message=f"Your booking for '{title}' on {_describe(booking)} was declined.",
        )
    ])


async def cancel_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    actor_id: uuid.UUID,
    reason: Optional[str] = None,
) -> TransitionResult:
    booking = await _lock_booking(db, booking_id)
    if booking.client_id != actor_id:
        raise Forbidden("Only the booking's client can cancel it")
    _check_transition(booking, BookingStatus.CANCELLED)

    note = (reason or "").strip() or DEFAULT_CANCEL_NOTE
    previous = booking.status
    booking.status = BookingStatus.CANCELLED
    booking.cancelled_at = datetime.now(timezone.utc)
    _append_note(booking, note)
    _log_status_change(db, booking, previous, actor_id, note)
    await db.flush()

    provider_user_id = await _provider_user_id(db, booking.provider_id)
    title = await _service_title(db, booking.service_id)
    return TransitionResult(booking, [
        NotificationEffect(
            user_id=provider_user_id,
            booking_id=booking.id,
            title="Booking cancelled",
            message=f"The booking for '{title}' on {_describe(booking)} was cancelled: {note}",
        )
    ])


async def complete_booking(
    db: AsyncSession, booking_id: uuid.UUID, actor_id: uuid.UUID
) -> TransitionResult:
    """Mark an accepted booking completed and credit the provider's wallet."""
    booking = await _load_as_provider(db, booking_id, actor_id)
    _check_transition(booking, BookingStatus.COMPLETED)

    previous = booking.status
    booking.status = BookingStatus.COMPLETED
    booking.completed_at = datetime.now(timezone.utc)
    _log_status_change(db, booking, previous, actor_id)

    await ledger.credit(
        db,
        owner_id=actor_id,
        booking_id=booking.id,
        gross_amount=booking.total_price,
        commission_rate=await commission_rate_for(db, booking.id),
    )
    await db.flush()

    title = await _service_title(db, booking.service_id)
    return TransitionResult(booking, [
        NotificationEffect(
            user_id=booking.client_id,
            booking_id=booking.id,
            title="Service completed",
            message=f"'{title}' on {_describe(booking)} is complete. Leave a review!",
        )
    ])


async def commission_rate_for(db: AsyncSession, booking_id: uuid.UUID) -> Decimal:
    """Rate captured on the booking's successful payment, else the platform rate."""
    rate = await db.scalar(
        select(Payment.commission_rate).where(
            Payment.booking_id == booking_id,
            Payment.status == PaymentStatus.SUCCESS,
        )
    )
    return rate if rate is not None else settings.PLATFORM_COMMISSION_PERCENT
