"""
services/booking/router.py
Booking lifecycle endpoints. State changes go through services/booking/engine.py;
notification effects are dispatched only after the transition is committed.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking import engine
from services.notification.dispatcher import dispatch
from services.wallet.ledger import to_money
from shared.middleware.auth import get_current_user, require_client, require_provider
from shared.models.models import (
    Booking,
    BookingStatus,
    ProviderProfile,
    Service,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    BookingCancelRequest,
    BookingCreateRequest,
    BookingResponse,
    BookingStatsResponse,
)
from shared.utils.errors import ValidationError

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

async def enrich_bookings(db: AsyncSession, bookings: list[Booking]) -> list[BookingResponse]:
    """Attach service title and participant names."""
    if not bookings:
        return []
    service_ids = {b.service_id for b in bookings}
    user_ids = {b.client_id for b in bookings}
    provider_ids = {b.provider_id for b in bookings}

    titles = dict((await db.execute(
        select(Service.id, Service.title).where(Service.id.in_(service_ids))
    )).all())
    provider_names = dict((await db.execute(
        select(ProviderProfile.id, User.name)
        .join(User, User.id == ProviderProfile.user_id)
        .where(ProviderProfile.id.in_(provider_ids))
    )).all())
    client_names = dict((await db.execute(
        select(User.id, User.name).where(User.id.in_(user_ids))
    )).all())

    return [
        BookingResponse.model_validate(b).model_copy(update={
            "service_title": titles.get(b.service_id),
            "client_name": client_names.get(b.client_id),
            "provider_name": provider_names.get(b.provider_id),
        })
        for b in bookings
    ]


async def _respond(db: AsyncSession, result: engine.TransitionResult) -> BookingResponse:
    """Commit the transition, build the response, then dispatch its effects."""
    await db.commit()
    (response,) = await enrich_bookings(db, [result.booking])
    await dispatch(db, result.effects)
    return response


async def _provider_id_for(db: AsyncSession, user: User) -> Optional[UUID]:
    return await db.scalar(select(ProviderProfile.id).where(ProviderProfile.user_id == user.id))


def _status_filter(value: Optional[str]) -> Optional[BookingStatus]:
    if not value:
        return None
    try:
        return BookingStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid status: {value}")


# ── Create ────────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    """Book a service slot. The provider is notified."""
    result = await engine.create_booking(
        db,
        client=current_user,
        service_id=data.service_id,
        booking_date=data.date,
        booking_time=data.time,
        notes=data.notes,
    )
    return await _respond(db, result)


# ── Read Endpoints ────────────────────────────────────────────

@router.get("", response_model=list[BookingResponse])
async def list_my_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Clients see their bookings, providers the bookings they received, admins all."""
    query = select(Booking)
    if current_user.role == UserRole.PROVIDER:
        provider_id = await _provider_id_for(db, current_user)
        if not provider_id:
            return []
        query = query.where(Booking.provider_id == provider_id)
    elif current_user.role == UserRole.CLIENT:
        query = query.where(Booking.client_id == current_user.id)

    wanted = _status_filter(status_filter)
    if wanted:
        query = query.where(Booking.status == wanted)

    query = (
        query.order_by(Booking.date.desc(), Booking.time.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    bookings = list((await db.scalars(query)).all())
    return await enrich_bookings(db, bookings)


@router.get("/stats", response_model=BookingStatsResponse)
async def booking_stats(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Counts per status. Providers also get earnings from completed bookings."""
    query = select(Booking.status, func.count(Booking.id), func.sum(Booking.total_price))
    if current_user.role == UserRole.PROVIDER:
        provider_id = await _provider_id_for(db, current_user)
        query = query.where(Booking.provider_id == provider_id)
    elif current_user.role == UserRole.CLIENT:
        query = query.where(Booking.client_id == current_user.id)

    rows = (await db.execute(query.group_by(Booking.status))).all()
    counts = {s.value: 0 for s in BookingStatus}
    completed_total = None
    for booking_status, count, amount in rows:
        counts[BookingStatus(booking_status).value] = count
        if booking_status == BookingStatus.COMPLETED:
            completed_total = amount

    return BookingStatsResponse(
        total=sum(counts.values()),
        **counts,
        total_earnings=(
            to_money(completed_total or 0) if current_user.role == UserRole.PROVIDER else None
        ),
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Booking details, visible to its client, its provider and admins."""
    booking = await db.scalar(select(Booking).where(Booking.id == booking_id))
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")

    if current_user.role != UserRole.ADMIN:
        is_client = booking.client_id == current_user.id
        is_provider = booking.provider_id == await _provider_id_for(db, current_user)
        if not (is_client or is_provider):
            raise HTTPException(status_code=403, detail="Not authorized to view this booking")

    (response,) = await enrich_bookings(db, [booking])
    return response


# ── Provider Transitions ──────────────────────────────────────

@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: UUID,
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """pending → accepted. Notifies the client and schedules reminders."""
    result = await engine.accept_booking(db, booking_id, current_user.id)
    return await _respond(db, result)


@router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: UUID,
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """pending → cancelled, annotated as a provider rejection."""
    result = await engine.reject_booking(db, booking_id, current_user.id)
    return await _respond(db, result)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """accepted → completed. Credits the provider's wallet once."""
    result = await engine.complete_booking(db, booking_id, current_user.id)
    return await _respond(db, result)


# ── Client Transitions ────────────────────────────────────────

@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: Optional[BookingCancelRequest] = Body(None),
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    """Client cancels a pending or accepted booking. The provider is notified."""
    result = await engine.cancel_booking(
        db, booking_id, current_user.id, reason=data.reason if data else None
    )
    return await _respond(db, result)
