"""
services/payment/router.py
Payment records for bookings. The commission split uses the same rounding
as the wallet ledger; the rate captured here is the one the provider is
credited with when the booking completes.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.notification.dispatcher import NotificationEffect, dispatch
from services.wallet.ledger import split_commission, to_money
from shared.middleware.auth import get_current_user, require_client
from shared.models.models import (
    Booking,
    BookingStatus,
    NotificationType,
    Payment,
    PaymentStatus,
    ProviderProfile,
    User,
    UserRole,
)
from shared.schemas.schemas import PaymentCreateRequest, PaymentResponse
from shared.utils.errors import Conflict, Forbidden, InvalidTransition, NotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

PAYABLE_STATUSES = (BookingStatus.ACCEPTED, BookingStatus.COMPLETED)


# ── Record Payment ────────────────────────────────────────────

@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def record_payment(
    data: PaymentCreateRequest,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    """
    Record the outcome of a client's payment for an accepted or completed
    booking. Only one successful payment is allowed per booking.
    """
    booking = await db.scalar(select(Booking).where(Booking.id == data.booking_id))
    if not booking:
        raise NotFound("Booking not found")
    if booking.client_id != current_user.id:
        raise Forbidden("You can only pay for your own bookings")
    if booking.status not in PAYABLE_STATUSES:
        raise InvalidTransition(
            f"Cannot pay for a booking in '{booking.status.value}' state",
            {"booking_id": str(booking.id), "status": booking.status.value},
        )

    paid = await db.scalar(
        select(Payment.id).where(
            Payment.booking_id == booking.id,
            Payment.status == PaymentStatus.SUCCESS,
        )
    )
    if paid:
        raise Conflict("This booking has already been paid")

    rate = to_money(settings.PLATFORM_COMMISSION_PERCENT)
    commission, provider_amount = split_commission(booking.total_price, rate)
    succeeded = data.status == PaymentStatus.SUCCESS.value

    payment = Payment(
        booking_id=booking.id,
        client_id=current_user.id,
        amount=to_money(booking.total_price),
        commission_rate=rate,
        commission_amount=commission,
        provider_amount=provider_amount,
        method=data.method,
        transaction_id=data.transaction_id,
        status=PaymentStatus.SUCCESS if succeeded else PaymentStatus.FAILED,
        paid_at=datetime.now(timezone.utc) if succeeded else None,
    )
    db.add(payment)
    try:
        await db.flush()
    except IntegrityError:
        # Concurrent success for the same booking
        await db.rollback()
        raise Conflict("This booking has already been paid")
    await db.commit()

    logger.info(
        "Payment %s (%s) recorded for booking %s: %s",
        payment.id, payment.status.value, booking.id, payment.amount,
    )
    response = PaymentResponse.model_validate(payment)

    provider_user_id = await db.scalar(
        select(ProviderProfile.user_id).where(ProviderProfile.id == booking.provider_id)
    )
    if succeeded:
        effects = [
            NotificationEffect(
                user_id=provider_user_id,
                booking_id=booking.id,
                type=NotificationType.PAYMENT,
                title="Payment received",
                message=f"{current_user.name} paid {payment.amount} for their booking.",
            )
        ]
    else:
        effects = [
            NotificationEffect(
                user_id=current_user.id,
                booking_id=booking.id,
                type=NotificationType.PAYMENT,
                title="Payment failed",
                message="Your payment could not be completed. Please try again.",
            )
        ]
    await dispatch(db, effects)
    return response


# ── Read Endpoints ────────────────────────────────────────────

@router.get("", response_model=list[PaymentResponse])
async def list_payments(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Clients see what they paid, providers the payments on their bookings."""
    query = select(Payment)
    if current_user.role == UserRole.PROVIDER:
        query = (
            query.join(Booking, Booking.id == Payment.booking_id)
            .join(ProviderProfile, ProviderProfile.id == Booking.provider_id)
            .where(ProviderProfile.user_id == current_user.id)
        )
    elif current_user.role == UserRole.CLIENT:
        query = query.where(Payment.client_id == current_user.id)

    result = await db.scalars(
        query.order_by(Payment.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [PaymentResponse.model_validate(p) for p in result.all()]
