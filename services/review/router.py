"""
services/review/router.py
Rating and review management.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.notification.dispatcher import NotificationEffect, dispatch
from services.provider.router import invalidate_provider_cache
from shared.middleware.auth import require_client
from shared.models.models import (
    Booking,
    BookingStatus,
    NotificationType,
    ProviderProfile,
    Review,
    User,
)
from shared.schemas.schemas import ProviderReviewsResponse, ReviewCreateRequest, ReviewResponse
from shared.utils.errors import Conflict, Forbidden, InvalidTransition, NotFound

router = APIRouter(prefix="/reviews", tags=["Reviews"])


@router.post("", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    data: ReviewCreateRequest,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Submit a review for a completed booking.
    - One review per booking (enforced by DB unique constraint)
    - Booking must be in COMPLETED status
    - Only the client who made the booking can review
    """
    booking = await db.scalar(select(Booking).where(Booking.id == data.booking_id))
    if not booking:
        raise NotFound("Booking not found")
    if booking.client_id != current_user.id:
        raise Forbidden("You can only review your own bookings")
    if booking.status != BookingStatus.COMPLETED:
        raise InvalidTransition("Booking must be completed before reviewing")

    if await db.scalar(select(Review.id).where(Review.booking_id == booking.id)):
        raise Conflict("You have already reviewed this booking")

    review = Review(
        booking_id=booking.id,
        client_id=current_user.id,
        provider_id=booking.provider_id,
        rating=data.rating,
        comment=data.comment,
    )
    db.add(review)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise Conflict("You have already reviewed this booking")
    await db.commit()
    await invalidate_provider_cache(redis, booking.provider_id)

    response = ReviewResponse.model_validate(review).model_copy(
        update={"client_name": current_user.name}
    )
    provider_user_id = await db.scalar(
        select(ProviderProfile.user_id).where(ProviderProfile.id == booking.provider_id)
    )
    await dispatch(db, [
        NotificationEffect(
            user_id=provider_user_id,
            booking_id=booking.id,
            type=NotificationType.REVIEW,
            title="New review",
            message=f"{current_user.name} rated your service {data.rating}/5.",
        )
    ])
    return response


@router.get("/provider/{provider_id}", response_model=ProviderReviewsResponse)
async def get_provider_reviews(
    provider_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: reviews for a provider, newest first, with the rating summary."""
    if not await db.scalar(select(ProviderProfile.id).where(ProviderProfile.id == provider_id)):
        raise HTTPException(status_code=404, detail="Provider not found")

    rating_avg, rating_count = (await db.execute(
        select(func.avg(Review.rating), func.count(Review.id))
        .where(Review.provider_id == provider_id)
    )).one()

    rows = (await db.execute(
        select(Review, User.name)
        .join(User, User.id == Review.client_id)
        .where(Review.provider_id == provider_id)
        .order_by(Review.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )).all()

    return ProviderReviewsResponse(
        items=[
            ReviewResponse.model_validate(review).model_copy(update={"client_name": name})
            for review, name in rows
        ],
        rating_avg=round(float(rating_avg or 0), 2),
        rating_count=rating_count or 0,
    )
