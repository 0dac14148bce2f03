"""
services/message/router.py
Booking-scoped messaging between the client and the provider of a booking.
"""

from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.notification.dispatcher import NotificationEffect, dispatch
from shared.middleware.auth import get_current_user
from shared.models.models import Booking, Message, NotificationType, ProviderProfile, User
from shared.schemas.schemas import ChatMessageCreate, ChatMessageResponse
from shared.utils.errors import Forbidden, NotFound

router = APIRouter(prefix="/messages", tags=["Messages"])

PREVIEW_LENGTH = 80


async def _participants(db: AsyncSession, booking_id: UUID, user: User) -> tuple[Booking, UUID]:
    """Returns the booking and the other participant's user id."""
    booking = await db.scalar(select(Booking).where(Booking.id == booking_id))
    if not booking:
        raise NotFound("Booking not found")
    provider_user_id = await db.scalar(
        select(ProviderProfile.user_id).where(ProviderProfile.id == booking.provider_id)
    )
    if user.id == booking.client_id:
        return booking, provider_user_id
    if user.id == provider_user_id:
        return booking, booking.client_id
    raise Forbidden("Only the booking's participants can exchange messages")


@router.post("", response_model=ChatMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    data: ChatMessageCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking, recipient_id = await _participants(db, data.booking_id, current_user)
    message = Message(
        booking_id=booking.id,
        sender_id=current_user.id,
        recipient_id=recipient_id,
        body=data.body,
    )
    db.add(message)
    await db.commit()
    response = ChatMessageResponse.model_validate(message)

    preview = data.body if len(data.body) <= PREVIEW_LENGTH else data.body[:PREVIEW_LENGTH] + "…"
    await dispatch(db, [
        NotificationEffect(
            user_id=recipient_id,
            booking_id=booking.id,
            type=NotificationType.MESSAGE,
            title=f"New message from {current_user.name}",
            message=preview,
        )
    ])
    return response


@router.get("/unread-count")
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Message.id)).where(
            Message.recipient_id == current_user.id,
            Message.is_read == False,  # noqa: E712
        )
    )
    return {"unread_count": count or 0}


@router.get("/booking/{booking_id}", response_model=list[ChatMessageResponse])
async def list_booking_messages(
    booking_id: UUID,
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Conversation in chronological order. Marks the caller's received messages read."""
    booking, _ = await _participants(db, booking_id, current_user)

    await db.execute(
        update(Message)
        .where(
            Message.booking_id == booking.id,
            Message.recipient_id == current_user.id,
            Message.is_read == False,  # noqa: E712
        )
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()

    result = await db.scalars(
        select(Message)
        .where(Message.booking_id == booking.id)
        .order_by(Message.created_at.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return [ChatMessageResponse.model_validate(m) for m in result.all()]
