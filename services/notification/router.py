"""
services/notification/router.py
In-app notification inbox and the admin-triggered sweep.
Delivery itself lives in services/notification/dispatcher.py.
"""

from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.notification import dispatcher
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import Notification, User
from shared.schemas.schemas import MessageResponse, NotificationResponse, Page, SweepResponse

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=Page)
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's in-app notifications, newest first."""
    conditions = [Notification.user_id == current_user.id]
    if unread_only:
        conditions.append(Notification.is_read == False)  # noqa: E712

    total = await db.scalar(select(func.count(Notification.id)).where(*conditions))
    result = await db.scalars(
        select(Notification)
        .where(*conditions)
        .order_by(Notification.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return Page(
        items=[NotificationResponse.model_validate(n) for n in result.all()],
        total=total or 0,
        page=page,
        page_size=page_size,
    )


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == current_user.id, Notification.is_read == False)  # noqa: E712
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return MessageResponse(message="All notifications marked as read")


@router.get("/unread-count")
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == current_user.id,
            Notification.is_read == False,  # noqa: E712
        )
    )
    return {"unread_count": count or 0}


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Deliver due scheduled notifications now instead of waiting for the beat."""
    result = await dispatcher.sweep(db)
    return SweepResponse(delivered=result.delivered, dropped=result.dropped)


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == current_user.id)
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    if result.rowcount == 0:
        raise HTTPException(status_code=404, detail="Notification not found")
    await db.commit()
    return MessageResponse(message="Marked as read")
