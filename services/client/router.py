"""
services/client/router.py
Client profile management and avatar upload.
"""

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import require_client
from shared.models.models import User
from shared.schemas.schemas import MessageResponse, UserResponse, UserUpdateRequest
from shared.utils import storage
from shared.utils.errors import Conflict

router = APIRouter(prefix="/clients", tags=["Clients"])


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(require_client)):
    """Return the currently authenticated client's profile."""
    return UserResponse.model_validate(current_user)


@router.put("/me", response_model=UserResponse)
async def update_me(
    data: UserUpdateRequest,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    """
    Update profile fields (name, email, phone).
    Only non-None fields in the request body are updated.
    """
    updates = data.model_dump(exclude_none=True)
    if not updates:
        return UserResponse.model_validate(current_user)

    if "email" in updates:
        updates["email"] = updates["email"].lower()
        taken = await db.scalar(
            select(User.id).where(User.email == updates["email"], User.id != current_user.id)
        )
        if taken:
            raise Conflict("Email already in use")

    for field, value in updates.items():
        setattr(current_user, field, value)

    await db.commit()
    return UserResponse.model_validate(current_user)


# ── Avatar ────────────────────────────────────────────────────

@router.post("/me/avatar", response_model=UserResponse)
async def upload_avatar(
    file: UploadFile = File(...),
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    store: storage.LocalFileStorage = Depends(storage.get_storage),
):
    """Replace the avatar. The previous file is removed from disk."""
    previous = current_user.avatar_url
    current_user.avatar_url = await store.store(file, storage.AVATAR)
    await db.commit()
    if previous:
        await store.delete(previous)
    return UserResponse.model_validate(current_user)


@router.delete("/me/avatar", response_model=MessageResponse)
async def delete_avatar(
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    store: storage.LocalFileStorage = Depends(storage.get_storage),
):
    if not current_user.avatar_url:
        raise HTTPException(status_code=404, detail="No avatar to delete")
    previous = current_user.avatar_url
    current_user.avatar_url = None
    await db.commit()
    await store.delete(previous)
    return MessageResponse(message="Avatar deleted")
