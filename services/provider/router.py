"""
services/provider/router.py
Provider profile management: profile, location, avatar, verification
documents, and the public provider page.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis, provider_page_key
from shared.middleware.auth import get_provider_profile, require_provider
from shared.models.models import (
    Document,
    DocumentStatus,
    ProviderProfile,
    Review,
    Service,
    ServiceStatus,
    User,
)
from shared.schemas.schemas import (
    DocumentResponse,
    MessageResponse,
    ProviderLocationUpdate,
    ProviderProfileResponse,
    ProviderProfileUpdate,
    ProviderPublicResponse,
    ServiceResponse,
    VerificationStatusResponse,
)
from shared.utils import storage

router = APIRouter(prefix="/providers", tags=["Providers"])

USER_FIELDS = {"name", "phone"}


# ── Helpers ───────────────────────────────────────────────────

async def _enrich_profile(profile: ProviderProfile, db: AsyncSession) -> ProviderProfileResponse:
    """Add name, email and avatar from the joined User."""
    user = await db.scalar(select(User).where(User.id == profile.user_id))
    return ProviderProfileResponse.model_validate(profile).model_copy(update={
        "name": user.name if user else None,
        "email": user.email if user else None,
        "avatar_url": user.avatar_url if user else None,
    })


async def invalidate_provider_cache(redis, provider_id) -> None:
    await RedisCache(redis).delete(provider_page_key(provider_id))


# ── Own Profile ───────────────────────────────────────────────

@router.get("/me", response_model=ProviderProfileResponse)
async def get_my_profile(
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
):
    """Get the authenticated provider's own profile."""
    return await _enrich_profile(profile, db)


@router.put("/me", response_model=ProviderProfileResponse)
async def update_my_profile(
    data: ProviderProfileUpdate,
    current_user: User = Depends(require_provider),
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Update profile fields. name and phone live on the user account."""
    for field, value in data.model_dump(exclude_none=True).items():
        target = current_user if field in USER_FIELDS else profile
        setattr(target, field, value)

    await db.commit()
    await invalidate_provider_cache(redis, profile.id)
    return await _enrich_profile(profile, db)


@router.put("/me/location", response_model=ProviderProfileResponse)
async def update_my_location(
    data: ProviderLocationUpdate,
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    profile.latitude = data.latitude
    profile.longitude = data.longitude
    if data.formatted_address is not None:
        profile.formatted_address = data.formatted_address

    await db.commit()
    await invalidate_provider_cache(redis, profile.id)
    return await _enrich_profile(profile, db)


@router.post("/me/avatar", response_model=ProviderProfileResponse)
async def upload_my_avatar(
    file: UploadFile = File(...),
    current_user: User = Depends(require_provider),
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    store: storage.LocalFileStorage = Depends(storage.get_storage),
):
    previous = current_user.avatar_url
    current_user.avatar_url = await store.store(file, storage.AVATAR)
    await db.commit()
    if previous:
        await store.delete(previous)
    await invalidate_provider_cache(redis, profile.id)
    return await _enrich_profile(profile, db)


@router.delete("/me/avatar", response_model=MessageResponse)
async def delete_my_avatar(
    current_user: User = Depends(require_provider),
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    store: storage.LocalFileStorage = Depends(storage.get_storage),
):
    if not current_user.avatar_url:
        raise HTTPException(status_code=404, detail="No avatar to delete")
    previous = current_user.avatar_url
    current_user.avatar_url = None
    await db.commit()
    await store.delete(previous)
    await invalidate_provider_cache(redis, profile.id)
    return MessageResponse(message="Avatar deleted")


# ── Verification Documents ────────────────────────────────────

@router.post(
    "/me/documents", response_model=DocumentResponse, status_code=status.HTTP_201_CREATED
)
async def upload_document(
    document_type: str = Form(..., alias="type", min_length=2, max_length=50),
    file: UploadFile = File(...),
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
    store: storage.LocalFileStorage = Depends(storage.get_storage),
):
    """Upload a verification document (ID card, diploma, insurance...)."""
    url = await store.store(file, storage.DOCUMENT)
    document = Document(
        provider_id=profile.id,
        type=document_type,
        file_url=url,
        original_name=file.filename,
        status=DocumentStatus.PENDING,
    )
    db.add(document)
    await db.commit()
    return DocumentResponse.model_validate(document)


@router.get("/me/documents", response_model=list[DocumentResponse])
async def list_documents(
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
):
    result = await db.scalars(
        select(Document)
        .where(Document.provider_id == profile.id)
        .order_by(Document.created_at.desc())
    )
    return [DocumentResponse.model_validate(d) for d in result.all()]


@router.delete("/me/documents/{document_id}", response_model=MessageResponse)
async def delete_document(
    document_id: UUID,
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
    store: storage.LocalFileStorage = Depends(storage.get_storage),
):
    document = await db.scalar(
        select(Document).where(Document.id == document_id, Document.provider_id == profile.id)
    )
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")

    file_url = document.file_url
    await db.delete(document)
    await db.commit()
    await store.delete(file_url)
    return MessageResponse(message="Document deleted")


@router.get("/me/verification-status", response_model=VerificationStatusResponse)
async def verification_status(
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
):
    """Verified flag plus document counts per review status."""
    rows = (await db.execute(
        select(Document.status, func.count(Document.id))
        .where(Document.provider_id == profile.id)
        .group_by(Document.status)
    )).all()
    counts = {s.value: 0 for s in DocumentStatus}
    for doc_status, count in rows:
        counts[DocumentStatus(doc_status).value] = count
    return VerificationStatusResponse(
        verified=profile.verified,
        verified_at=profile.verified_at,
        documents=counts,
    )


# ── Public Endpoints ──────────────────────────────────────────

@router.get("/{provider_id}", response_model=ProviderPublicResponse)
async def get_provider(
    provider_id: UUID,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Public provider page with active services and rating summary. Cached in Redis."""
    cache = RedisCache(redis)
    cached = await cache.get(provider_page_key(provider_id))
    if cached:
        return ProviderPublicResponse(**cached)

    profile = await db.scalar(select(ProviderProfile).where(ProviderProfile.id == provider_id))
    if not profile:
        raise HTTPException(status_code=404, detail="Provider not found")

    base = await _enrich_profile(profile, db)
    services = await db.scalars(
        select(Service)
        .where(Service.provider_id == profile.id, Service.status == ServiceStatus.ACTIVE)
        .order_by(Service.created_at.desc())
    )
    rating_avg, rating_count = (await db.execute(
        select(func.avg(Review.rating), func.count(Review.id))
        .where(Review.provider_id == profile.id)
    )).one()

    response = ProviderPublicResponse(
        **base.model_dump(),
        services=[ServiceResponse.model_validate(s) for s in services.all()],
        rating_avg=round(float(rating_avg or 0), 2),
        rating_count=rating_count or 0,
    )
    await cache.set(provider_page_key(provider_id), response.model_dump(mode="json"))
    return response
