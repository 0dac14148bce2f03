"""
services/service/router.py
Bookable services: provider CRUD over their own listings and the public
catalogue.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.provider.router import invalidate_provider_cache
from shared.middleware.auth import get_provider_profile
from shared.models.models import (
    Booking,
    Category,
    ProviderProfile,
    Service,
    ServiceStatus,
    User,
)
from shared.schemas.schemas import (
    MessageResponse,
    ServiceCreate,
    ServiceResponse,
    ServiceUpdate,
)
from shared.utils import storage
from shared.utils.errors import NotFound

router = APIRouter(prefix="/services", tags=["Services"])


# ── Helpers ───────────────────────────────────────────────────

async def provider_names(db: AsyncSession, provider_ids: set) -> dict:
    """provider profile id -> display name."""
    if not provider_ids:
        return {}
    rows = await db.execute(
        select(ProviderProfile.id, User.name)
        .join(User, User.id == ProviderProfile.user_id)
        .where(ProviderProfile.id.in_(provider_ids))
    )
    return dict(rows.all())


async def _enrich(db: AsyncSession, services: list[Service]) -> list[ServiceResponse]:
    if not services:
        return []
    categories = dict((await db.execute(
        select(Category.id, Category.name)
        .where(Category.id.in_({s.category_id for s in services}))
    )).all())
    names = await provider_names(db, {s.provider_id for s in services})
    return [
        ServiceResponse.model_validate(s).model_copy(update={
            "category_name": categories.get(s.category_id),
            "provider_name": names.get(s.provider_id),
        })
        for s in services
    ]


async def _ensure_category(db: AsyncSession, category_id: UUID) -> None:
    if not await db.scalar(select(Category.id).where(Category.id == category_id)):
        raise NotFound("Category not found")


async def _get_own_service(
    db: AsyncSession, service_id: UUID, profile: ProviderProfile
) -> Service:
    service = await db.scalar(
        select(Service).where(Service.id == service_id, Service.provider_id == profile.id)
    )
    if not service:
        raise HTTPException(status_code=404, detail="Service not found")
    return service


# ── Public Endpoints ──────────────────────────────────────────

@router.get("", response_model=list[ServiceResponse])
async def list_services(
    category_id: Optional[UUID] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Active services, newest first."""
    query = select(Service).where(Service.status == ServiceStatus.ACTIVE)
    if category_id:
        query = query.where(Service.category_id == category_id)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(or_(Service.title.ilike(pattern), Service.description.ilike(pattern)))

    services = (await db.scalars(
        query.order_by(Service.created_at.desc()).offset(offset).limit(limit)
    )).all()
    return await _enrich(db, list(services))


# ── Provider's Own Services ───────────────────────────────────

@router.get("/mine", response_model=list[ServiceResponse])
async def list_my_services(
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
):
    """All of the provider's services, including inactive ones."""
    services = (await db.scalars(
        select(Service)
        .where(Service.provider_id == profile.id)
        .order_by(Service.created_at.desc())
    )).all()
    return await _enrich(db, list(services))


@router.post("", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
async def create_service(
    data: ServiceCreate,
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    await _ensure_category(db, data.category_id)
    service = Service(
        provider_id=profile.id,
        category_id=data.category_id,
        title=data.title,
        description=data.description,
        price=data.price,
        duration=data.duration,
        status=ServiceStatus.ACTIVE,
    )
    db.add(service)
    await db.commit()
    await invalidate_provider_cache(redis, profile.id)
    (response,) = await _enrich(db, [service])
    return response


@router.put("/{service_id}", response_model=ServiceResponse)
async def update_service(
    service_id: UUID,
    data: ServiceUpdate,
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Price changes never affect existing bookings (they captured their price)."""
    service = await _get_own_service(db, service_id, profile)
    updates = data.model_dump(exclude_none=True)
    if "category_id" in updates:
        await _ensure_category(db, updates["category_id"])
    if "status" in updates:
        updates["status"] = ServiceStatus(updates["status"])

    for field, value in updates.items():
        setattr(service, field, value)
    await db.commit()
    await invalidate_provider_cache(redis, profile.id)
    (response,) = await _enrich(db, [service])
    return response


@router.post("/{service_id}/image", response_model=ServiceResponse)
async def upload_service_image(
    service_id: UUID,
    file: UploadFile = File(...),
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    store: storage.LocalFileStorage = Depends(storage.get_storage),
):
    service = await _get_own_service(db, service_id, profile)
    previous = service.image_url
    service.image_url = await store.store(file, storage.SERVICE_IMAGE)
    await db.commit()
    if previous:
        await store.delete(previous)
    await invalidate_provider_cache(redis, profile.id)
    (response,) = await _enrich(db, [service])
    return response


@router.delete("/{service_id}", response_model=MessageResponse)
async def delete_service(
    service_id: UUID,
    profile: ProviderProfile = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    store: storage.LocalFileStorage = Depends(storage.get_storage),
):
    """
    Delete a service. A service that already has bookings is deactivated
    instead, so booking history keeps pointing at it.
    """
    service = await _get_own_service(db, service_id, profile)
    has_bookings = await db.scalar(
        select(func.count(Booking.id)).where(Booking.service_id == service.id)
    )
    if has_bookings:
        service.status = ServiceStatus.INACTIVE
        await db.commit()
        await invalidate_provider_cache(redis, profile.id)
        return MessageResponse(message="Service has bookings and was deactivated instead")

    image_url = service.image_url
    await db.delete(service)
    await db.commit()
    if image_url:
        await store.delete(image_url)
    await invalidate_provider_cache(redis, profile.id)
    return MessageResponse(message="Service deleted")


@router.get("/{service_id}", response_model=ServiceResponse)
async def get_service(service_id: UUID, db: AsyncSession = Depends(get_db)):
    service = await db.scalar(
        select(Service).where(Service.id == service_id, Service.status == ServiceStatus.ACTIVE)
    )
    if not service:
        raise HTTPException(status_code=404, detail="Service not found")
    (response,) = await _enrich(db, [service])
    return response
