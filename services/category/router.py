"""
services/category/router.py
Service categories: public browsing (search, popular, trending,
autocomplete, stats) and admin management.
Popular categories and stats are cached in Redis and invalidated on every
admin change.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import (
    CATEGORIES_POPULAR_KEY,
    CATEGORIES_STATS_KEY,
    RedisCache,
    get_redis,
)
from services.service.router import provider_names
from shared.middleware.auth import require_admin
from shared.models.models import Booking, Category, Service, ServiceStatus, User
from shared.schemas.schemas import (
    CategoryCreate,
    CategoryResponse,
    CategoryStatsResponse,
    CategoryUpdate,
    MessageResponse,
    ServiceResponse,
)
from shared.utils import storage
from shared.utils.errors import Conflict

router = APIRouter(prefix="/categories", tags=["Categories"])

POPULAR_MAX = 20


# ── Helpers ───────────────────────────────────────────────────

def _services_count():
    """Active services per category, as a joinable subquery."""
    return (
        select(Service.category_id, func.count(Service.id).label("services_count"))
        .where(Service.status == ServiceStatus.ACTIVE)
        .group_by(Service.category_id)
        .subquery()
    )


def _with_counts():
    counts = _services_count()
    count_col = func.coalesce(counts.c.services_count, 0)
    query = select(Category, count_col.label("services_count")).outerjoin(
        counts, counts.c.category_id == Category.id
    )
    return query, count_col


def _response(category: Category, services_count: int = 0) -> CategoryResponse:
    return CategoryResponse.model_validate(category).model_copy(
        update={"services_count": services_count}
    )


async def _get_or_404(db: AsyncSession, category_id: UUID) -> Category:
    category = await db.scalar(select(Category).where(Category.id == category_id))
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


async def _ensure_name_free(db: AsyncSession, name: str, exclude_id: Optional[UUID] = None):
    query = select(Category.id).where(func.lower(Category.name) == name.lower())
    if exclude_id:
        query = query.where(Category.id != exclude_id)
    if await db.scalar(query):
        raise Conflict("A category with this name already exists")


async def _invalidate(redis) -> None:
    await RedisCache(redis).delete(CATEGORIES_STATS_KEY, CATEGORIES_POPULAR_KEY)


# ── Public Endpoints ──────────────────────────────────────────

@router.get("", response_model=list[CategoryResponse])
async def list_categories(
    search: Optional[str] = Query(None, max_length=100),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """All categories by name, with their active services count."""
    query, _ = _with_counts()
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(or_(Category.name.ilike(pattern), Category.description.ilike(pattern)))
    rows = (await db.execute(query.order_by(Category.name.asc()).offset(offset).limit(limit))).all()
    return [_response(category, count) for category, count in rows]


@router.get("/search", response_model=list[CategoryResponse])
async def search_categories(
    q: str = Query(..., min_length=1, max_length=100),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Match name or description; categories with more services come first."""
    query, count_col = _with_counts()
    pattern = f"%{q.strip()}%"
    query = (
        query.where(or_(Category.name.ilike(pattern), Category.description.ilike(pattern)))
        .order_by(count_col.desc(), Category.name.asc())
        .offset(offset)
        .limit(limit)
    )
    rows = (await db.execute(query)).all()
    return [_response(category, count) for category, count in rows]


@router.get("/popular", response_model=list[CategoryResponse])
async def popular_categories(
    limit: int = Query(6, ge=1, le=20),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Categories with the most active services."""
    cache = RedisCache(redis)
    cached = await cache.get(CATEGORIES_POPULAR_KEY)
    if cached is not None:
        return [CategoryResponse(**c) for c in cached[:limit]]

    query, count_col = _with_counts()
    rows = (await db.execute(
        query.order_by(count_col.desc(), Category.name.asc()).limit(POPULAR_MAX)
    )).all()
    result = [_response(category, count) for category, count in rows]
    await cache.set(CATEGORIES_POPULAR_KEY, [c.model_dump(mode="json") for c in result])
    return result[:limit]


@router.get("/trending")
async def trending_categories(
    limit: int = Query(6, ge=1, le=20),
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
):
    """Categories with the most bookings over the last `days` days."""
    since = datetime.now(timezone.utc) - timedelta(days=days)
    recent = func.count(Booking.id).label("recent_bookings")
    rows = (await db.execute(
        select(Category, recent)
        .join(Service, Service.category_id == Category.id)
        .join(Booking, Booking.service_id == Service.id)
        .where(Booking.created_at >= since)
        .group_by(Category.id)
        .order_by(recent.desc(), Category.name.asc())
        .limit(limit)
    )).all()
    return [
        {**_response(category).model_dump(mode="json", exclude={"services_count"}),
         "recent_bookings": count}
        for category, count in rows
    ]


@router.get("/autocomplete")
async def autocomplete_categories(
    q: str = Query(..., min_length=1, max_length=100),
    limit: int = Query(10, ge=1, le=20),
    db: AsyncSession = Depends(get_db),
):
    """Name-prefix suggestions for search boxes."""
    query, count_col = _with_counts()
    rows = (await db.execute(
        query.where(Category.name.ilike(f"{q.strip()}%"))
        .order_by(count_col.desc(), Category.name.asc())
        .limit(limit)
    )).all()
    return [
        {"id": str(category.id), "name": category.name, "services_count": count}
        for category, count in rows
    ]


@router.get("/stats", response_model=CategoryStatsResponse)
async def category_stats(
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    cache = RedisCache(redis)
    cached = await cache.get(CATEGORIES_STATS_KEY)
    if cached is not None:
        return CategoryStatsResponse(**cached)

    query, count_col = _with_counts()
    rows = (await db.execute(query.order_by(count_col.desc(), Category.name.asc()))).all()
    result = CategoryStatsResponse(
        total_categories=len(rows),
        total_active_services=sum(count for _, count in rows),
        categories=[
            {"id": str(category.id), "name": category.name, "services_count": count}
            for category, count in rows
        ],
    )
    await cache.set(CATEGORIES_STATS_KEY, result.model_dump(mode="json"))
    return result


@router.get("/{category_id}", response_model=CategoryResponse)
async def get_category(category_id: UUID, db: AsyncSession = Depends(get_db)):
    query, _ = _with_counts()
    row = (await db.execute(query.where(Category.id == category_id))).first()
    if not row:
        raise HTTPException(status_code=404, detail="Category not found")
    return _response(*row)


@router.get("/{category_id}/services", response_model=list[ServiceResponse])
async def category_services(
    category_id: UUID,
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    search: Optional[str] = Query(None, max_length=100),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Active services of a category, cheapest first."""
    category = await _get_or_404(db, category_id)

    query = select(Service).where(
        Service.category_id == category.id, Service.status == ServiceStatus.ACTIVE
    )
    if min_price is not None:
        query = query.where(Service.price >= min_price)
    if max_price is not None:
        query = query.where(Service.price <= max_price)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(or_(Service.title.ilike(pattern), Service.description.ilike(pattern)))

    services = (await db.scalars(
        query.order_by(Service.price.asc(), Service.created_at.desc()).offset(offset).limit(limit)
    )).all()
    names = await provider_names(db, {s.provider_id for s in services})
    return [
        ServiceResponse.model_validate(s).model_copy(update={
            "category_name": category.name,
            "provider_name": names.get(s.provider_id),
        })
        for s in services
    ]


# ── Admin Endpoints ───────────────────────────────────────────

@router.post("", response_model=CategoryResponse, status_code=status.HTTP_201_CREATED)
async def create_category(
    data: CategoryCreate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    await _ensure_name_free(db, data.name)
    category = Category(name=data.name.strip(), description=data.description)
    db.add(category)
    await db.commit()
    await _invalidate(redis)
    return _response(category)


@router.put("/{category_id}", response_model=CategoryResponse)
async def update_category(
    category_id: UUID,
    data: CategoryUpdate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    category = await _get_or_404(db, category_id)
    updates = data.model_dump(exclude_none=True)
    if "name" in updates:
        updates["name"] = updates["name"].strip()
        await _ensure_name_free(db, updates["name"], exclude_id=category.id)
    for field, value in updates.items():
        setattr(category, field, value)
    await db.commit()
    await _invalidate(redis)
    return await get_category(category.id, db)


@router.post("/{category_id}/icon", response_model=CategoryResponse)
async def upload_category_icon(
    category_id: UUID,
    file: UploadFile = File(...),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    store: storage.LocalFileStorage = Depends(storage.get_storage),
):
    category = await _get_or_404(db, category_id)
    previous = category.icon_url
    category.icon_url = await store.store(file, storage.CATEGORY_ICON)
    await db.commit()
    if previous:
        await store.delete(previous)
    await _invalidate(redis)
    return await get_category(category.id, db)


@router.delete("/{category_id}", response_model=MessageResponse)
async def delete_category(
    category_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    store: storage.LocalFileStorage = Depends(storage.get_storage),
):
    """Refused while any service (active or not) still references the category."""
    category = await _get_or_404(db, category_id)
    in_use = await db.scalar(
        select(func.count(Service.id)).where(Service.category_id == category.id)
    )
    if in_use:
        raise Conflict(
            f"Category is used by {in_use} service(s) and cannot be deleted",
            {"services_count": in_use},
        )

    icon_url = category.icon_url
    await db.delete(category)
    await db.commit()
    if icon_url:
        await store.delete(icon_url)
    await _invalidate(redis)
    return MessageResponse(message="Category deleted")
