"""
services/admin/router.py
Admin-only endpoints: provider verification, document review, user
moderation, withdrawal resolution, platform stats and the audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.router import enrich_bookings
from services.notification.dispatcher import NotificationEffect, dispatch
from services.wallet import ledger
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    Booking,
    BookingStatus,
    Document,
    DocumentStatus,
    NotificationType,
    Payment,
    PaymentStatus,
    ProviderProfile,
    TransactionType,
    User,
    UserRole,
    Wallet,
    WalletTransaction,
    WithdrawalRequest,
    WithdrawalStatus,
)
from shared.schemas.schemas import (
    AdminStatsResponse,
    AdminSuspendRequest,
    DocumentResponse,
    DocumentReviewRequest,
    MessageResponse,
    Page,
    WithdrawalResolveRequest,
    WithdrawalResponse,
)
from shared.utils.errors import ValidationError

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _log(
    db: AsyncSession,
    admin: User,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: dict | None = None,
    request: Request | None = None,
):
    """Append an immutable record to AdminAuditLog."""
    log = AdminAuditLog(
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=request.client.host if request and request.client else None,
    )
    db.add(log)


# ── Analytics ─────────────────────────────────────────────────────────────────

@router.get("/stats", response_model=AdminStatsResponse)
async def get_stats(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Platform-wide counters and money totals."""
    role_counts = dict((await db.execute(
        select(User.role, func.count(User.id)).group_by(User.role)
    )).all())
    verified_providers = await db.scalar(
        select(func.count(ProviderProfile.id)).where(ProviderProfile.verified == True)  # noqa: E712
    )
    pending_documents = await db.scalar(
        select(func.count(Document.id)).where(Document.status == DocumentStatus.PENDING)
    )
    total_bookings = await db.scalar(select(func.count(Booking.id)))
    completed_bookings = await db.scalar(
        select(func.count(Booking.id)).where(Booking.status == BookingStatus.COMPLETED)
    )
    gross_volume = await db.scalar(
        select(func.sum(Payment.amount)).where(Payment.status == PaymentStatus.SUCCESS)
    )
    platform_commission = await db.scalar(
        select(func.sum(WalletTransaction.amount))
        .where(WalletTransaction.type == TransactionType.COMMISSION)
    )
    pending_withdrawals = await db.scalar(
        select(func.count(WithdrawalRequest.id))
        .where(WithdrawalRequest.status == WithdrawalStatus.PENDING)
    )

    return AdminStatsResponse(
        total_users=sum(role_counts.values()),
        total_clients=role_counts.get(UserRole.CLIENT, 0),
        total_providers=role_counts.get(UserRole.PROVIDER, 0),
        verified_providers=verified_providers or 0,
        pending_documents=pending_documents or 0,
        total_bookings=total_bookings or 0,
        completed_bookings=completed_bookings or 0,
        gross_volume=ledger.to_money(gross_volume or 0),
        platform_commission=ledger.to_money(platform_commission or 0),
        pending_withdrawals=pending_withdrawals or 0,
    )


# ── Provider Verification Queue ────────────────────────────────────────────────

@router.get("/providers/pending")
async def get_pending_providers(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Providers awaiting verification, oldest first (FIFO queue).
    Returns profile info + uploaded documents for review.
    """
    unverified = ProviderProfile.verified == False  # noqa: E712
    total = await db.scalar(select(func.count(ProviderProfile.id)).where(unverified))
    rows = (await db.execute(
        select(ProviderProfile, User)
        .join(User, User.id == ProviderProfile.user_id)
        .where(unverified)
        .order_by(ProviderProfile.created_at.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )).all()

    profile_ids = [profile.id for profile, _ in rows]
    documents: dict[UUID, list] = {pid: [] for pid in profile_ids}
    if profile_ids:
        for doc in (await db.scalars(
            select(Document).where(Document.provider_id.in_(profile_ids))
        )).all():
            documents[doc.provider_id].append(DocumentResponse.model_validate(doc))

    return {
        "items": [
            {
                "provider_id": str(profile.id),
                "user_id": str(profile.user_id),
                "name": user.name,
                "email": user.email,
                "phone": user.phone,
                "specialty": profile.specialty,
                "address": profile.address,
                "bio": profile.bio,
                "documents": documents[profile.id],
                "applied_at": profile.created_at.isoformat(),
            }
            for profile, user in rows
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),  # ceiling division
    }


@router.post("/providers/{provider_id}/verify", response_model=MessageResponse)
async def verify_provider(
    provider_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Mark a provider as verified and notify them."""
    provider = await db.scalar(select(ProviderProfile).where(ProviderProfile.id == provider_id))
    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found")
    if provider.verified:
        raise HTTPException(status_code=409, detail="Provider is already verified")

    provider.verified = True
    provider.verified_at = datetime.now(timezone.utc)
    provider.verified_by_id = current_user.id

    await _log(db, current_user, "VERIFY_PROVIDER", "ProviderProfile", str(provider_id), {}, request)
    await db.commit()

    await dispatch(db, [
        NotificationEffect(
            user_id=provider.user_id,
            type=NotificationType.ACCOUNT,
            title="Profile verified",
            message="Your provider profile has been verified.",
        )
    ])
    return MessageResponse(message="Provider verified successfully")


@router.post("/documents/{document_id}/review", response_model=DocumentResponse)
async def review_document(
    document_id: UUID,
    data: DocumentReviewRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Approve or reject an uploaded verification document."""
    document = await db.scalar(select(Document).where(Document.id == document_id))
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")

    document.status = DocumentStatus(data.status)
    document.review_note = data.note
    document.reviewed_at = datetime.now(timezone.utc)

    await _log(db, current_user, "REVIEW_DOCUMENT", "Document", str(document_id),
               {"status": data.status, "note": data.note}, request)
    await db.commit()
    return DocumentResponse.model_validate(document)


# ── User Moderation ────────────────────────────────────────────────────────────

@router.post("/users/{user_id}/suspend", response_model=MessageResponse)
async def suspend_user(
    user_id: UUID,
    data: AdminSuspendRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Deactivate a user account. Admins cannot be suspended."""
    user = await db.scalar(select(User).where(User.id == user_id))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.role == UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Cannot suspend admin users")
    if not user.is_active:
        raise HTTPException(status_code=409, detail="User is already suspended")

    user.is_active = False
    await _log(db, current_user, "SUSPEND_USER", "User", str(user_id),
               {"reason": data.reason}, request)
    await db.commit()
    return MessageResponse(message="User suspended")


@router.post("/users/{user_id}/reactivate", response_model=MessageResponse)
async def reactivate_user(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Re-activate a suspended user account."""
    user = await db.scalar(select(User).where(User.id == user_id))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    user.is_active = True
    await _log(db, current_user, "REACTIVATE_USER", "User", str(user_id), {}, request)
    await db.commit()
    return MessageResponse(message="User reactivated")


# ── Booking Oversight ──────────────────────────────────────────────────────────

@router.get("/bookings", response_model=Page)
async def list_all_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    client_id: Optional[UUID] = Query(None),
    provider_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: view all bookings with status, client or provider filter."""
    query = select(Booking).order_by(Booking.created_at.desc())

    if status_filter:
        try:
            query = query.where(Booking.status == BookingStatus(status_filter))
        except ValueError:
            valid = [s.value for s in BookingStatus]
            raise ValidationError(f"Invalid status. Valid: {valid}")
    if client_id:
        query = query.where(Booking.client_id == client_id)
    if provider_id:
        query = query.where(Booking.provider_id == provider_id)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    bookings = list((await db.scalars(query.offset((page - 1) * page_size).limit(page_size))).all())

    return Page(
        items=await enrich_bookings(db, bookings),
        total=total or 0,
        page=page,
        page_size=page_size,
    )


# ── Withdrawals ────────────────────────────────────────────────────────────────

@router.get("/withdrawals", response_model=list[WithdrawalResponse])
async def list_withdrawals(
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(WithdrawalRequest).order_by(WithdrawalRequest.created_at.asc())
    if status_filter:
        try:
            query = query.where(WithdrawalRequest.status == WithdrawalStatus(status_filter))
        except ValueError:
            valid = [s.value for s in WithdrawalStatus]
            raise ValidationError(f"Invalid status. Valid: {valid}")
    result = await db.scalars(query)
    return [WithdrawalResponse.model_validate(w) for w in result.all()]


@router.post("/withdrawals/{request_id}/resolve", response_model=WithdrawalResponse)
async def resolve_withdrawal(
    request_id: UUID,
    data: WithdrawalResolveRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Approve (funds leave the wallet) or reject a pending withdrawal."""
    approve = data.decision == "approve"
    withdrawal = await ledger.resolve_withdrawal(
        db, request_id, approve=approve, admin_id=current_user.id, admin_note=data.admin_note
    )
    await _log(db, current_user, "RESOLVE_WITHDRAWAL", "WithdrawalRequest", str(request_id),
               {"decision": data.decision, "note": data.admin_note}, request)
    await db.commit()
    response = WithdrawalResponse.model_validate(withdrawal)

    if approve:
        message = f"Your withdrawal of {response.amount} has been processed."
    else:
        message = f"Your withdrawal of {response.amount} was rejected."
        if data.admin_note:
            message += f" Reason: {data.admin_note}"
    await dispatch(db, [
        NotificationEffect(
            user_id=withdrawal.user_id,
            type=NotificationType.WALLET,
            title="Withdrawal update",
            message=message,
        )
    ])
    return response


@router.get("/wallets/{user_id}/reconcile")
async def reconcile_wallet(
    user_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Compare a wallet's cached balance with the sum of its ledger."""
    wallet = await db.scalar(select(Wallet).where(Wallet.user_id == user_id))
    if not wallet:
        raise HTTPException(status_code=404, detail="Wallet not found")
    ledger_total = await ledger.ledger_balance(db, wallet.id)
    balance = ledger.to_money(wallet.balance)
    return {
        "wallet_id": str(wallet.id),
        "balance": str(balance),
        "ledger_balance": str(ledger_total),
        "consistent": balance == ledger_total,
    }


# ── Audit Log ─────────────────────────────────────────────────────────────────

@router.get("/audit-logs")
async def get_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action type e.g. VERIFY_PROVIDER"),
    entity_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log, append-only."""
    conditions = []
    if action:
        conditions.append(AdminAuditLog.action == action.upper())
    if entity_type:
        conditions.append(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(select(func.count(AdminAuditLog.id)).where(*conditions))
    rows = (await db.execute(
        select(AdminAuditLog, User)
        .join(User, User.id == AdminAuditLog.admin_id)
        .where(*conditions)
        .order_by(AdminAuditLog.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )).all()

    return {
        "items": [
            {
                "id": str(log.id),
                "admin_name": admin.name,
                "admin_email": admin.email,
                "action": log.action,
                "entity_type": log.entity_type,
                "entity_id": log.entity_id,
                "payload": log.payload,
                "ip_address": log.ip_address,
                "created_at": log.created_at.isoformat(),
            }
            for log, admin in rows
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
    }
