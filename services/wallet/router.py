"""
services/wallet/router.py
Provider wallet: balances, ledger entries and withdrawal requests.
Admin resolution of requests lives in services/admin/router.py.
"""

from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.wallet import ledger
from shared.middleware.auth import require_provider
from shared.models.models import User, Wallet, WalletTransaction, WithdrawalRequest
from shared.schemas.schemas import (
    WalletResponse,
    WalletTransactionResponse,
    WithdrawalCreateRequest,
    WithdrawalResponse,
)

router = APIRouter(prefix="/wallet", tags=["Wallet"])


def _wallet_response(wallet: Wallet) -> WalletResponse:
    balance = ledger.to_money(wallet.balance)
    pending = ledger.to_money(wallet.pending_balance)
    return WalletResponse(
        id=wallet.id,
        user_id=wallet.user_id,
        balance=balance,
        pending_balance=pending,
        available_for_withdrawal=max(Decimal("0.00"), balance - pending),
        total_earned=ledger.to_money(wallet.total_earned),
        total_withdrawn=ledger.to_money(wallet.total_withdrawn),
    )


@router.get("", response_model=WalletResponse)
async def get_my_wallet(
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Current balances. The wallet is created on first access."""
    wallet = await ledger.get_or_create_wallet(db, current_user.id)
    await db.commit()
    return _wallet_response(wallet)


@router.get("/transactions", response_model=list[WalletTransactionResponse])
async def list_my_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Ledger entries, newest first."""
    wallet = await ledger.get_wallet(db, current_user.id)
    if not wallet:
        return []
    result = await db.scalars(
        select(WalletTransaction)
        .where(WalletTransaction.wallet_id == wallet.id)
        .order_by(WalletTransaction.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [WalletTransactionResponse.model_validate(t) for t in result.all()]


# ── Withdrawals ───────────────────────────────────────────────

@router.post(
    "/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED
)
async def request_withdrawal(
    data: WithdrawalCreateRequest,
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Ask for a payout. Funds are held until an admin resolves the request."""
    request = await ledger.request_withdrawal(
        db,
        user_id=current_user.id,
        amount=data.amount,
        method=data.method,
        account_details=data.account_details,
    )
    await db.commit()
    return WithdrawalResponse.model_validate(request)


@router.get("/withdrawals", response_model=list[WithdrawalResponse])
async def list_my_withdrawals(
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    result = await db.scalars(
        select(WithdrawalRequest)
        .where(WithdrawalRequest.user_id == current_user.id)
        .order_by(WithdrawalRequest.created_at.desc())
    )
    return [WithdrawalResponse.model_validate(w) for w in result.all()]
