"""
services/wallet/ledger.py
Wallet accumulator. The wallet_transactions table is the source of truth;
wallet.balance is a cached projection kept equal to the signed sum of the
ledger. Every mutation locks the wallet row (SELECT ... FOR UPDATE) so
concurrent completions for the same provider serialize.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    TransactionStatus,
    TransactionType,
    Wallet,
    WalletTransaction,
    WithdrawalRequest,
    WithdrawalStatus,
)
from shared.utils.errors import InsufficientFunds, InvalidTransition, NotFound, ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Effect of each entry type on wallet.balance
SIGNS = {
    TransactionType.CREDIT: 1,
    TransactionType.REFUND: 1,
    TransactionType.DEBIT: -1,
    TransactionType.WITHDRAWAL: -1,
    TransactionType.COMMISSION: 0,
}


# ── Money ─────────────────────────────────────────────────────

def to_money(value) -> Decimal:
    """Quantize to cents, half-up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def split_commission(gross_amount, commission_rate) -> tuple[Decimal, Decimal]:
    """
    Returns (commission_amount, provider_amount) for a gross amount and a
    percentage rate. The two always add back up to the gross amount.
    """
    gross = to_money(gross_amount)
    rate = to_money(commission_rate)
    if rate < ZERO or rate > Decimal("100"):
        raise ValidationError(f"Commission rate must be between 0 and 100, got {rate}")
    commission = to_money(gross * rate / Decimal("100"))
    return commission, gross - commission


# ── Wallets ───────────────────────────────────────────────────

async def get_wallet(
    db: AsyncSession, user_id: uuid.UUID, lock: bool = False
) -> Optional[Wallet]:
    query = select(Wallet).where(Wallet.user_id == user_id)
    if lock:
        query = query.with_for_update()
    return await db.scalar(query)


async def get_or_create_wallet(
    db: AsyncSession, user_id: uuid.UUID, lock: bool = False
) -> Wallet:
    wallet = await get_wallet(db, user_id, lock=lock)
    if wallet is None:
        wallet = Wallet(
            user_id=user_id,
            balance=ZERO,
            pending_balance=ZERO,
            total_earned=ZERO,
            total_withdrawn=ZERO,
        )
        db.add(wallet)
        await db.flush()
    return wallet


def _append(
    db: AsyncSession,
    wallet: Wallet,
    entry_type: TransactionType,
    amount: Decimal,
    booking_id: Optional[uuid.UUID] = None,
    withdrawal_id: Optional[uuid.UUID] = None,
    description: Optional[str] = None,
) -> WalletTransaction:
    """Write one ledger entry and move wallet.balance by its signed amount."""
    before = to_money(wallet.balance)
    after = before + SIGNS[entry_type] * amount
    if after < ZERO:
        raise InsufficientFunds(
            f"Insufficient balance: {before} available, {amount} required",
            {"wallet_id": str(wallet.id)},
        )

    entry = WalletTransaction(
        wallet_id=wallet.id,
        booking_id=booking_id,
        withdrawal_id=withdrawal_id,
        type=entry_type,
        amount=amount,
        balance_before=before,
        balance_after=after,
        status=TransactionStatus.COMPLETED,
        description=description,
    )
    db.add(entry)
    wallet.balance = after
    return entry


async def ledger_balance(db: AsyncSession, wallet_id: uuid.UUID) -> Decimal:
    """Signed sum of the ledger; must always equal wallet.balance."""
    signed = case(
        (WalletTransaction.type.in_([TransactionType.CREDIT, TransactionType.REFUND]),
         WalletTransaction.amount),
        (WalletTransaction.type.in_([TransactionType.DEBIT, TransactionType.WITHDRAWAL]),
         -WalletTransaction.amount),
        else_=0,
    )
    total = await db.scalar(
        select(func.coalesce(func.sum(signed), 0)).where(WalletTransaction.wallet_id == wallet_id)
    )
    return to_money(total)


# ── Operations ────────────────────────────────────────────────

async def credit(
    db: AsyncSession,
    owner_id: uuid.UUID,
    booking_id: uuid.UUID,
    gross_amount,
    commission_rate,
) -> Optional[WalletTransaction]:
    """
    Credit a provider for a completed booking: one commission entry
    (informational, no balance effect) and one credit entry for the
    provider's share. Idempotent per booking: returns None when the
    booking has already been credited.
    """
    wallet = await get_or_create_wallet(db, owner_id, lock=True)

    already = await db.scalar(
        select(WalletTransaction.id).where(
            WalletTransaction.wallet_id == wallet.id,
            WalletTransaction.booking_id == booking_id,
            WalletTransaction.type == TransactionType.CREDIT,
        )
    )
    if already:
        logger.info("Booking %s already credited to wallet %s", booking_id, wallet.id)
        return None

    rate = to_money(commission_rate)
    commission, provider_amount = split_commission(gross_amount, rate)

    _append(
        db, wallet, TransactionType.COMMISSION, commission,
        booking_id=booking_id, description=f"Platform commission ({rate}%)",
    )
    entry = _append(
        db, wallet, TransactionType.CREDIT, provider_amount,
        booking_id=booking_id, description="Booking earnings",
    )
    wallet.total_earned = to_money(wallet.total_earned) + provider_amount
    await db.flush()

    logger.info(
        "Credited %s (gross %s, commission %s) to wallet %s for booking %s",
        provider_amount, to_money(gross_amount), commission, wallet.id, booking_id,
    )
    return entry


async def request_withdrawal(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount,
    method: str,
    account_details: Optional[dict] = None,
) -> WithdrawalRequest:
    """
    Open a pending withdrawal. Funds are only held (pending_balance), not
    moved; the amount must fit in balance minus what is already held.
    """
    amount = to_money(amount)
    if amount <= ZERO:
        raise ValidationError("Withdrawal amount must be positive")

    wallet = await get_or_create_wallet(db, user_id, lock=True)
    available = to_money(wallet.balance) - to_money(wallet.pending_balance)
    if amount > available:
        raise InsufficientFunds(
            f"Requested {amount} exceeds available balance {available}",
            {"available": str(available)},
        )

    request = WithdrawalRequest(
        user_id=user_id,
        wallet_id=wallet.id,
        amount=amount,
        method=method,
        account_details=account_details,
        status=WithdrawalStatus.PENDING,
    )
    db.add(request)
    wallet.pending_balance = to_money(wallet.pending_balance) + amount
    await db.flush()
    return request


async def resolve_withdrawal(
    db: AsyncSession,
    request_id: uuid.UUID,
    approve: bool,
    admin_id: Optional[uuid.UUID] = None,
    admin_note: Optional[str] = None,
) -> WithdrawalRequest:
    """Approve (funds leave the wallet via a withdrawal entry) or reject."""
    request = await db.scalar(
        select(WithdrawalRequest).where(WithdrawalRequest.id == request_id).with_for_update()
    )
    if request is None:
        raise NotFound("Withdrawal request not found")
    if request.status not in (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING):
        raise InvalidTransition(f"Withdrawal request is already {request.status.value}")

    wallet = await db.scalar(
        select(Wallet).where(Wallet.id == request.wallet_id).with_for_update()
    )
    amount = to_money(request.amount)
    wallet.pending_balance = max(ZERO, to_money(wallet.pending_balance) - amount)

    if approve:
        _append(
            db, wallet, TransactionType.WITHDRAWAL, amount,
            withdrawal_id=request.id, description=f"Withdrawal via {request.method}",
        )
        wallet.total_withdrawn = to_money(wallet.total_withdrawn) + amount
        request.status = WithdrawalStatus.COMPLETED
    else:
        request.status = WithdrawalStatus.REJECTED

    request.admin_note = admin_note
    request.processed_at = datetime.now(timezone.utc)
    request.processed_by_id = admin_id
    await db.flush()

    logger.info("Withdrawal %s %s by admin %s", request.id, request.status.value, admin_id)
    return request
