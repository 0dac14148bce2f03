"""
shared/models/models.py
All SQLAlchemy ORM models for the marketplace.
UUID primary keys throughout; money is Numeric(12, 2).

Cross-entity reads use explicit joins in the services, so no lazy
relationships are declared (lazy loads are not allowed under AsyncSession).
"""

import uuid
from datetime import date as DateType, datetime, time as TimeType, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    """Persist enum values (lowercase), not member names."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


Money = Numeric(12, 2)


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"


class DocumentStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ServiceStatus(str, PyEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class TransactionType(str, PyEnum):
    CREDIT = "credit"
    DEBIT = "debit"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"
    COMMISSION = "commission"


class TransactionStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WithdrawalStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class NotificationType(str, PyEnum):
    BOOKING = "booking"
    REMINDER = "reminder"
    PAYMENT = "payment"
    WALLET = "wallet"
    REVIEW = "review"
    MESSAGE = "message"
    ACCOUNT = "account"


class ScheduleStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    CANCELLED = "cancelled"


NotificationTypeEnum = _enum(NotificationType, "notification_type")


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


def _pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


# ── Accounts ──────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account for clients, providers and admins. Password or Google sign-in."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = _pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    google_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    is_google_account: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    role: Mapped[UserRole] = mapped_column(
        _enum(UserRole, "user_role"), nullable=False, default=UserRole.CLIENT
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Password reset (code stored as SHA-256 digest)
    reset_code_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reset_code_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class RefreshToken(Base):
    """Refresh tokens stored for rotation and revocation."""
    __tablename__ = "refresh_tokens"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    __table_args__ = (Index("ix_refresh_tokens_user_id", "user_id"),)


class ProviderProfile(TimestampMixin, Base):
    """Provider's professional profile, one-to-one with a provider User."""
    __tablename__ = "provider_profiles"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    specialty: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    formatted_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    __table_args__ = (Index("ix_provider_profiles_verified", "verified"),)


class Document(TimestampMixin, Base):
    """Verification document uploaded by a provider (ID, diploma, insurance...)."""
    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = _pk()
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    file_url: Mapped[str] = mapped_column(Text, nullable=False)
    original_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[DocumentStatus] = mapped_column(
        _enum(DocumentStatus, "document_status"), default=DocumentStatus.PENDING, nullable=False
    )
    review_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_documents_provider_id", "provider_id"),)


# ── Catalogue ─────────────────────────────────────────────────

class Category(TimestampMixin, Base):
    __tablename__ = "categories"

    id: Mapped[uuid.UUID] = _pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    icon_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Service(TimestampMixin, Base):
    """A bookable offering published by a provider."""
    __tablename__ = "services"

    id: Mapped[uuid.UUID] = _pk()
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("categories.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[ServiceStatus] = mapped_column(
        _enum(ServiceStatus, "service_status"), default=ServiceStatus.ACTIVE, nullable=False
    )

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_services_price_positive"),
        Index("ix_services_provider_id", "provider_id"),
        Index("ix_services_category_status", "category_id", "status"),
    )


# ── Bookings ──────────────────────────────────────────────────

ACTIVE_SLOT_PREDICATE = text("status IN ('pending', 'accepted')")


class Booking(TimestampMixin, Base):
    """
    Reservation of a Service by a client at (date, time).
    Status: pending → accepted | cancelled; accepted → completed | cancelled.
    total_price is captured from the service at creation and never changes.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = _pk()
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("services.id"), nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("provider_profiles.id"), nullable=False
    )
    date: Mapped[DateType] = mapped_column(Date, nullable=False)
    time: Mapped[TimeType] = mapped_column(Time, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus, "booking_status"), nullable=False, default=BookingStatus.PENDING
    )

    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        # At most one live booking per provider slot
        Index(
            "uq_bookings_active_slot",
            "provider_id",
            "date",
            "time",
            unique=True,
            postgresql_where=ACTIVE_SLOT_PREDICATE,
            sqlite_where=ACTIVE_SLOT_PREDICATE,
        ),
        Index("ix_bookings_client_id", "client_id"),
        Index("ix_bookings_provider_status", "provider_id", "status"),
    )

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.date, self.time, tzinfo=timezone.utc)


class BookingAuditLog(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = _pk()
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("ix_booking_audit_logs_booking_id", "booking_id"),)


class Payment(TimestampMixin, Base):
    """Money received for a booking, split into commission and provider share."""
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = _pk()
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    provider_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "payment_status"), default=PaymentStatus.PENDING, nullable=False
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index(
            "uq_payments_booking_success",
            "booking_id",
            unique=True,
            postgresql_where=text("status = 'success'"),
            sqlite_where=text("status = 'success'"),
        ),
        Index("ix_payments_client_id", "client_id"),
    )


# ── Wallet Ledger ─────────────────────────────────────────────

class Wallet(TimestampMixin, Base):
    """
    Cached projection of the wallet_transactions ledger.
    balance is always the signed sum of credit/withdrawal entries;
    pending_balance is the amount held by pending withdrawal requests.
    """
    __tablename__ = "wallets"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    pending_balance: Mapped[Decimal] = mapped_column(
        Money, default=Decimal("0.00"), nullable=False
    )
    total_earned: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    total_withdrawn: Mapped[Decimal] = mapped_column(
        Money, default=Decimal("0.00"), nullable=False
    )

    __table_args__ = (CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),)


class WalletTransaction(Base):
    """Append-only ledger entry. Never updated once written."""
    __tablename__ = "wallet_transactions"

    id: Mapped[uuid.UUID] = _pk()
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False
    )
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=True
    )
    withdrawal_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("withdrawal_requests.id"), nullable=True
    )
    type: Mapped[TransactionType] = mapped_column(
        _enum(TransactionType, "transaction_type"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        _enum(TransactionStatus, "transaction_status"),
        default=TransactionStatus.COMPLETED,
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        # One entry of each type per booking: a repeated credit hits this
        UniqueConstraint("wallet_id", "booking_id", "type", name="uq_wallet_tx_booking_type"),
        CheckConstraint("amount >= 0", name="ck_wallet_tx_amount_non_negative"),
        Index("ix_wallet_tx_wallet_created", "wallet_id", "created_at"),
    )


class WithdrawalRequest(TimestampMixin, Base):
    __tablename__ = "withdrawal_requests"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    wallet_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("wallets.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    account_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    status: Mapped[WithdrawalStatus] = mapped_column(
        _enum(WithdrawalStatus, "withdrawal_status"),
        default=WithdrawalStatus.PENDING,
        nullable=False,
    )
    admin_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_withdrawals_amount_positive"),
        Index("ix_withdrawals_user_status", "user_id", "status"),
    )


# ── Notifications ─────────────────────────────────────────────

class Notification(Base):
    """In-app notification. Mutated only when the recipient marks it read."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True
    )
    type: Mapped[NotificationType] = mapped_column(
        NotificationTypeEnum, nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)


class ScheduledNotification(TimestampMixin, Base):
    """
    A notification that becomes due at due_at and is delivered by the sweep.
    idempotency_key makes scheduling repeatable; status/claimed_at make
    delivery exactly-once across overlapping sweeps.
    """
    __tablename__ = "scheduled_notifications"

    id: Mapped[uuid.UUID] = _pk()
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=True
    )
    type: Mapped[NotificationType] = mapped_column(
        NotificationTypeEnum, nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[ScheduleStatus] = mapped_column(
        _enum(ScheduleStatus, "schedule_status"), default=ScheduleStatus.PENDING, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    notification_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("notifications.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (Index("ix_scheduled_notifications_due", "status", "due_at"),)


# ── Reviews & Messages ────────────────────────────────────────

class Review(TimestampMixin, Base):
    """Post-booking review. One per booking (enforced by unique constraint)."""
    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = _pk()
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("provider_profiles.id"), nullable=False
    )
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        Index("ix_reviews_provider_id", "provider_id"),
    )


class Message(Base):
    """Message between the two participants of a booking."""
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = _pk()
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    recipient_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_messages_booking_created", "booking_id", "created_at"),
        Index("ix_messages_recipient_read", "recipient_id", "is_read"),
    )


# ── Admin ─────────────────────────────────────────────────────

class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = _pk()
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
