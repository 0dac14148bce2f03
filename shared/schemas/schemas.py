"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class Page(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    name: str
    email: EmailStr
    phone: Optional[str]
    avatar_url: Optional[str]
    role: str
    is_google_account: bool
    is_active: bool
    created_at: datetime


class UserUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9 ]{6,20}$")


# ── Auth ──────────────────────────────────────────────────────

class RegisterClientRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9 ]{6,20}$")


class RegisterProviderRequest(RegisterClientRequest):
    bio: Optional[str] = Field(None, max_length=2000)
    specialty: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = Field(None, max_length=500)


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=1)


class GoogleTokenRequest(BaseSchema):
    token: str = Field(..., min_length=10, description="Google ID token or OAuth access token")


class RefreshRequest(BaseSchema):
    refresh_token: Optional[str] = None


class ForgotPasswordRequest(BaseSchema):
    email: EmailStr


class ResetPasswordRequest(BaseSchema):
    email: EmailStr
    code: str = Field(..., pattern=r"^\d{6}$")
    new_password: str = Field(..., min_length=8, max_length=128)


class TokenResponse(BaseSchema):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int  # seconds


class AuthResponse(TokenResponse):
    user: UserResponse


# ── Provider ──────────────────────────────────────────────────

class ProviderProfileResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    bio: Optional[str]
    specialty: Optional[str]
    address: Optional[str]
    formatted_address: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    verified: bool
    verified_at: Optional[datetime]
    # Injected from User join
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None


class ProviderProfileUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9 ]{6,20}$")
    bio: Optional[str] = Field(None, max_length=2000)
    specialty: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = Field(None, max_length=500)
    formatted_address: Optional[str] = Field(None, max_length=500)


class ProviderLocationUpdate(BaseSchema):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    formatted_address: Optional[str] = Field(None, max_length=500)


class DocumentResponse(BaseSchema):
    id: uuid.UUID
    provider_id: uuid.UUID
    type: str
    file_url: str
    original_name: Optional[str]
    status: str
    review_note: Optional[str]
    created_at: datetime


class VerificationStatusResponse(BaseSchema):
    verified: bool
    verified_at: Optional[datetime]
    documents: Dict[str, int]


# ── Category ──────────────────────────────────────────────────

class CategoryCreate(BaseSchema):
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)


class CategoryUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)


class CategoryResponse(BaseSchema):
    id: uuid.UUID
    name: str
    description: Optional[str]
    icon_url: Optional[str]
    created_at: datetime
    services_count: int = 0


class CategoryStatsResponse(BaseSchema):
    total_categories: int
    total_active_services: int
    categories: List[Dict[str, Any]]


# ── Service ───────────────────────────────────────────────────

class ServiceCreate(BaseSchema):
    category_id: uuid.UUID
    title: str = Field(..., min_length=3, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    price: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    duration: int = Field(..., gt=0, le=24 * 60, description="Minutes")


class ServiceUpdate(BaseSchema):
    category_id: Optional[uuid.UUID] = None
    title: Optional[str] = Field(None, min_length=3, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    price: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    duration: Optional[int] = Field(None, gt=0, le=24 * 60)
    status: Optional[Literal["active", "inactive"]] = None


class ServiceResponse(BaseSchema):
    id: uuid.UUID
    provider_id: uuid.UUID
    category_id: uuid.UUID
    title: str
    description: Optional[str]
    price: Decimal
    duration: int
    image_url: Optional[str]
    status: str
    created_at: datetime
    category_name: Optional[str] = None
    provider_name: Optional[str] = None


class ProviderPublicResponse(ProviderProfileResponse):
    services: List[ServiceResponse] = []
    rating_avg: float = 0.0
    rating_count: int = 0


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    service_id: uuid.UUID
    date: date
    time: time
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: date) -> date:
        if v < datetime.now(timezone.utc).date():
            raise ValueError("Booking date must not be in the past")
        return v


class BookingCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    client_id: uuid.UUID
    service_id: uuid.UUID
    provider_id: uuid.UUID
    date: date
    time: time
    total_price: Decimal
    notes: Optional[str]
    status: str
    accepted_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime
    # Joined
    service_title: Optional[str] = None
    client_name: Optional[str] = None
    provider_name: Optional[str] = None


class BookingStatsResponse(BaseSchema):
    total: int
    pending: int
    accepted: int
    completed: int
    cancelled: int
    total_earnings: Optional[Decimal] = None


# ── Payment ───────────────────────────────────────────────────

class PaymentCreateRequest(BaseSchema):
    booking_id: uuid.UUID
    method: str = Field(..., min_length=2, max_length=50)
    transaction_id: Optional[str] = Field(None, max_length=255)
    status: Literal["success", "failed"] = "success"


class PaymentResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    client_id: uuid.UUID
    amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    provider_amount: Decimal
    method: str
    transaction_id: Optional[str]
    status: str
    paid_at: Optional[datetime]
    created_at: datetime


# ── Wallet ────────────────────────────────────────────────────

class WalletResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    balance: Decimal
    pending_balance: Decimal
    available_for_withdrawal: Decimal
    total_earned: Decimal
    total_withdrawn: Decimal


class WalletTransactionResponse(BaseSchema):
    id: uuid.UUID
    wallet_id: uuid.UUID
    booking_id: Optional[uuid.UUID]
    withdrawal_id: Optional[uuid.UUID]
    type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    status: str
    description: Optional[str]
    created_at: datetime


class WithdrawalCreateRequest(BaseSchema):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    method: str = Field(..., min_length=2, max_length=50)
    account_details: Optional[Dict[str, Any]] = None


class WithdrawalResolveRequest(BaseSchema):
    decision: Literal["approve", "reject"]
    admin_note: Optional[str] = Field(None, max_length=1000)


class WithdrawalResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    wallet_id: uuid.UUID
    amount: Decimal
    method: str
    account_details: Optional[Dict[str, Any]]
    status: str
    admin_note: Optional[str]
    processed_at: Optional[datetime]
    created_at: datetime


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    booking_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    client_id: uuid.UUID
    provider_id: uuid.UUID
    rating: int
    comment: Optional[str]
    created_at: datetime
    client_name: Optional[str] = None


class ProviderReviewsResponse(BaseSchema):
    items: List[ReviewResponse]
    rating_avg: float
    rating_count: int


# ── Messaging ─────────────────────────────────────────────────

class ChatMessageCreate(BaseSchema):
    booking_id: uuid.UUID
    body: str = Field(..., min_length=1, max_length=5000)


class ChatMessageResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    sender_id: uuid.UUID
    recipient_id: uuid.UUID
    body: str
    is_read: bool
    created_at: datetime


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    message: str
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime
    booking_id: Optional[uuid.UUID]


class SweepResponse(BaseSchema):
    delivered: int
    dropped: int


# ── Admin ─────────────────────────────────────────────────────

class DocumentReviewRequest(BaseSchema):
    status: Literal["approved", "rejected"]
    note: Optional[str] = Field(None, max_length=1000)


class AdminSuspendRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)


class AdminStatsResponse(BaseSchema):
    total_users: int
    total_clients: int
    total_providers: int
    verified_providers: int
    pending_documents: int
    total_bookings: int
    completed_bookings: int
    gross_volume: Decimal
    platform_commission: Decimal
    pending_withdrawals: int


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
    request_id: Optional[str] = None
