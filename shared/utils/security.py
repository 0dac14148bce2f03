"""
shared/utils/security.py
Token and credential primitives: JWT access tokens, opaque refresh tokens,
bcrypt password hashes and one-time password reset codes.
"""

import hashlib
import hmac
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from config.settings import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

TOKEN_ISSUER = "provider-marketplace"


# ── JWT ───────────────────────────────────────────────────────

def create_access_token(user_id: str, role: str, email: str) -> tuple[str, str]:
    """
    Create a signed JWT access token.
    Returns (token, jti). The jti is what logout deny-lists.
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)

    payload = {
        "iss": TOKEN_ISSUER,
        "sub": str(user_id),
        "role": role,
        "email": email,
        "jti": jti,
        "iat": now,
        "exp": now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
        "type": "access",
    }
    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token, jti


def verify_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.
    Raises JWTError on a bad signature, expiry, wrong issuer or a non-access token.
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
        issuer=TOKEN_ISSUER,
    )
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    return payload


def get_token_remaining_ttl(payload: dict) -> int:
    """Seconds until the token expires; the deny-list entry lives this long."""
    remaining = payload.get("exp", 0) - datetime.now(timezone.utc).timestamp()
    return max(0, int(remaining))


# ── Refresh Tokens ────────────────────────────────────────────

def create_refresh_token() -> tuple[str, str, datetime]:
    """
    Opaque random token for the rotation flow.
    Returns (raw_token, hashed_token, expires_at). Only the hash is persisted.
    """
    raw_token = secrets.token_urlsafe(64)
    expires_at = datetime.now(timezone.utc) + timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS)
    return raw_token, hash_token(raw_token), expires_at


def hash_token(token: str) -> str:
    """SHA-256 hash for storing refresh tokens and reset codes."""
    return hashlib.sha256(token.encode()).hexdigest()


# ── Password ──────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    # Google-only accounts have no password hash
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


# ── Password Reset Codes ──────────────────────────────────────

def generate_reset_code() -> str:
    """Six-digit numeric code sent by email."""
    return f"{secrets.randbelow(900000) + 100000}"


def reset_code_matches(code: str, stored_hash: Optional[str]) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(hash_token(code), stored_hash)


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """
    Compare a stored expiry with now. Drivers without timezone support
    (SQLite) hand back naive datetimes, which are stored in UTC.
    """
    if expires_at is None:
        return True
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= (now or datetime.now(timezone.utc))
