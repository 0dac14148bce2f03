"""
services/auth/router.py
Authentication endpoints.
Implements: Register → Login (password or Google) → JWT issue → Refresh → Logout,
plus password reset by emailed code.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from authlib.integrations.starlette_client import OAuth, OAuthError
from fastapi import APIRouter, Body, Cookie, Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.auth.google import GoogleIdentity, GoogleTokenError, verify_google_token
from services.wallet.ledger import get_or_create_wallet
from shared.middleware.auth import get_current_user, security
from shared.models.models import ProviderProfile, RefreshToken, User, UserRole
from shared.schemas.schemas import (
    AuthResponse,
    ForgotPasswordRequest,
    GoogleTokenRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterClientRequest,
    RegisterProviderRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
)
from shared.utils.email import render_reset_code_email, send_email
from shared.utils.errors import Conflict, Forbidden, ValidationError
from shared.utils.security import (
    create_access_token,
    create_refresh_token,
    generate_reset_code,
    get_token_remaining_ttl,
    hash_password,
    hash_token,
    is_expired,
    reset_code_matches,
    verify_access_token,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

FORGOT_PASSWORD_MESSAGE = "If an account exists for this email, a reset code has been sent."

# ── OAuth Setup ───────────────────────────────────────────────
oauth = OAuth()
oauth.register(
    name="google",
    client_id=settings.GOOGLE_CLIENT_ID,
    client_secret=settings.GOOGLE_CLIENT_SECRET,
    server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
    client_kwargs={"scope": "openid email profile"},
    redirect_uri=settings.GOOGLE_REDIRECT_URI,
)


# ── Helpers ───────────────────────────────────────────────────

async def _get_or_create_google_user(db: AsyncSession, identity: GoogleIdentity) -> User:
    """Find the account by Google id, then by email; create a client otherwise."""
    user = await db.scalar(select(User).where(User.google_id == identity.sub))

    if not user:
        existing = await db.scalar(select(User).where(User.email == identity.email))
        if existing:
            # Link Google to an existing password account
            existing.google_id = identity.sub
            existing.is_google_account = True
            existing.avatar_url = existing.avatar_url or identity.picture
            user = existing
        else:
            user = User(
                google_id=identity.sub,
                is_google_account=True,
                email=identity.email,
                name=identity.name,
                avatar_url=identity.picture,
                role=UserRole.CLIENT,
            )
            db.add(user)
            await db.flush()
            logger.info("Created client %s from Google sign-in", user.id)

    if not user.is_active:
        raise Forbidden("User account is suspended")
    return user


async def _issue_tokens(
    user: User,
    db: AsyncSession,
    response: Response,
    request: Request,
) -> tuple[str, str]:
    """Issue access + refresh tokens. Store refresh token in DB and set cookie."""
    access_token, _ = create_access_token(
        user_id=str(user.id),
        role=user.role.value,
        email=user.email,
    )

    raw_refresh, hashed_refresh, expires_at = create_refresh_token()
    db.add(RefreshToken(
        user_id=user.id,
        token_hash=hashed_refresh,
        expires_at=expires_at,
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    ))

    # httpOnly cookie for web clients; mobile clients use the body
    response.set_cookie(
        key="refresh_token",
        value=raw_refresh,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        path="/auth",
    )
    return access_token, raw_refresh


async def _auth_response(
    user: User, db: AsyncSession, response: Response, request: Request
) -> AuthResponse:
    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()
    return AuthResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


async def _ensure_email_free(db: AsyncSession, email: str) -> None:
    if await db.scalar(select(User.id).where(User.email == email)):
        raise Conflict("An account with this email already exists")


# ── Registration & Login ──────────────────────────────────────

@router.post(
    "/register/client",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a client account",
)
async def register_client(
    data: RegisterClientRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    email = data.email.lower()
    await _ensure_email_free(db, email)

    user = User(
        name=data.name,
        email=email,
        phone=data.phone,
        password_hash=hash_password(data.password),
        role=UserRole.CLIENT,
    )
    db.add(user)
    await db.flush()
    logger.info("Registered client %s", user.id)
    return await _auth_response(user, db, response, request)


@router.post(
    "/register/provider",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a provider account",
)
async def register_provider(
    data: RegisterProviderRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Creates the user, its provider profile and an empty wallet together."""
    email = data.email.lower()
    await _ensure_email_free(db, email)

    user = User(
        name=data.name,
        email=email,
        phone=data.phone,
        password_hash=hash_password(data.password),
        role=UserRole.PROVIDER,
    )
    db.add(user)
    await db.flush()

    db.add(ProviderProfile(
        user_id=user.id,
        bio=data.bio,
        specialty=data.specialty,
        address=data.address,
    ))
    await get_or_create_wallet(db, user.id)
    logger.info("Registered provider %s", user.id)
    return await _auth_response(user, db, response, request)


@router.post("/login", response_model=AuthResponse, summary="Email and password login")
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    user = await db.scalar(select(User).where(User.email == data.email.lower()))
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if user.is_google_account and not user.password_hash:
        raise Forbidden("This account uses Google Sign-In. Please log in with Google.")
    if not verify_password(data.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.is_active:
        raise Forbidden("User account is suspended")
    return await _auth_response(user, db, response, request)


# ── Google ────────────────────────────────────────────────────

@router.post("/google", response_model=AuthResponse, summary="Login with a Google token")
async def google_token_login(
    data: GoogleTokenRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Accepts a Google ID token or access token obtained by the client SDK."""
    try:
        identity = await verify_google_token(data.token)
    except GoogleTokenError as e:
        raise HTTPException(status_code=401, detail=str(e))

    user = await _get_or_create_google_user(db, identity)
    return await _auth_response(user, db, response, request)


@router.get("/google", summary="Initiate Google OAuth2 login")
async def google_login(request: Request):
    """
    Redirects the user to Google's OAuth2 consent page.
    The client should open this URL in a browser/webview.
    """
    return await oauth.google.authorize_redirect(request, settings.GOOGLE_REDIRECT_URI)


@router.get(
    "/google/callback",
    response_model=AuthResponse,
    summary="Google OAuth2 callback",
)
async def google_callback(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Handles Google OAuth2 callback. Issues JWT access token + refresh token."""
    try:
        token = await oauth.google.authorize_access_token(request)
    except OAuthError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"OAuth error: {e.error}",
        )
    userinfo = token.get("userinfo")
    if not userinfo or not userinfo.get("email"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not fetch user info from Google",
        )

    identity = GoogleIdentity(
        sub=userinfo["sub"],
        email=userinfo["email"].lower(),
        name=userinfo.get("name") or userinfo["email"].split("@")[0],
        picture=userinfo.get("picture"),
    )
    user = await _get_or_create_google_user(db, identity)
    return await _auth_response(user, db, response, request)


# ── Tokens ────────────────────────────────────────────────────

@router.post("/refresh", response_model=TokenResponse, summary="Refresh access token")
async def refresh_token(
    request: Request,
    response: Response,
    data: Optional[RefreshRequest] = Body(None),
    # Accept from cookie (web) or request body (mobile)
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
):
    """
    Issue a new access token using a valid refresh token.
    Implements refresh token rotation: the old token is revoked.
    """
    raw_token = (data.refresh_token if data else None) or refresh_token_cookie
    if not raw_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token required",
        )

    db_token = await db.scalar(
        select(RefreshToken).where(
            RefreshToken.token_hash == hash_token(raw_token),
            RefreshToken.is_revoked == False,  # noqa: E712
        )
    )
    if not db_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or revoked refresh token",
        )
    if is_expired(db_token.expires_at):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token expired",
        )

    user = await db.scalar(select(User).where(User.id == db_token.user_id))
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    db_token.is_revoked = True
    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()

    return TokenResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    response: Response,
    data: Optional[RefreshRequest] = Body(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    current_user: User = Depends(get_current_user),
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Revoke the refresh token and deny-list the access token in Redis."""
    try:
        payload = verify_access_token(credentials.credentials)
        ttl = get_token_remaining_ttl(payload)
        if ttl > 0:
            await RedisCache(redis).revoke_token(payload["jti"], ttl)
    except JWTError:
        # Already validated by get_current_user; nothing left to revoke
        pass

    raw_refresh = (data.refresh_token if data else None) or refresh_token_cookie
    if raw_refresh:
        db_token = await db.scalar(
            select(RefreshToken).where(
                RefreshToken.token_hash == hash_token(raw_refresh),
                RefreshToken.user_id == current_user.id,
            )
        )
        if db_token:
            db_token.is_revoked = True

    response.delete_cookie(key="refresh_token", path="/auth")
    await db.commit()
    return MessageResponse(message="Logged out successfully")


# ── Password Reset ────────────────────────────────────────────

@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    data: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Store a 6-digit reset code and email it. The answer never reveals whether
    the account exists. A failed email is logged; the stored code stays valid.
    """
    user = await db.scalar(select(User).where(User.email == data.email.lower()))
    if not user or not user.password_hash:
        return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)

    code = generate_reset_code()
    user.reset_code_hash = hash_token(code)
    user.reset_code_expires_at = datetime.now(timezone.utc) + timedelta(
        minutes=settings.PASSWORD_RESET_CODE_TTL_MINUTES
    )
    await db.commit()

    sent = await run_in_threadpool(
        send_email,
        user.email,
        "Your password reset code",
        render_reset_code_email(user.name, code),
    )
    if not sent:
        logger.warning("Reset code for user %s stored but email was not delivered", user.id)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    data: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
):
    user = await db.scalar(select(User).where(User.email == data.email.lower()))
    if not user or not user.reset_code_hash:
        raise ValidationError("Invalid or expired reset code")

    if is_expired(user.reset_code_expires_at):
        user.reset_code_hash = None
        user.reset_code_expires_at = None
        await db.commit()
        raise ValidationError("Invalid or expired reset code")

    if not reset_code_matches(data.code, user.reset_code_hash):
        raise ValidationError("Invalid or expired reset code")

    user.password_hash = hash_password(data.new_password)
    user.reset_code_hash = None
    user.reset_code_expires_at = None
    await db.commit()
    logger.info("Password reset for user %s", user.id)
    return MessageResponse(message="Password has been reset. You can now log in.")


@router.get("/me", response_model=UserResponse, summary="Get current user")
async def get_me(current_user: User = Depends(get_current_user)):
    """Returns the authenticated user's profile."""
    return UserResponse.model_validate(current_user)
