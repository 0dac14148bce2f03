"""
tests/test_auth.py
Tests for authentication: registration, login, Google sign-in, refresh
token rotation, logout and the password reset flow.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.auth.google import GoogleIdentity, GoogleTokenError
from shared.models.models import ProviderProfile, User, Wallet
from tests.conftest import TEST_PASSWORD, auth_headers


# ── /me ────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_unauthenticated_returns_401(client: AsyncClient):
    """Protected endpoints return 401 without a token."""
    response = await client.get("/auth/me")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_invalid_token_returns_401(client: AsyncClient):
    response = await client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_get_me_returns_profile(client: AsyncClient, client_user: User):
    response = await client.get("/auth/me", headers=auth_headers(client_user))
    assert response.status_code == 200
    data = response.json()
    assert data["email"] == client_user.email
    assert data["role"] == "client"


@pytest.mark.asyncio
async def test_get_me_provider(client: AsyncClient, provider_user: User):
    response = await client.get("/auth/me", headers=auth_headers(provider_user))
    assert response.json()["role"] == "provider"


@pytest.mark.asyncio
async def test_suspended_user_is_rejected(
    client: AsyncClient, client_user: User, db: AsyncSession
):
    client_user.is_active = False
    await db.commit()
    response = await client.get("/auth/me", headers=auth_headers(client_user))
    assert response.status_code == 403


# ── Registration ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_register_client(client: AsyncClient):
    response = await client.post("/auth/register/client", json={
        "name": "New Client",
        "email": "New.Client@Example.com",
        "password": "supersecret",
    })
    assert response.status_code == 201
    data = response.json()
    assert data["access_token"]
    assert data["refresh_token"]
    assert data["user"]["email"] == "new.client@example.com"
    assert data["user"]["role"] == "client"


@pytest.mark.asyncio
async def test_register_provider_creates_profile_and_wallet(
    client: AsyncClient, db: AsyncSession
):
    response = await client.post("/auth/register/provider", json={
        "name": "New Provider",
        "email": "newprovider@example.com",
        "password": "supersecret",
        "specialty": "Plumbing",
    })
    assert response.status_code == 201
    user_id = response.json()["user"]["id"]

    user = await db.scalar(select(User).where(User.email == "newprovider@example.com"))
    assert str(user.id) == user_id
    profile = await db.scalar(select(ProviderProfile).where(ProviderProfile.user_id == user.id))
    assert profile.specialty == "Plumbing"
    assert profile.verified is False
    assert await db.scalar(select(Wallet).where(Wallet.user_id == user.id)) is not None


@pytest.mark.asyncio
async def test_register_duplicate_email_conflicts(client: AsyncClient, client_user: User):
    response = await client.post("/auth/register/client", json={
        "name": "Dup",
        "email": client_user.email.upper(),
        "password": "supersecret",
    })
    assert response.status_code == 409
    assert response.json()["code"] == "conflict"


@pytest.mark.asyncio
async def test_register_short_password_rejected(client: AsyncClient):
    response = await client.post("/auth/register/client", json={
        "name": "Shorty", "email": "short@example.com", "password": "123",
    })
    assert response.status_code == 422


# ── Login ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_login_success(client: AsyncClient, client_user: User):
    response = await client.post(
        "/auth/login", json={"email": client_user.email, "password": TEST_PASSWORD}
    )
    assert response.status_code == 200
    token = response.json()["access_token"]
    me = await client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["id"] == str(client_user.id)


@pytest.mark.asyncio
async def test_login_wrong_password(client: AsyncClient, client_user: User):
    response = await client.post(
        "/auth/login", json={"email": client_user.email, "password": "wrong-password"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_login_unknown_email(client: AsyncClient):
    response = await client.post(
        "/auth/login", json={"email": "nobody@example.com", "password": "whatever"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_login_google_only_account(client: AsyncClient, db: AsyncSession):
    db.add(User(
        name="Google Person",
        email="g@example.com",
        google_id="google-123",
        is_google_account=True,
    ))
    await db.commit()
    response = await client.post(
        "/auth/login", json={"email": "g@example.com", "password": "whatever"}
    )
    assert response.status_code == 403


# ── Google ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_google_login_creates_client(client: AsyncClient, monkeypatch):
    async def fake_verify(token: str) -> GoogleIdentity:
        return GoogleIdentity(sub="g-sub-1", email="guser@example.com", name="G User")

    monkeypatch.setattr("services.auth.router.verify_google_token", fake_verify)
    response = await client.post("/auth/google", json={"token": "x" * 20})
    assert response.status_code == 200
    user = response.json()["user"]
    assert user["email"] == "guser@example.com"
    assert user["role"] == "client"
    assert user["is_google_account"] is True


@pytest.mark.asyncio
async def test_google_login_links_existing_account(
    client: AsyncClient, client_user: User, db: AsyncSession, monkeypatch
):
    async def fake_verify(token: str) -> GoogleIdentity:
        return GoogleIdentity(sub="g-sub-2", email=client_user.email, name="Whatever")

    monkeypatch.setattr("services.auth.router.verify_google_token", fake_verify)
    response = await client.post("/auth/google", json={"token": "x" * 20})
    assert response.status_code == 200
    assert response.json()["user"]["id"] == str(client_user.id)

    await db.refresh(client_user)
    assert client_user.google_id == "g-sub-2"


@pytest.mark.asyncio
async def test_google_login_rejected_token(client: AsyncClient, monkeypatch):
    async def fake_verify(token: str) -> GoogleIdentity:
        raise GoogleTokenError("Token audience mismatch")

    monkeypatch.setattr("services.auth.router.verify_google_token", fake_verify)
    response = await client.post("/auth/google", json={"token": "x" * 20})
    assert response.status_code == 401


# ── Refresh & Logout ───────────────────────────────────────────────────────────

async def _login(client: AsyncClient, user: User) -> dict:
    response = await client.post(
        "/auth/login", json={"email": user.email, "password": TEST_PASSWORD}
    )
    return response.json()


@pytest.mark.asyncio
async def test_refresh_rotates_token(client: AsyncClient, client_user: User):
    tokens = await _login(client, client_user)

    response = await client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert response.status_code == 200
    rotated = response.json()
    assert rotated["refresh_token"] != tokens["refresh_token"]

    # Old token was revoked by the rotation
    reuse = await client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert reuse.status_code == 401


@pytest.mark.asyncio
async def test_refresh_with_unknown_token(client: AsyncClient):
    response = await client.post("/auth/refresh", json={"refresh_token": "nope"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_logout_revokes_access_and_refresh_tokens(client: AsyncClient, client_user: User):
    tokens = await _login(client, client_user)
    headers = {"Authorization": f"Bearer {tokens['access_token']}"}

    response = await client.post(
        "/auth/logout", headers=headers, json={"refresh_token": tokens["refresh_token"]}
    )
    assert response.status_code == 200

    assert (await client.get("/auth/me", headers=headers)).status_code == 401
    reuse = await client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert reuse.status_code == 401


# ── Password Reset ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_forgot_password_unknown_email_same_answer(client: AsyncClient):
    response = await client.post("/auth/forgot-password", json={"email": "ghost@example.com"})
    assert response.status_code == 200
    assert "If an account exists" in response.json()["message"]


@pytest.mark.asyncio
async def test_password_reset_flow(client: AsyncClient, client_user: User, monkeypatch):
    sent = []
    monkeypatch.setattr("services.auth.router.generate_reset_code", lambda: "123456")
    monkeypatch.setattr(
        "services.auth.router.send_email",
        lambda to, subject, html: sent.append((to, html)) or True,
    )

    response = await client.post("/auth/forgot-password", json={"email": client_user.email})
    assert response.status_code == 200
    assert sent and "123456" in sent[0][1]

    wrong = await client.post("/auth/reset-password", json={
        "email": client_user.email, "code": "654321", "new_password": "brand-new-pass",
    })
    assert wrong.status_code == 422

    ok = await client.post("/auth/reset-password", json={
        "email": client_user.email, "code": "123456", "new_password": "brand-new-pass",
    })
    assert ok.status_code == 200

    login = await client.post(
        "/auth/login", json={"email": client_user.email, "password": "brand-new-pass"}
    )
    assert login.status_code == 200

    # Codes are single use
    again = await client.post("/auth/reset-password", json={
        "email": client_user.email, "code": "123456", "new_password": "another-pass",
    })
    assert again.status_code == 422


@pytest.mark.asyncio
async def test_reset_code_survives_email_failure(
    client: AsyncClient, client_user: User, monkeypatch
):
    monkeypatch.setattr("services.auth.router.generate_reset_code", lambda: "111222")
    monkeypatch.setattr("services.auth.router.send_email", lambda *args: False)

    response = await client.post("/auth/forgot-password", json={"email": client_user.email})
    assert response.status_code == 200

    ok = await client.post("/auth/reset-password", json={
        "email": client_user.email, "code": "111222", "new_password": "brand-new-pass",
    })
    assert ok.status_code == 200


@pytest.mark.asyncio
async def test_expired_reset_code_is_rejected(
    client: AsyncClient, client_user: User, db: AsyncSession
):
    from shared.utils.security import hash_token

    client_user.reset_code_hash = hash_token("999888")
    client_user.reset_code_expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    await db.commit()

    response = await client.post("/auth/reset-password", json={
        "email": client_user.email, "code": "999888", "new_password": "brand-new-pass",
    })
    assert response.status_code == 422
    assert response.json()["detail"] == "Invalid or expired reset code"
