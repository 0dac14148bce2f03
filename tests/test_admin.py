"""
tests/test_admin.py
Tests for the admin panel: access control, provider verification, document
review, user moderation, booking oversight, withdrawals and the audit log.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    Document,
    DocumentStatus,
    Notification,
    ProviderProfile,
    Service,
    User,
)
from tests.conftest import auth_headers, future_date


async def _earn_and_withdraw(
    client: AsyncClient, client_user: User, provider_user: User, service: Service, amount: str
) -> dict:
    booking = (await client.post(
        "/bookings",
        headers=auth_headers(client_user),
        json={"service_id": str(service.id), "date": future_date(), "time": "10:00"},
    )).json()
    await client.post(f"/bookings/{booking['id']}/accept", headers=auth_headers(provider_user))
    await client.post(f"/bookings/{booking['id']}/complete", headers=auth_headers(provider_user))
    response = await client.post(
        "/wallet/withdrawals",
        headers=auth_headers(provider_user),
        json={"amount": amount, "method": "bank_transfer"},
    )
    return response.json()


async def _audit_actions(client: AsyncClient, admin_user: User) -> list[str]:
    response = await client.get("/admin/audit-logs", headers=auth_headers(admin_user))
    return [item["action"] for item in response.json()["items"]]


# ── Access Control ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_non_admin_gets_403(client: AsyncClient, client_user: User, provider_user: User):
    """Clients and providers cannot access admin endpoints."""
    for user in (client_user, provider_user):
        response = await client.get("/admin/stats", headers=auth_headers(user))
        assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_stats(
    client: AsyncClient,
    admin_user: User,
    client_user: User,
    provider_user: User,
    service: Service,
):
    await _earn_and_withdraw(client, client_user, provider_user, service, "10.00")

    response = await client.get("/admin/stats", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert data["total_users"] == 3
    assert data["total_clients"] == 1
    assert data["total_providers"] == 1
    assert data["total_bookings"] == 1
    assert data["completed_bookings"] == 1
    assert data["platform_commission"] == "10.00"
    assert data["pending_withdrawals"] == 1


# ── Provider Verification ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_pending_providers_lists_documents(
    client: AsyncClient, db: AsyncSession, admin_user: User, provider_profile: ProviderProfile
):
    db.add(Document(
        provider_id=provider_profile.id,
        type="id_card",
        file_url="/uploads/documents/x.pdf",
        status=DocumentStatus.PENDING,
    ))
    await db.commit()

    response = await client.get("/admin/providers/pending", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    item = data["items"][0]
    assert item["provider_id"] == str(provider_profile.id)
    assert item["name"] == "Priya Provider"
    assert [d["type"] for d in item["documents"]] == ["id_card"]


@pytest.mark.asyncio
async def test_verify_provider(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    provider_user: User,
    provider_profile: ProviderProfile,
):
    headers = auth_headers(admin_user)
    response = await client.post(f"/admin/providers/{provider_profile.id}/verify", headers=headers)
    assert response.status_code == 200

    await db.refresh(provider_profile)
    assert provider_profile.verified is True
    assert provider_profile.verified_by_id == admin_user.id

    notif = await db.scalar(select(Notification).where(Notification.user_id == provider_user.id))
    assert notif.title == "Profile verified"

    again = await client.post(f"/admin/providers/{provider_profile.id}/verify", headers=headers)
    assert again.status_code == 409
    assert (await client.get("/admin/providers/pending", headers=headers)).json()["total"] == 0
    assert await _audit_actions(client, admin_user) == ["VERIFY_PROVIDER"]


@pytest.mark.asyncio
async def test_verify_unknown_provider(client: AsyncClient, admin_user: User):
    response = await client.post(
        f"/admin/providers/{uuid.uuid4()}/verify", headers=auth_headers(admin_user)
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_review_document(
    client: AsyncClient, db: AsyncSession, admin_user: User, provider_profile: ProviderProfile
):
    document = Document(
        provider_id=provider_profile.id,
        type="license",
        file_url="/uploads/documents/y.pdf",
        status=DocumentStatus.PENDING,
    )
    db.add(document)
    await db.commit()

    response = await client.post(
        f"/admin/documents/{document.id}/review",
        headers=auth_headers(admin_user),
        json={"status": "rejected", "note": "Scan is unreadable"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "rejected"
    assert response.json()["review_note"] == "Scan is unreadable"

    bad = await client.post(
        f"/admin/documents/{document.id}/review",
        headers=auth_headers(admin_user),
        json={"status": "maybe"},
    )
    assert bad.status_code == 422


# ── User Moderation ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_suspend_and_reactivate_user(
    client: AsyncClient, admin_user: User, client_user: User
):
    headers = auth_headers(admin_user)
    response = await client.post(
        f"/admin/users/{client_user.id}/suspend", headers=headers, json={"reason": "Repeated no-shows"}
    )
    assert response.status_code == 200
    assert (await client.get("/auth/me", headers=auth_headers(client_user))).status_code == 403

    again = await client.post(
        f"/admin/users/{client_user.id}/suspend", headers=headers, json={"reason": "Repeated no-shows"}
    )
    assert again.status_code == 409

    reactivated = await client.post(f"/admin/users/{client_user.id}/reactivate", headers=headers)
    assert reactivated.status_code == 200
    assert (await client.get("/auth/me", headers=auth_headers(client_user))).status_code == 200

    actions = await _audit_actions(client, admin_user)
    assert sorted(actions) == ["REACTIVATE_USER", "SUSPEND_USER"]


@pytest.mark.asyncio
async def test_cannot_suspend_admin(client: AsyncClient, admin_user: User):
    response = await client.post(
        f"/admin/users/{admin_user.id}/suspend",
        headers=auth_headers(admin_user),
        json={"reason": "Testing the guard"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_suspend_requires_reason(client: AsyncClient, admin_user: User, client_user: User):
    response = await client.post(
        f"/admin/users/{client_user.id}/suspend", headers=auth_headers(admin_user), json={"reason": "no"}
    )
    assert response.status_code == 422


# ── Bookings ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_all_bookings(
    client: AsyncClient, admin_user: User, client_user: User, other_client: User, service: Service
):
    for user, time in ((client_user, "09:00"), (other_client, "11:00")):
        await client.post(
            "/bookings",
            headers=auth_headers(user),
            json={"service_id": str(service.id), "date": future_date(), "time": time},
        )
    headers = auth_headers(admin_user)

    everything = await client.get("/admin/bookings", headers=headers)
    assert everything.status_code == 200
    assert everything.json()["total"] == 2

    mine = await client.get("/admin/bookings", headers=headers, params={"client_id": str(client_user.id)})
    assert mine.json()["total"] == 1
    assert mine.json()["items"][0]["client_name"] == "Asha Client"

    pending = await client.get("/admin/bookings", headers=headers, params={"status": "pending"})
    assert pending.json()["total"] == 2

    bad = await client.get("/admin/bookings", headers=headers, params={"status": "lost"})
    assert bad.status_code == 422
    assert bad.json()["code"] == "validation_error"


# ── Withdrawals ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_approve_withdrawal(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    client_user: User,
    provider_user: User,
    service: Service,
):
    withdrawal = await _earn_and_withdraw(client, client_user, provider_user, service, "40.00")
    headers = auth_headers(admin_user)

    pending = await client.get("/admin/withdrawals", headers=headers, params={"status": "pending"})
    assert [w["id"] for w in pending.json()] == [withdrawal["id"]]

    bad = await client.get("/admin/withdrawals", headers=headers, params={"status": "lost"})
    assert bad.status_code == 422
    assert bad.json()["code"] == "validation_error"

    response = await client.post(
        f"/admin/withdrawals/{withdrawal['id']}/resolve",
        headers=headers,
        json={"decision": "approve", "admin_note": "Paid out"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    wallet = (await client.get("/wallet", headers=auth_headers(provider_user))).json()
    assert wallet["balance"] == "50.00"
    assert wallet["pending_balance"] == "0.00"

    notif = await db.scalar(
        select(Notification).where(
            Notification.user_id == provider_user.id, Notification.title == "Withdrawal update"
        )
    )
    assert "processed" in notif.message

    reconcile = await client.get(f"/admin/wallets/{provider_user.id}/reconcile", headers=headers)
    assert reconcile.json()["balance"] == "50.00"
    assert reconcile.json()["consistent"] is True

    again = await client.post(
        f"/admin/withdrawals/{withdrawal['id']}/resolve", headers=headers, json={"decision": "reject"}
    )
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_reject_withdrawal_releases_hold(
    client: AsyncClient, admin_user: User, client_user: User, provider_user: User, service: Service
):
    withdrawal = await _earn_and_withdraw(client, client_user, provider_user, service, "40.00")
    response = await client.post(
        f"/admin/withdrawals/{withdrawal['id']}/resolve",
        headers=auth_headers(admin_user),
        json={"decision": "reject", "admin_note": "Account details mismatch"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "rejected"

    wallet = (await client.get("/wallet", headers=auth_headers(provider_user))).json()
    assert wallet["balance"] == "90.00"
    assert wallet["available_for_withdrawal"] == "90.00"
    assert await _audit_actions(client, admin_user) == ["RESOLVE_WITHDRAWAL"]


@pytest.mark.asyncio
async def test_reconcile_unknown_wallet(client: AsyncClient, admin_user: User):
    response = await client.get(
        f"/admin/wallets/{uuid.uuid4()}/reconcile", headers=auth_headers(admin_user)
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_audit_log_filter(
    client: AsyncClient, admin_user: User, client_user: User, provider_profile: ProviderProfile
):
    headers = auth_headers(admin_user)
    await client.post(f"/admin/providers/{provider_profile.id}/verify", headers=headers)
    await client.post(
        f"/admin/users/{client_user.id}/suspend", headers=headers, json={"reason": "Spam reports"}
    )

    response = await client.get("/admin/audit-logs", headers=headers, params={"action": "suspend_user"})
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["entity_id"] == str(client_user.id)
    assert data["items"][0]["payload"] == {"reason": "Spam reports"}
    assert data["items"][0]["admin_email"] == admin_user.email
