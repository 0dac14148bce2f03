"""
tests/test_wallet.py
Provider wallet endpoints: balances, ledger history, withdrawal requests.
"""

from decimal import Decimal

import pytest
from httpx import AsyncClient

from shared.models.models import ProviderProfile, Service, User
from tests.conftest import auth_headers, future_date


async def _earn(client: AsyncClient, client_user: User, provider_user: User, service: Service):
    """Run one booking through to completion: 100.00 gross, 90.00 to the provider."""
    booking = (await client.post(
        "/bookings",
        headers=auth_headers(client_user),
        json={"service_id": str(service.id), "date": future_date(), "time": "10:00"},
    )).json()
    await client.post(f"/bookings/{booking['id']}/accept", headers=auth_headers(provider_user))
    await client.post(f"/bookings/{booking['id']}/complete", headers=auth_headers(provider_user))
    return booking


@pytest.mark.asyncio
async def test_wallet_requires_provider_role(client: AsyncClient, client_user: User):
    response = await client.get("/wallet", headers=auth_headers(client_user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_new_wallet_is_empty(
    client: AsyncClient, provider_user: User, provider_profile: ProviderProfile
):
    response = await client.get("/wallet", headers=auth_headers(provider_user))
    assert response.status_code == 200
    data = response.json()
    assert data["balance"] == "0.00"
    assert data["available_for_withdrawal"] == "0.00"


@pytest.mark.asyncio
async def test_transactions_list_commission_and_credit(
    client: AsyncClient, client_user: User, provider_user: User, service: Service
):
    booking = await _earn(client, client_user, provider_user, service)

    response = await client.get("/wallet/transactions", headers=auth_headers(provider_user))
    assert response.status_code == 200
    entries = {e["type"]: e for e in response.json()}
    assert set(entries) == {"commission", "credit"}
    assert entries["credit"]["amount"] == "90.00"
    assert entries["credit"]["booking_id"] == booking["id"]
    assert entries["commission"]["amount"] == "10.00"


@pytest.mark.asyncio
async def test_withdrawal_holds_funds(
    client: AsyncClient, client_user: User, provider_user: User, service: Service
):
    await _earn(client, client_user, provider_user, service)

    response = await client.post(
        "/wallet/withdrawals",
        headers=auth_headers(provider_user),
        json={"amount": "60.00", "method": "bank_transfer", "account_details": {"iban": "X1"}},
    )
    assert response.status_code == 201
    assert response.json()["status"] == "pending"

    wallet = (await client.get("/wallet", headers=auth_headers(provider_user))).json()
    assert wallet["balance"] == "90.00"
    assert wallet["pending_balance"] == "60.00"
    assert wallet["available_for_withdrawal"] == "30.00"


@pytest.mark.asyncio
async def test_withdrawal_boundary(
    client: AsyncClient, client_user: User, provider_user: User, service: Service
):
    await _earn(client, client_user, provider_user, service)
    headers = auth_headers(provider_user)

    too_much = await client.post(
        "/wallet/withdrawals", headers=headers, json={"amount": "90.01", "method": "bank"}
    )
    assert too_much.status_code == 422
    assert too_much.json()["code"] == "insufficient_funds"

    exact = await client.post(
        "/wallet/withdrawals", headers=headers, json={"amount": "90.00", "method": "bank"}
    )
    assert exact.status_code == 201

    nothing_left = await client.post(
        "/wallet/withdrawals", headers=headers, json={"amount": "0.01", "method": "bank"}
    )
    assert nothing_left.status_code == 422


@pytest.mark.asyncio
async def test_withdrawal_amount_must_be_positive(
    client: AsyncClient, provider_user: User, provider_profile: ProviderProfile
):
    response = await client.post(
        "/wallet/withdrawals",
        headers=auth_headers(provider_user),
        json={"amount": "0", "method": "bank"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_list_my_withdrawals(
    client: AsyncClient, client_user: User, provider_user: User, service: Service
):
    await _earn(client, client_user, provider_user, service)
    headers = auth_headers(provider_user)
    await client.post("/wallet/withdrawals", headers=headers, json={"amount": "10.00", "method": "bank"})
    await client.post("/wallet/withdrawals", headers=headers, json={"amount": "20.00", "method": "bank"})

    response = await client.get("/wallet/withdrawals", headers=headers)
    assert response.status_code == 200
    assert sorted(Decimal(w["amount"]) for w in response.json()) == [Decimal("10.00"), Decimal("20.00")]
