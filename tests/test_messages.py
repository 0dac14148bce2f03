"""
tests/test_messages.py
Booking-scoped messaging between a client and a provider.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Notification, NotificationType, Service, User
from tests.conftest import auth_headers, future_date


@pytest.fixture
async def booking_id(client: AsyncClient, client_user: User, service: Service) -> str:
    response = await client.post(
        "/bookings",
        headers=auth_headers(client_user),
        json={"service_id": str(service.id), "date": future_date(), "time": "10:00"},
    )
    return response.json()["id"]


@pytest.mark.asyncio
async def test_send_message_notifies_recipient(
    client: AsyncClient,
    db: AsyncSession,
    booking_id: str,
    client_user: User,
    provider_user: User,
):
    response = await client.post(
        "/messages",
        headers=auth_headers(client_user),
        json={"booking_id": booking_id, "body": "Is parking available nearby?"},
    )
    assert response.status_code == 201
    data = response.json()
    assert data["sender_id"] == str(client_user.id)
    assert data["recipient_id"] == str(provider_user.id)
    assert data["is_read"] is False

    notif = await db.scalar(
        select(Notification).where(
            Notification.user_id == provider_user.id,
            Notification.type == NotificationType.MESSAGE,
        )
    )
    assert notif.title == "New message from Asha Client"
    assert notif.message == "Is parking available nearby?"


@pytest.mark.asyncio
async def test_long_message_preview_is_truncated(
    client: AsyncClient, db: AsyncSession, booking_id: str, client_user: User, provider_user: User
):
    await client.post(
        "/messages", headers=auth_headers(client_user), json={"booking_id": booking_id, "body": "x" * 200}
    )
    notif = await db.scalar(
        select(Notification).where(Notification.type == NotificationType.MESSAGE)
    )
    assert len(notif.message) == 81


@pytest.mark.asyncio
async def test_outsider_cannot_message(client: AsyncClient, booking_id: str, other_client: User):
    response = await client.post(
        "/messages", headers=auth_headers(other_client), json={"booking_id": booking_id, "body": "hi"}
    )
    assert response.status_code == 403

    listing = await client.get(f"/messages/booking/{booking_id}", headers=auth_headers(other_client))
    assert listing.status_code == 403


@pytest.mark.asyncio
async def test_message_unknown_booking(client: AsyncClient, client_user: User):
    response = await client.post(
        "/messages",
        headers=auth_headers(client_user),
        json={"booking_id": str(uuid.uuid4()), "body": "hello"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_conversation_order_and_read_state(
    client: AsyncClient, booking_id: str, client_user: User, provider_user: User
):
    client_headers = auth_headers(client_user)
    provider_headers = auth_headers(provider_user)
    await client.post("/messages", headers=client_headers, json={"booking_id": booking_id, "body": "first"})
    await client.post("/messages", headers=provider_headers, json={"booking_id": booking_id, "body": "second"})
    await client.post("/messages", headers=client_headers, json={"booking_id": booking_id, "body": "third"})

    unread = await client.get("/messages/unread-count", headers=provider_headers)
    assert unread.json()["unread_count"] == 2

    conversation = await client.get(f"/messages/booking/{booking_id}", headers=provider_headers)
    assert conversation.status_code == 200
    messages = conversation.json()
    assert [m["body"] for m in messages] == ["first", "second", "third"]
    assert all(m["is_read"] for m in messages if m["recipient_id"] == str(provider_user.id))

    assert (await client.get("/messages/unread-count", headers=provider_headers)).json()["unread_count"] == 0
    # The client's own unread message is untouched
    assert (await client.get("/messages/unread-count", headers=client_headers)).json()["unread_count"] == 1


@pytest.mark.asyncio
async def test_empty_body_rejected(client: AsyncClient, booking_id: str, client_user: User):
    response = await client.post(
        "/messages", headers=auth_headers(client_user), json={"booking_id": booking_id, "body": ""}
    )
    assert response.status_code == 422
