from __future__ import annotations

import httpx
import pytest

from marketplace_payments.app import create_app
from marketplace_payments.models.user import UserRole


@pytest.fixture
def client(container):
    app = create_app(container=container)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


@pytest.mark.asyncio
async def test_health(client, container):
    async with client:
        resp = await client.get("/health")
        live = await client.get("/health/live")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["database"] == "InMemoryDBManager"
    assert body["payment_sync"] == "stopped"
    assert live.json() == {"alive": True}


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    async with client:
        resp = await client.get("/health/live", headers={"X-Request-Id": "req-1"})
        generated = await client.get("/health/live")

    assert resp.headers["X-Request-Id"] == "req-1"
    assert generated.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_register_and_book_over_http(client, seed):
    provider = await seed.user(UserRole.PROVIDER)
    service = await seed.service(provider)

    async with client:
        created = await client.post("/users", json={"name": "Ana", "email": "ana@example.com"})
        assert created.status_code == 201
        user = created.json()["data"]
        assert user["credits"] == 20
        headers = {"X-User-Id": user["id"]}

        booking = await client.post(
            "/bookings",
            json={
                "service_id": service.id,
                "service_option": "standard",
                "date": "2026-11-02T09:00:00Z",
                "time_slot": "09:00-11:00",
                "address": "1 Main St",
            },
            headers=headers,
        )
        balance = await client.get("/credits/balance", headers=headers)
        history = await client.get("/credits/history", headers=headers)

    assert booking.status_code == 201
    assert booking.json()["data"]["status"] == "pending"
    assert balance.json() == {"success": True, "data": {"user_id": user["id"], "credits": 15}}
    assert history.json()["count"] == 2


@pytest.mark.asyncio
async def test_admin_self_registration_is_refused(client):
    async with client:
        resp = await client.post("/users", json={"name": "Root", "email": "root@example.com", "role": "admin"})
    assert resp.status_code == 403
    assert resp.json()["success"] is False


@pytest.mark.asyncio
async def test_errors_are_rendered_as_json(client, seed):
    customer = await seed.user(credits=1)
    provider = await seed.user(UserRole.PROVIDER)
    service = await seed.service(provider)

    async with client:
        anonymous = await client.get("/credits/balance")
        unknown = await client.get("/credits/balance", headers={"X-User-Id": "nobody"})
        short = await client.post(
            "/bookings",
            json={
                "service_id": service.id,
                "service_option": "standard",
                "date": "2026-11-02T09:00:00Z",
                "time_slot": "09:00-11:00",
                "address": "1 Main St",
            },
            headers={"X-User-Id": customer.id},
        )
        forbidden = await client.post("/payments/sync", headers={"X-User-Id": customer.id})

    assert anonymous.status_code == 401
    assert unknown.status_code == 401
    assert short.status_code == 400
    assert short.json() == {
        "success": False,
        "error": "Insufficient credits",
        "required": 5,
        "available": 1,
    }
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_admin_can_trigger_payment_sync(client, seed):
    admin = await seed.user(UserRole.ADMIN)
    async with client:
        resp = await client.post("/payments/sync", headers={"X-User-Id": admin.id})
    assert resp.status_code == 200
    assert resp.json()["processed"] == 0


@pytest.mark.asyncio
async def test_webhook_endpoint_verifies_signature(client, gateway, seed):
    async with client:
        payload = gateway.build_event("charge.captured", {"id": "ch_1"})
        good = await client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": gateway.sign(payload)}
        )
        bad = await client.post("/webhooks/stripe", content=payload, headers={"Stripe-Signature": "nope"})
        missing = await client.post("/webhooks/stripe", content=payload)

    assert good.status_code == 200
    assert good.json() == {"received": True, "type": "charge.captured"}
    assert bad.status_code == 400
    assert missing.status_code == 400
