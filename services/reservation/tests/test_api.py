"""Tests for the HTTP surface."""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app import main


@pytest_asyncio.fixture
async def client(session_factory, cache, metrics, monkeypatch) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the test database (lifespan is not run)."""
    monkeypatch.setattr(main, "async_session", session_factory)
    monkeypatch.setattr(main, "cache", cache)
    monkeypatch.setattr(main, "metrics", metrics)
    async with AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_hold_order_webhook_flow(client: AsyncClient, store, product) -> None:
    """Hold → order → the same success webhook three times."""
    resp = await client.post("/api/holds", json={"product_id": product.id, "qty": 2})
    assert resp.status_code == 201
    hold_id = resp.json()["hold_id"]
    assert "expires_at" in resp.json()

    resp = await client.post("/api/orders", json={"hold_id": hold_id})
    assert resp.status_code == 201
    order = resp.json()
    assert order["status"] == "pending"
    assert order["total_price"] == "100.00"
    assert order["quantity"] == 2

    body = {"idempotency_key": "evt-1", "order_id": order["order_id"], "status": "success"}
    results = [(await client.post("/api/payments/webhook", json=body)).json() for _ in range(3)]

    assert [r["duplicate"] for r in results] == [False, True, True]
    assert all(r["processed"] and r["order_id"] == order["order_id"] for r in results)
    assert await store.webhook_event_count() == 1

    resp = await client.get(f"/api/orders/{order['order_id']}")
    assert resp.json()["status"] == "paid"


@pytest.mark.asyncio
async def test_product_shows_available_stock(client: AsyncClient, product) -> None:
    resp = await client.get(f"/api/products/{product.id}")
    assert resp.status_code == 200
    assert resp.json() == {
        "id": product.id,
        "name": "Test Product",
        "price": "50.00",
        "stock": 10,
        "available_stock": 10,
    }


@pytest.mark.asyncio
async def test_unknown_resources_return_404(client: AsyncClient) -> None:
    assert (await client.get("/api/products/999")).status_code == 404
    assert (await client.get("/api/orders/999")).status_code == 404
    assert (await client.get("/api/holds/999")).status_code == 404
    assert (await client.post("/api/holds", json={"product_id": 999, "qty": 1})).status_code == 404
    assert (await client.post("/api/orders", json={"hold_id": 999})).status_code == 404


@pytest.mark.asyncio
async def test_hold_business_failures(client: AsyncClient, product) -> None:
    resp = await client.post("/api/holds", json={"product_id": product.id, "qty": 0})
    assert resp.status_code == 422

    resp = await client.post("/api/holds", json={"product_id": product.id, "qty": 11})
    assert resp.status_code == 409
    assert "Insufficient stock" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_expired_hold_cannot_become_order(client: AsyncClient, store, product) -> None:
    hold_id = (await client.post("/api/holds", json={"product_id": product.id, "qty": 1})).json()["hold_id"]
    await store.expire_hold(hold_id)

    resp = await client.post("/api/orders", json={"hold_id": hold_id})
    assert resp.status_code == 409

    resp = await client.post("/api/holds/expire")
    assert resp.json() == {"released": 1}
    assert (await client.get(f"/api/holds/{hold_id}")).json()["consumed"] is True
    assert (await store.product(product.id)).stock == 10


@pytest.mark.asyncio
async def test_webhook_first_uses_full_body_as_payload(client: AsyncClient, store, product) -> None:
    hold_id = (await client.post("/api/holds", json={"product_id": product.id, "qty": 3})).json()["hold_id"]

    resp = await client.post(
        "/api/payments/webhook",
        json={
            "idempotency_key": "evt-2",
            "order_id": 5555,
            "status": "success",
            "product_id": product.id,
            "quantity": 3,
            "hold_id": hold_id,
        },
    )

    assert resp.status_code == 200
    result = resp.json()
    assert result["duplicate"] is False
    order = await store.order(result["order_id"])
    assert order.status.value == "paid"
    assert order.hold_id == hold_id
    assert (await store.product(product.id)).stock == 7


@pytest.mark.asyncio
async def test_webhook_validation(client: AsyncClient) -> None:
    resp = await client.post(
        "/api/payments/webhook",
        json={"idempotency_key": "evt-3", "order_id": 1, "status": "pending"},
    )
    assert resp.status_code == 422

    resp = await client.post(
        "/api/payments/webhook",
        json={"idempotency_key": "evt-4", "order_id": 1, "status": "success"},
    )
    assert resp.status_code == 422
    assert "product_id" in resp.json()["detail"]
