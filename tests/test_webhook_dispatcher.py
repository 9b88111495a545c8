"""Tests for signed outbound webhook delivery."""

import json

import httpx
import pytest
from sqlalchemy import select

from broker.db.models import SellerWebhook, WebhookDelivery
from broker.notify.webhook_dispatcher import encode_payload
from broker.security.vault import CredentialVault

from conftest import SELLER, add_oauth_integration

HOOK_URL = "https://hooks.seller.test/broker"
SECRET = "endpoint-secret-0123456789"


async def add_endpoint(broker, db, url=HOOK_URL, events=None, enabled=True, seller_id=SELLER):
    endpoint = SellerWebhook(
        seller_id=seller_id,
        url=url,
        events=events,
        secret=broker.vault.encrypt(SECRET),
        enabled=enabled,
    )
    db.add(endpoint)
    await db.commit()
    return endpoint


def test_payload_encoding_is_canonical():
    body = encode_payload("order.created", {"b": 1, "a": 2}, "2026-01-01T00:00:00Z")
    assert body == b'{"data":{"a":2,"b":1},"event":"order.created","timestamp":"2026-01-01T00:00:00Z"}'


@pytest.mark.asyncio
async def test_delivery_is_signed(broker, db, receiver):
    receiver.add("POST", HOOK_URL, (200, {"ok": True}))
    await add_endpoint(broker, db)

    results = await broker.dispatcher.dispatch(SELLER, "order.created", {"order_id": "A-1"})

    assert len(results) == 1 and results[0].success
    request = receiver.requests[0]
    assert CredentialVault.verify(SECRET, request.content, request.headers["X-Signature"])
    assert request.headers["X-Webhook-Event"] == "order.created"
    assert request.headers["X-Webhook-Delivery"] == results[0].delivery_id
    payload = json.loads(request.content)
    assert payload["data"] == {"order_id": "A-1"}
    assert payload["timestamp"] == request.headers["X-Webhook-Timestamp"]


@pytest.mark.asyncio
async def test_unreachable_endpoint_is_recorded_not_raised(broker, db, receiver):
    receiver.add("POST", HOOK_URL, httpx.ConnectError("connection refused"))
    endpoint = await add_endpoint(broker, db)

    results = await broker.dispatcher.dispatch(SELLER, "order.created", {"order_id": "A-1"})

    assert len(results) == 1
    assert not results[0].success
    assert results[0].attempts == 3
    assert "ConnectError" in results[0].error

    deliveries = (await db.execute(select(WebhookDelivery))).scalars().all()
    assert len(deliveries) == 1
    assert deliveries[0].status == "failed"
    assert deliveries[0].attempts == 3

    await db.refresh(endpoint)
    assert endpoint.error_count == 1
    assert endpoint.send_count == 0


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(broker, db, receiver):
    receiver.add("POST", HOOK_URL, (410, {"error": "gone"}))
    await add_endpoint(broker, db)

    results = await broker.dispatcher.dispatch(SELLER, "order.created", {})

    assert results[0].attempts == 1
    assert results[0].status_code == 410
    assert len(receiver.requests) == 1


@pytest.mark.asyncio
async def test_server_error_then_success(broker, db, receiver):
    receiver.add("POST", HOOK_URL, (502, {}), (200, {}))
    endpoint = await add_endpoint(broker, db)

    results = await broker.dispatcher.dispatch(SELLER, "order.created", {})

    assert results[0].success
    assert results[0].attempts == 2
    await db.refresh(endpoint)
    assert endpoint.send_count == 1
    assert endpoint.last_sent_at is not None


@pytest.mark.asyncio
async def test_endpoint_event_filter(broker, db, receiver):
    receiver.add("POST", HOOK_URL, (200, {}))
    receiver.add("POST", "https://hooks.seller.test/all", (200, {}))
    await add_endpoint(broker, db, events=["order.created"])
    await add_endpoint(broker, db, url="https://hooks.seller.test/all")
    await add_endpoint(broker, db, url="https://hooks.seller.test/off", enabled=False)
    await add_endpoint(broker, db, url="https://hooks.other.test/", seller_id="seller-2")

    results = await broker.dispatcher.dispatch(SELLER, "inventory.updated", {})
    assert [r.target.url for r in results] == ["https://hooks.seller.test/all"]

    results = await broker.dispatcher.dispatch(SELLER, "order.created", {})
    assert sorted(r.target.url for r in results) == [HOOK_URL, "https://hooks.seller.test/all"]


@pytest.mark.asyncio
async def test_integration_webhooks_follow_category(broker, db, receiver):
    receiver.add("POST", "https://hooks.seller.test/shipbob", (200, {}))
    integration = await add_oauth_integration(broker, db)
    secret = await broker.oauth.configure_webhook(
        db, integration, enabled=True, url="https://hooks.seller.test/shipbob"
    )

    # Warehouses care about inventory but not payments
    assert len(await broker.dispatcher.dispatch(SELLER, "inventory.updated", {"sku": "A"})) == 1
    assert await broker.dispatcher.dispatch(SELLER, "payment.received", {}) == []

    request = receiver.requests[0]
    assert CredentialVault.verify(secret, request.content, request.headers["X-Signature"])


@pytest.mark.asyncio
async def test_explicit_integration_event_list(broker, db, receiver):
    receiver.add("POST", "https://hooks.seller.test/shipbob", (200, {}))
    integration = await add_oauth_integration(broker, db)
    await broker.oauth.configure_webhook(
        db, integration, enabled=True, url="https://hooks.seller.test/shipbob", events=["payment.received"]
    )

    assert await broker.dispatcher.dispatch(SELLER, "inventory.updated", {}) == []
    assert len(await broker.dispatcher.dispatch(SELLER, "payment.received", {})) == 1


@pytest.mark.asyncio
async def test_no_targets(broker, receiver):
    assert await broker.dispatcher.dispatch(SELLER, "order.created", {}) == []
    assert receiver.requests == []


@pytest.mark.asyncio
async def test_send_test_targets_one_endpoint(broker, db, receiver):
    receiver.add("POST", HOOK_URL, (200, {}))
    endpoint = await add_endpoint(broker, db, events=["order.created"])
    await add_endpoint(broker, db, url="https://hooks.seller.test/other")

    result = await broker.dispatcher.send_test(SELLER, endpoint)

    assert result.success
    assert len(receiver.requests) == 1
    assert json.loads(receiver.requests[0].content)["event"] == "webhook.test"

    deliveries = await broker.dispatcher.list_deliveries(db, SELLER)
    assert [d.event for d in deliveries] == ["webhook.test"]
    assert deliveries[0].status == "sent"
