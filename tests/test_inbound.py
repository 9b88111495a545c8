"""Tests for inbound provider webhooks."""

import json

import pytest
from sqlalchemy import select

from broker.db.models import ExternalOrder, IntegrationHistory, ProductInventory, SellerWebhook
from broker.errors import InvalidRequest, InvalidSignature
from broker.security.vault import CredentialVault

from conftest import SELLER, add_oauth_integration

HOOK_URL = "https://hooks.seller.test/broker"
OTHER_HOOK_URL = "https://hooks.other-seller.test/broker"


def channel(channel_id):
    return {"account_metadata": {"channel_id": channel_id}}


def signed(secret, payload):
    body = json.dumps(payload).encode()
    return body, CredentialVault.sign(secret, body)


def inventory_change(channel_id="ch-1", sku="SKU-9", quantity=14):
    payload = {"topic": "inventory_changed", "data": {"reference_id": sku, "quantity": quantity}}
    if channel_id is not None:
        payload["channel_id"] = channel_id
    return signed("shipbob-hook-secret", payload)


@pytest.mark.asyncio
async def test_rejects_bad_signature(broker, db):
    await add_oauth_integration(broker, db)
    body, _ = signed("shipbob-hook-secret", {"topic": "inventory_changed", "data": {}})

    with pytest.raises(InvalidSignature):
        await broker.inbound.process(db, "shipbob", body, "deadbeef")
    with pytest.raises(InvalidSignature):
        await broker.inbound.process(db, "shipbob", body, None)
    # No secret configured for stripe
    with pytest.raises(InvalidSignature):
        await broker.inbound.process(db, "stripe", body, CredentialVault.sign("x", body))


@pytest.mark.asyncio
async def test_inventory_event_only_touches_owning_seller(broker, db, receiver):
    receiver.add("POST", HOOK_URL, (200, {}))
    receiver.add("POST", OTHER_HOOK_URL, (200, {}))
    await add_oauth_integration(broker, db, **channel("ch-1"))
    await add_oauth_integration(broker, db, seller_id="seller-2", **channel("ch-2"))
    db.add(SellerWebhook(seller_id=SELLER, url=HOOK_URL, secret=broker.vault.encrypt("hook-secret-123456")))
    db.add(SellerWebhook(seller_id="seller-2", url=OTHER_HOOK_URL, secret=broker.vault.encrypt("hook-secret-654321")))
    await db.commit()

    body, signature = inventory_change("ch-1")
    result = await broker.inbound.process(db, "shipbob", body, "sha256=" + signature)

    assert result.event == "inventory.updated"
    assert result.handled == 1
    assert result.sellers == [SELLER]

    rows = (await db.execute(select(ProductInventory))).scalars().all()
    assert [(r.seller_id, r.sku, r.quantity) for r in rows] == [(SELLER, "SKU-9", 14)]

    assert [str(r.url) for r in receiver.requests] == [HOOK_URL]
    published = json.loads(receiver.requests[0].content)
    assert published["event"] == "inventory.updated"
    assert published["data"] == {"provider": "shipbob", "sku": "SKU-9", "quantity": 14}


@pytest.mark.asyncio
@pytest.mark.parametrize("channel_id", [None, "ch-unknown"])
async def test_unattributed_event_is_dropped(broker, db, receiver, channel_id):
    await add_oauth_integration(broker, db, **channel("ch-1"))
    await add_oauth_integration(broker, db, seller_id="seller-2", **channel("ch-2"))

    body, signature = inventory_change(channel_id)
    result = await broker.inbound.process(db, "shipbob", body, signature)

    assert result.unattributed
    assert result.handled == 0
    assert result.sellers == []
    assert (await db.execute(select(ProductInventory))).scalars().all() == []
    assert receiver.requests == []


@pytest.mark.asyncio
async def test_account_claimed_twice_is_dropped(broker, db):
    await add_oauth_integration(broker, db, **channel("ch-1"))
    await add_oauth_integration(broker, db, seller_id="seller-2", **channel("ch-1"))

    body, signature = inventory_change("ch-1")
    result = await broker.inbound.process(db, "shipbob", body, signature)

    assert result.unattributed
    assert (await db.execute(select(ProductInventory))).scalars().all() == []


@pytest.mark.asyncio
async def test_environment_scopes_targets(broker, db):
    await add_oauth_integration(broker, db, environment="sandbox", **channel("ch-1"))
    body, signature = inventory_change("ch-1", quantity=1)

    live = await broker.inbound.process(db, "shipbob", body, signature)
    assert live.handled == 0
    assert live.unattributed

    sandbox = await broker.inbound.process(db, "shipbob", body, signature, environment="sandbox")
    assert sandbox.handled == 1


@pytest.mark.asyncio
async def test_configured_account_id_attributes_events(broker, db):
    integration = await add_oauth_integration(broker, db)
    await broker.oauth.configure_webhook(db, integration, False, account_id="ch-7")
    assert integration.account_metadata == {"channel_id": "ch-7"}

    body, signature = inventory_change("ch-7")
    result = await broker.inbound.process(db, "shipbob", body, signature)
    assert result.sellers == [SELLER]


@pytest.mark.asyncio
async def test_order_event(broker, db):
    await add_oauth_integration(broker, db, **channel("ch-1"))
    body, signature = signed(
        "shipbob-hook-secret",
        {
            "topic": "shipment_delivered",
            "channel_id": "ch-1",
            "data": {"order_id": "SO-77", "tracking": {"tracking_number": "1Z999"}},
        },
    )

    result = await broker.inbound.process(db, "shipbob", body, signature)

    assert result.event == "order.fulfilled"
    order = (await db.execute(select(ExternalOrder))).scalar_one()
    assert (order.seller_id, order.external_id, order.status, order.tracking_number) == (
        SELLER,
        "SO-77",
        "fulfilled",
        "1Z999",
    )


@pytest.mark.asyncio
async def test_unsupported_event_is_recorded(broker, db):
    integration = await add_oauth_integration(broker, db, **channel("ch-1"))
    body, signature = signed("shipbob-hook-secret", {"topic": "return_created", "channel_id": "ch-1", "data": {}})

    result = await broker.inbound.process(db, "shipbob", body, signature)

    assert result.unsupported
    assert result.handled == 0
    history = (
        await db.execute(select(IntegrationHistory).where(IntegrationHistory.integration_id == integration.id))
    ).scalars().all()
    assert [h.event for h in history] == ["error"]
    assert "return_created" in history[0].message


@pytest.mark.asyncio
async def test_event_outside_provider_category_is_ignored(broker, db):
    await broker.oauth.connect_with_credentials(
        db, SELLER, "fourpx", "live", {"api_key": "k"}, account_metadata={"customer_code": "C1"}
    )
    # payment.received passes through unmapped; warehouses may not send it
    body, signature = signed(
        "fourpx-hook-secret",
        {"event_type": "payment.received", "customer_code": "C1", "payload": {"order_no": "X"}},
    )

    result = await broker.inbound.process(db, "fourpx", body, signature)

    assert result.event == "payment.received"
    assert result.ignored == 1
    assert result.handled == 0
    assert (await db.execute(select(ExternalOrder))).scalars().all() == []


@pytest.mark.asyncio
async def test_invalid_json(broker, db):
    body = b"not json"
    with pytest.raises(InvalidRequest):
        await broker.inbound.process(db, "shipbob", body, CredentialVault.sign("shipbob-hook-secret", body))
