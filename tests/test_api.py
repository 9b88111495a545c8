"""HTTP-level tests through the FastAPI app."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from broker.main import app
from broker.security.vault import CredentialVault

from conftest import SELLER, build_broker, query_of

SELLER_HEADERS = {"X-Seller-Id": SELLER}
RETURN_URL = "https://app.test/seller/dashboard/integrations"
SANDBOX_TOKEN_URL = "https://authstage.shipbob.com/connect/token"
HOOK_URL = "https://hooks.seller.test/broker"


@pytest.fixture
def client(tmp_path, provider, receiver):
    broker = build_broker(tmp_path, provider, receiver)
    app.state.broker = broker
    with TestClient(app) as client:
        yield client
    del app.state.broker
    asyncio.run(broker.close())


def authorize(client, environment="sandbox"):
    response = client.get(
        "/api/integrations/shipbob/authorize",
        params={"environment": environment},
        headers=SELLER_HEADERS,
        follow_redirects=False,
    )
    assert response.status_code == 307
    return response.headers["location"]


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_oauth_round_trip_and_replay(client, provider):
    provider.add(
        "POST",
        SANDBOX_TOKEN_URL,
        (200, {"access_token": "T1", "refresh_token": "R1", "expires_in": 3600, "token_type": "Bearer"}),
    )

    location = authorize(client)
    assert location.startswith("https://authstage.shipbob.com/connect/authorize?")
    query = query_of(location)
    assert query["client_id"] == "shipbob-client"
    assert query["redirect_uri"] == "https://broker.test/api/integrations/shipbob/callback/sandbox"

    callback = "/api/integrations/shipbob/callback/sandbox"
    params = {"code": "auth-code", "state": query["state"]}
    response = client.get(callback, params=params, follow_redirects=False)
    assert response.headers["location"].startswith(RETURN_URL)
    assert query_of(response.headers["location"])["status"] == "connected"

    replay = client.get(callback, params=params, follow_redirects=False)
    result = query_of(replay.headers["location"])
    assert result["status"] == "error"
    assert result["code"] == "invalid_state"
    assert len(provider.calls(SANDBOX_TOKEN_URL)) == 1

    integrations = client.get("/api/integrations", headers=SELLER_HEADERS).json()
    assert [(i["provider"], i["environment"], i["status"]) for i in integrations] == [
        ("shipbob", "sandbox", "connected")
    ]
    # Tokens never leave the broker
    assert "access_token" not in integrations[0]

    history = client.get(
        "/api/integrations/shipbob/history", params={"environment": "sandbox"}, headers=SELLER_HEADERS
    ).json()
    assert [h["event"] for h in history] == ["connected"]


def test_provider_error_redirects_with_code(client):
    location = authorize(client)
    response = client.get(
        "/api/integrations/shipbob/callback/sandbox",
        params={"error": "access_denied", "state": query_of(location)["state"]},
        follow_redirects=False,
    )
    result = query_of(response.headers["location"])
    assert result["status"] == "error"
    assert result["code"] == "token_exchange_failed"
    assert result["provider_error"] == "access_denied"


def test_authorize_unsupported_provider_redirects(client):
    response = client.get(
        "/api/integrations/fourpx/authorize", headers=SELLER_HEADERS, follow_redirects=False
    )
    result = query_of(response.headers["location"])
    assert (result["status"], result["code"]) == ("error", "unsupported_provider")


def test_seller_header_required(client):
    assert client.get("/api/integrations").status_code == 422


def test_providers_catalog(client):
    providers = {p["name"]: p for p in client.get("/api/integrations/providers").json()}
    assert providers["shipbob"]["auth_mode"] == "oauth2"
    assert providers["shipbob"]["environments"] == ["live", "sandbox"]
    assert providers["fourpx"]["credential_fields"] == ["api_key"]


def test_connect_test_and_disconnect(client, provider, receiver):
    provider.add("GET", "https://open.4px.com/api/service/ping", (200, {"result": "pong"}))
    receiver.add("POST", HOOK_URL, (200, {}))
    created = client.post(
        "/api/webhooks/endpoints", json={"url": HOOK_URL}, headers=SELLER_HEADERS
    ).json()

    response = client.post(
        "/api/integrations/fourpx/connect",
        json={"credentials": {"api_key": "4px-key"}},
        headers=SELLER_HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "connected"

    tested = client.post("/api/integrations/fourpx/test", headers=SELLER_HEADERS).json()
    assert tested["ok"] and tested["status_code"] == 200
    assert provider.requests[0].headers["X-API-Key"] == "4px-key"

    assert client.post("/api/integrations/fourpx/disconnect", headers=SELLER_HEADERS).json()["status"] == "disconnected"
    assert client.post("/api/integrations/fourpx/disconnect", headers=SELLER_HEADERS).status_code == 200

    # Connected and disconnected announced once each, signed with the endpoint secret
    events = [json.loads(r.content)["event"] for r in receiver.requests]
    assert events == ["integration.connected", "integration.disconnected"]

    request = receiver.requests[0]
    assert CredentialVault.verify(created["secret"], request.content, request.headers["X-Signature"])


def test_connect_missing_fields(client):
    response = client.post(
        "/api/integrations/fourpx/connect", json={"credentials": {}}, headers=SELLER_HEADERS
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "invalid_credentials"


def test_provider_errors_map_to_status(client, provider):
    provider.add("GET", "https://open.4px.com/api/service/ping", (503, {}), (429, {}, {"Retry-After": "12"}), (400, {"msg": "bad"}))
    client.post("/api/integrations/fourpx/connect", json={"credentials": {"api_key": "k"}}, headers=SELLER_HEADERS)

    first = client.post("/api/integrations/fourpx/test", headers=SELLER_HEADERS)
    assert first.status_code == 503
    assert first.json()["error"]["code"] == "provider_unavailable"

    second = client.post("/api/integrations/fourpx/test", headers=SELLER_HEADERS)
    assert second.status_code == 503
    assert second.headers["Retry-After"] == "12"

    third = client.post("/api/integrations/fourpx/test", headers=SELLER_HEADERS)
    assert third.status_code == 422
    assert third.json()["error"]["provider_body"] == {"msg": "bad"}


def test_unknown_integration(client):
    response = client.post("/api/integrations/fourpx/test", headers=SELLER_HEADERS)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "integration_not_found"


def test_api_key_flow_with_rate_limit(client):
    created = client.post(
        "/api/api-keys", json={"name": "Storefront", "permissions": ["inventory:read"]}, headers=SELLER_HEADERS
    )
    assert created.status_code == 201
    key = created.json()["key"]
    assert created.json()["secret"]
    assert "secret" not in client.get("/api/api-keys", headers=SELLER_HEADERS).json()[0]

    headers = {"X-API-Key": key}
    for remaining in (4, 3, 2, 1, 0):
        response = client.get("/api/v1/inventory", headers=headers)
        assert response.status_code == 200
        assert response.json() == []
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == str(remaining)

    limited = client.get("/api/v1/inventory", headers=headers)
    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) > 0
    assert limited.headers["X-RateLimit-Remaining"] == "0"
    assert limited.json()["error"]["code"] == "quota_exceeded"


def test_api_key_rejections(client):
    assert client.get("/api/v1/inventory").status_code == 401
    assert client.get("/api/v1/inventory", headers={"X-API-Key": "mgz_nope"}).status_code == 401

    key = client.post(
        "/api/api-keys", json={"name": "Orders only", "permissions": ["orders:read"]}, headers=SELLER_HEADERS
    ).json()
    assert client.get("/api/v1/inventory", headers={"X-API-Key": key["key"]}).status_code == 403
    assert client.get("/api/v1/orders", headers={"X-API-Key": key["key"]}).status_code == 200

    rotated = client.post(f"/api/api-keys/{key['id']}/rotate", headers=SELLER_HEADERS).json()
    assert client.get("/api/v1/orders", headers={"X-API-Key": key["key"]}).status_code == 401
    assert client.get("/api/v1/orders", headers={"X-API-Key": rotated["key"]}).status_code == 200

    client.post(f"/api/api-keys/{key['id']}/deactivate", headers=SELLER_HEADERS)
    assert client.get("/api/v1/orders", headers={"X-API-Key": rotated["key"]}).status_code == 401

    bad = client.post("/api/api-keys", json={"name": "x", "permissions": ["root"]}, headers=SELLER_HEADERS)
    assert bad.status_code == 400


def test_sync_job_endpoints(client, provider):
    provider.add(
        "GET",
        "https://open.4px.com/api/inventory",
        (200, {"data": {"list": [{"sku_code": "A", "stock": 3, "warehouse_code": "SZ"}]}}),
    )
    client.post("/api/integrations/fourpx/connect", json={"credentials": {"api_key": "k"}}, headers=SELLER_HEADERS)

    started = client.post("/api/sync/fourpx", json={"kind": "inventory"}, headers=SELLER_HEADERS)
    assert started.status_code == 202
    job_id = started.json()["id"]

    # Background task has run by the time the response is returned
    job = client.get(f"/api/sync/jobs/{job_id}", headers=SELLER_HEADERS).json()
    assert job["status"] == "completed"
    assert job["processed"] == 1
    assert job["progress_percent"] == 100.0

    assert client.get("/api/sync/jobs", headers=SELLER_HEADERS).json() == []
    recent = client.get("/api/sync/jobs", params={"include_finished": True}, headers=SELLER_HEADERS).json()
    assert [j["id"] for j in recent] == [job_id]

    assert client.get(f"/api/sync/jobs/{job_id}", headers={"X-Seller-Id": "seller-2"}).status_code == 404

    key = client.post(
        "/api/api-keys", json={"name": "Inv", "permissions": ["inventory:read"]}, headers=SELLER_HEADERS
    ).json()["key"]
    items = client.get("/api/v1/inventory", params={"provider": "fourpx"}, headers={"X-API-Key": key}).json()
    assert [(i["sku"], i["quantity"], i["location"]) for i in items] == [("A", 3, "SZ")]


def test_sync_requires_connection(client):
    response = client.post("/api/sync/shipbob", json={}, headers=SELLER_HEADERS)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "integration_not_found"


def test_webhook_endpoints(client, receiver):
    receiver.add("POST", HOOK_URL, (200, {}))
    created = client.post(
        "/api/webhooks/endpoints", json={"url": HOOK_URL, "name": "Main"}, headers=SELLER_HEADERS
    )
    assert created.status_code == 201
    endpoint_id = created.json()["id"]

    listed = client.get("/api/webhooks/endpoints", headers=SELLER_HEADERS).json()
    assert [e["id"] for e in listed] == [endpoint_id]
    assert "secret" not in listed[0]

    tested = client.post(f"/api/webhooks/endpoints/{endpoint_id}/test", headers=SELLER_HEADERS).json()
    assert tested["success"] and tested["attempts"] == 1

    deliveries = client.get("/api/webhooks/deliveries", headers=SELLER_HEADERS).json()
    assert [d["event"] for d in deliveries] == ["webhook.test"]

    assert client.delete(f"/api/webhooks/endpoints/{endpoint_id}", headers={"X-Seller-Id": "seller-2"}).status_code == 404
    assert client.delete(f"/api/webhooks/endpoints/{endpoint_id}", headers=SELLER_HEADERS).status_code == 204
    assert client.get("/api/webhooks/endpoints", headers=SELLER_HEADERS).json() == []


def test_inbound_webhook_route(client):
    client.post(
        "/api/integrations/fourpx/connect",
        json={"credentials": {"api_key": "k"}, "metadata": {"customer_code": "C1"}},
        headers=SELLER_HEADERS,
    )
    body = json.dumps(
        {"event_type": "INVENTORY_CHANGE", "customer_code": "C1", "payload": {"sku_code": "B", "stock": 2}}
    ).encode()

    rejected = client.post("/api/webhooks/ingest/fourpx", content=body, headers={"X-Signature": "bad"})
    assert rejected.status_code == 401

    accepted = client.post(
        "/api/webhooks/ingest/fourpx",
        content=body,
        headers={"X-Webhook-Signature": CredentialVault.sign("fourpx-hook-secret", body)},
    )
    assert accepted.status_code == 200
    assert accepted.json() == {
        "event": "inventory.updated",
        "handled": 1,
        "ignored": 0,
        "unsupported": False,
        "unattributed": False,
    }

    stranger = json.dumps(
        {"event_type": "INVENTORY_CHANGE", "customer_code": "C9", "payload": {"sku_code": "B", "stock": 5}}
    ).encode()
    dropped = client.post(
        "/api/webhooks/ingest/fourpx",
        content=stranger,
        headers={"X-Signature": CredentialVault.sign("fourpx-hook-secret", stranger)},
    )
    assert dropped.status_code == 200
    assert dropped.json()["unattributed"] is True
    assert dropped.json()["handled"] == 0
