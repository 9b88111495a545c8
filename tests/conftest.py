"""Shared fixtures: temporary SQLite databases and fake provider endpoints."""

from datetime import timedelta
from typing import Any, Callable, Union
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from broker.config import Settings
from broker.container import Broker
from broker.db.models import Base, SellerIntegration, utcnow
from broker.ratelimit.limiter import LocalSlidingWindow

SELLER = "seller-1"

Reply = Union[tuple, Callable[[httpx.Request], httpx.Response], Exception]


class FakeProvider:
    """
    Route table for ``httpx.MockTransport``.

    Each route holds a queue of replies; the last reply repeats once the
    queue is down to one. A reply is ``(status, json_body)``, ``(status,
    json_body, headers)``, a callable taking the request, or an exception
    to raise.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], list[Reply]] = {}

    def add(self, method: str, url: str, *replies: Reply):
        self.routes.setdefault((method.upper(), url), []).extend(replies)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        queue = self.routes.get((request.method, url))
        if not queue:
            return httpx.Response(404, json={"error": "no route", "url": url})
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        status, body, *rest = reply
        return httpx.Response(status, json=body, headers=rest[0] if rest else None)

    def calls(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url).split("?")[0] == url]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def form_of(request: httpx.Request) -> dict[str, str]:
    """Decode an urlencoded request body."""
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def query_of(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def make_settings(tmp_path, **overrides: Any) -> Settings:
    values = dict(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'broker.db'}",
        encryption_key=Fernet.generate_key().decode(),
        public_base_url="https://broker.test",
        frontend_url="https://app.test",
        oauth_clients={
            "shipbob": {"client_id": "shipbob-client", "client_secret": "shipbob-secret"},
            "quickbooks": {"client_id": "qb-client", "client_secret": "qb-secret"},
        },
        provider_webhook_secrets={"shipbob": "shipbob-hook-secret", "fourpx": "fourpx-hook-secret"},
        rate_limit_backend="local",
        rate_limit_tiers={
            "free": {"limit": 3, "window": 60},
            "basic": {"limit": 5, "window": 60},
        },
        default_plan="basic",
        webhook_backoff_seconds=0,
        sync_batch_backoff_seconds=0,
        sync_page_size=2,
        scheduler_enabled=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def build_broker(tmp_path, provider: FakeProvider, receiver: FakeProvider, **overrides) -> Broker:
    settings = make_settings(tmp_path, **overrides)
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    return Broker.build(
        settings,
        engine=engine,
        provider_client=provider.client(),
        webhook_client=receiver.client(),
        rate_limit_backend=LocalSlidingWindow(),
    )


@pytest.fixture
def provider() -> FakeProvider:
    """Stands in for third-party provider APIs and token endpoints."""
    return FakeProvider()


@pytest.fixture
def receiver() -> FakeProvider:
    """Stands in for seller webhook receivers."""
    return FakeProvider()


@pytest.fixture
async def broker(tmp_path, provider, receiver):
    broker = build_broker(tmp_path, provider, receiver)
    async with broker.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield broker
    await broker.close()


@pytest.fixture
async def db(broker):
    async with broker.session_factory() as session:
        yield session


async def add_oauth_integration(
    broker: Broker,
    db,
    provider: str = "shipbob",
    environment: str = "live",
    seller_id: str = SELLER,
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_in: int = 3600,
    **fields: Any,
):
    """Insert a connected OAuth integration without going through a callback."""
    integration = SellerIntegration(
        seller_id=seller_id,
        provider=provider,
        environment=environment,
        status="connected",
        access_token=broker.vault.encrypt(access_token),
        refresh_token=broker.vault.encrypt_optional(refresh_token),
        token_type="Bearer",
        expires_at=utcnow() + timedelta(seconds=expires_in),
        connected_at=utcnow(),
        **fields,
    )
    db.add(integration)
    await db.commit()
    return integration
