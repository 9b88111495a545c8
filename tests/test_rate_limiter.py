"""Tests for plan-based sliding-window rate limiting."""

import asyncio
import uuid
from datetime import timedelta

import pytest
import redis.asyncio as redis

from broker.config import settings
from broker.db.models import SellerSubscription, utcnow
from broker.ratelimit.limiter import LocalSlidingWindow, RateLimiter, RedisSlidingWindow

from conftest import SELLER


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


async def _redis_available() -> bool:
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.aclose()
        return True
    except Exception:
        return False


@pytest.mark.asyncio
async def test_local_window_slides():
    clock = FakeClock()
    window = LocalSlidingWindow(clock=clock)

    for expected in (1, 2):
        result = await window.hit("k", limit=2, window_seconds=10)
        assert result.allowed and result.count == expected
        clock.now += 1

    denied = await window.hit("k", limit=2, window_seconds=10)
    assert not denied.allowed
    # Oldest hit at t=1000 leaves the window at t=1010
    assert denied.retry_after_ms == 8000

    clock.now = 1010.0
    assert (await window.hit("k", limit=2, window_seconds=10)).allowed


@pytest.mark.asyncio
async def test_allows_plan_limit_then_denies(broker, db):
    record, _ = await broker.api_keys.create(db, SELLER, "Storefront")

    decisions = [await broker.rate_limiter.check(db, record.key) for _ in range(5)]
    assert all(d.allowed for d in decisions)
    assert [d.remaining for d in decisions] == [4, 3, 2, 1, 0]
    assert decisions[0].plan == "basic"
    assert decisions[0].headers["X-RateLimit-Limit"] == "5"

    denied = await broker.rate_limiter.check(db, record.key)
    assert not denied.allowed
    assert denied.reason == "quota_exceeded"
    assert denied.retry_after > 0
    assert denied.headers["Retry-After"] == str(denied.retry_after)

    await db.refresh(record)
    assert record.last_used_at is not None


@pytest.mark.asyncio
async def test_concurrent_checks_never_exceed_limit(broker, db):
    record, _ = await broker.api_keys.create(db, SELLER, "Storefront")

    async def check():
        async with broker.session_factory() as session:
            return await broker.rate_limiter.check(session, record.key)

    decisions = await asyncio.gather(*(check() for _ in range(8)))
    assert sum(d.allowed for d in decisions) == 5


@pytest.mark.asyncio
async def test_rotation_keeps_spent_quota(broker, db):
    record, _ = await broker.api_keys.create(db, SELLER, "Storefront")
    old_key = record.key
    for _ in range(5):
        assert (await broker.rate_limiter.check(db, old_key)).allowed

    rotated, _ = await broker.api_keys.rotate(db, SELLER, record.id)
    assert rotated.key != old_key

    decision = await broker.rate_limiter.check(db, rotated.key)
    assert not decision.allowed
    assert decision.reason == "quota_exceeded"


@pytest.mark.asyncio
async def test_plan_comes_from_subscription(broker, db):
    db.add(SellerSubscription(seller_id=SELLER, plan="free"))
    await db.commit()
    record, _ = await broker.api_keys.create(db, SELLER, "Storefront")

    decisions = [await broker.rate_limiter.check(db, record.key) for _ in range(4)]
    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert decisions[0].plan == "free"


@pytest.mark.asyncio
async def test_unknown_plan_falls_back_to_default(broker, db):
    db.add(SellerSubscription(seller_id=SELLER, plan="platinum"))
    await db.commit()
    assert await broker.rate_limiter.plan_for(db, SELLER) == "basic"


@pytest.mark.asyncio
async def test_rejected_keys_do_not_consume_quota(broker, db):
    record, _ = await broker.api_keys.create(db, SELLER, "Storefront")
    expired, _ = await broker.api_keys.create(db, SELLER, "Temp", expires_at=utcnow() - timedelta(seconds=1))

    assert (await broker.rate_limiter.check(db, "mgz_nope")).reason == "invalid_key"
    assert (await broker.rate_limiter.check(db, expired.key)).reason == "expired"

    await broker.api_keys.deactivate(db, SELLER, record.id)
    for _ in range(10):
        decision = await broker.rate_limiter.check(db, record.key)
        assert decision.reason == "inactive"
        assert decision.headers == {}

    # Reactivated, the key still has its whole quota
    record.is_active = True
    await db.commit()
    assert all([(await broker.rate_limiter.check(db, record.key)).allowed for _ in range(5)])


@pytest.mark.asyncio
async def test_default_plan_must_have_a_tier(broker):
    with pytest.raises(ValueError):
        RateLimiter(LocalSlidingWindow(), broker.api_keys, {"free": {"limit": 1, "window": 1}}, "basic")


@pytest.mark.asyncio
async def test_redis_window():
    if not await _redis_available():
        pytest.skip("Redis not available")

    window = RedisSlidingWindow(settings.redis_url)
    key = f"ratelimit:test:{uuid.uuid4().hex}"
    try:
        results = [await window.hit(key, limit=3, window_seconds=30) for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.count for r in results[:3]] == [1, 2, 3]
        assert 0 < results[3].retry_after_ms <= 30000
    finally:
        await window.reset(key)
        await window.close()
