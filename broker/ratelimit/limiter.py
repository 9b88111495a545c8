"""Sliding-window rate limiting for API keys.

Quota comes from the seller's plan tier. The window counter is a Redis sorted
set updated by one Lua script, so counting and admitting a request is a single
atomic step even with many API workers. ``LocalSlidingWindow`` gives the same
guarantee inside one process for development and tests.
"""

import asyncio
import logging
import math
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Optional

import redis.asyncio as redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from broker import metrics
from broker.db.models import ApiKey, SellerSubscription
from broker.ratelimit.api_keys import ApiKeyService

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit:apikey:"

# KEYS[1] window key; ARGV now_ms, window_ms, limit, member
SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local count = redis.call('ZCARD', key)
if count < limit then
    redis.call('ZADD', key, now, ARGV[4])
    redis.call('PEXPIRE', key, window)
    return {1, count + 1, 0}
end

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local retry = window
if oldest[2] then
    retry = tonumber(oldest[2]) + window - now
end
return {0, count, retry}
"""


@dataclass
class WindowResult:
    allowed: bool
    count: int
    retry_after_ms: int


@dataclass
class RateLimitDecision:
    """Outcome of a rate-limit check."""

    allowed: bool
    limit: int = 0
    remaining: int = 0
    retry_after: Optional[int] = None  # seconds, set on quota denials
    window_seconds: int = 0
    plan: Optional[str] = None
    reason: Optional[str] = None  # invalid_key, inactive, expired, quota_exceeded
    api_key: Optional[ApiKey] = None

    @property
    def headers(self) -> dict[str, str]:
        if not self.limit:
            return {}
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RedisSlidingWindow:
    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self._redis = client

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        return self._redis

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def hit(self, key: str, limit: int, window_seconds: int) -> WindowResult:
        redis_client = await self._get_redis()
        now_ms = int(time.time() * 1000)
        allowed, count, retry_ms = await redis_client.eval(
            SLIDING_WINDOW_LUA,
            1,
            key,
            now_ms,
            window_seconds * 1000,
            limit,
            f"{now_ms}:{uuid.uuid4().hex}",
        )
        return WindowResult(bool(int(allowed)), int(count), int(retry_ms))

    async def reset(self, key: str):
        redis_client = await self._get_redis()
        await redis_client.delete(key)


class LocalSlidingWindow:
    """In-process sliding window; one lock per key."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._hits: dict[str, deque] = defaultdict(deque)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def close(self):
        self._hits.clear()

    async def hit(self, key: str, limit: int, window_seconds: int) -> WindowResult:
        async with self._locks[key]:
            now = self._clock()
            hits = self._hits[key]
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()
            if len(hits) < limit:
                hits.append(now)
                return WindowResult(True, len(hits), 0)
            retry_ms = int(math.ceil((hits[0] + window_seconds - now) * 1000))
            return WindowResult(False, len(hits), max(retry_ms, 1))

    async def reset(self, key: str):
        self._hits.pop(key, None)


class RateLimiter:
    def __init__(
        self,
        backend,
        api_keys: ApiKeyService,
        tiers: dict[str, dict[str, int]],
        default_plan: str = "basic",
    ):
        if default_plan not in tiers:
            raise ValueError(f"Default plan {default_plan!r} has no rate limit tier")
        self.backend = backend
        self.api_keys = api_keys
        self.tiers = tiers
        self.default_plan = default_plan

    async def plan_for(self, db: AsyncSession, seller_id: str) -> str:
        plan = await db.scalar(
            select(SellerSubscription.plan).where(SellerSubscription.seller_id == seller_id)
        )
        plan = (plan or self.default_plan).lower()
        if plan not in self.tiers:
            logger.warning(f"Seller {seller_id} has unknown plan {plan!r}; using {self.default_plan}")
            plan = self.default_plan
        return plan

    async def check(self, db: AsyncSession, key: str) -> RateLimitDecision:
        """
        Admit or deny one request made with ``key``.

        Unknown, inactive and expired keys are denied without touching the
        window. Admitted requests count against the window and stamp the key's
        last-used time.
        """
        record = await self.api_keys.lookup(db, key)
        if record is None:
            return RateLimitDecision(allowed=False, reason="invalid_key")
        if not record.is_active:
            return RateLimitDecision(allowed=False, reason="inactive", api_key=record)
        if record.is_expired():
            return RateLimitDecision(allowed=False, reason="expired", api_key=record)

        plan = await self.plan_for(db, record.seller_id)
        tier = self.tiers[plan]
        limit, window = int(tier["limit"]), int(tier["window"])

        result = await self.backend.hit(f"{KEY_PREFIX}{record.id}", limit, window)
        metrics.record_rate_limit(plan, result.allowed)

        if not result.allowed:
            retry_after = max(1, math.ceil(result.retry_after_ms / 1000))
            logger.info(f"Rate limit exceeded for API key {record.id} ({plan}), retry in {retry_after}s")
            return RateLimitDecision(
                allowed=False,
                limit=limit,
                remaining=0,
                retry_after=retry_after,
                window_seconds=window,
                plan=plan,
                reason="quota_exceeded",
                api_key=record,
            )

        await self.api_keys.touch(db, record)
        return RateLimitDecision(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - result.count),
            window_seconds=window,
            plan=plan,
            api_key=record,
        )
