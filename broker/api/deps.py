"""FastAPI dependencies."""

from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from broker.container import Broker
from broker.db.models import ApiKey
from broker.errors import InvalidApiKey, QuotaExceeded


def get_broker(request: Request) -> Broker:
    """The wired component graph built at startup."""
    return request.app.state.broker


async def get_database(broker: Broker = Depends(get_broker)) -> AsyncIterator[AsyncSession]:
    """Dependency for database session."""
    async with broker.session_factory() as session:
        yield session


async def current_seller(
    x_seller_id: str = Header(..., alias="X-Seller-Id")
) -> str:
    """
    Seller identity for dashboard routes.

    Sessions are handled upstream; the gateway forwards the authenticated
    seller id in the ``X-Seller-Id`` header.
    """
    seller_id = x_seller_id.strip()
    if not seller_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Seller session required")
    return seller_id


def require_api_key(permission: str):
    """
    Build a dependency that authenticates ``X-API-Key``, applies the seller's
    rate limit and checks ``permission``.

    Raises:
        InvalidApiKey: 401 for missing, unknown, inactive or expired keys
        QuotaExceeded: 429 with Retry-After
        PermissionDenied: 403 when the key lacks ``permission``
    """

    async def dependency(
        request: Request,
        x_api_key: str | None = Header(None, alias="X-API-Key"),
        db: AsyncSession = Depends(get_database),
        broker: Broker = Depends(get_broker),
    ) -> ApiKey:
        if not x_api_key:
            raise InvalidApiKey("X-API-Key header required")

        decision = await broker.rate_limiter.check(db, x_api_key)
        if decision.reason in ("invalid_key", "inactive", "expired"):
            raise InvalidApiKey(f"API key rejected: {decision.reason}")
        if not decision.allowed:
            raise QuotaExceeded(decision.retry_after, limit=decision.limit)

        broker.api_keys.require_permission(decision.api_key, permission)
        request.state.rate_limit_headers = decision.headers
        return decision.api_key

    return dependency
