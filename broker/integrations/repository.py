"""Queries over SellerIntegration and its history."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from broker.db.models import IntegrationHistory, SellerIntegration
from broker.errors import IntegrationNotFound

logger = logging.getLogger(__name__)

HISTORY_EVENTS = ("connected", "disconnected", "refreshed", "error", "updated")


async def get_integration(
    db: AsyncSession, seller_id: str, provider: str, environment: str
) -> Optional[SellerIntegration]:
    result = await db.execute(
        select(SellerIntegration).where(
            SellerIntegration.seller_id == seller_id,
            SellerIntegration.provider == provider,
            SellerIntegration.environment == environment,
        )
    )
    return result.scalar_one_or_none()


async def require_integration(
    db: AsyncSession, seller_id: str, provider: str, environment: str
) -> SellerIntegration:
    integration = await get_integration(db, seller_id, provider, environment)
    if integration is None:
        raise IntegrationNotFound(f"No {environment} integration with {provider}")
    return integration


async def get_or_create_integration(
    db: AsyncSession, seller_id: str, provider: str, environment: str
) -> SellerIntegration:
    """Return the integration row for the tuple, inserting a pending one if needed."""
    integration = await get_integration(db, seller_id, provider, environment)
    if integration is not None:
        return integration

    integration = SellerIntegration(
        seller_id=seller_id,
        provider=provider,
        environment=environment,
        status="pending",
    )
    try:
        async with db.begin_nested():
            db.add(integration)
    except IntegrityError:
        # Lost an insert race with a concurrent connect attempt
        logger.debug(f"Integration {seller_id}/{provider}/{environment} created concurrently")
        return await require_integration(db, seller_id, provider, environment)
    return integration


async def list_integrations(db: AsyncSession, seller_id: str) -> list[SellerIntegration]:
    result = await db.execute(
        select(SellerIntegration)
        .where(SellerIntegration.seller_id == seller_id)
        .order_by(SellerIntegration.provider.asc(), SellerIntegration.environment.asc())
    )
    return list(result.scalars().all())


async def list_connected(
    db: AsyncSession, provider: str, environment: str
) -> list[SellerIntegration]:
    result = await db.execute(
        select(SellerIntegration).where(
            SellerIntegration.provider == provider,
            SellerIntegration.environment == environment,
            SellerIntegration.status == "connected",
        )
    )
    return list(result.scalars().all())


def add_history(
    db: AsyncSession, integration: SellerIntegration, event: str, message: Optional[str] = None
) -> IntegrationHistory:
    if event not in HISTORY_EVENTS:
        raise ValueError(f"Unknown history event: {event}")
    entry = IntegrationHistory(integration_id=integration.id, event=event, message=message)
    db.add(entry)
    return entry


async def get_history(
    db: AsyncSession, integration_id: int, limit: int = 50
) -> list[IntegrationHistory]:
    result = await db.execute(
        select(IntegrationHistory)
        .where(IntegrationHistory.integration_id == integration_id)
        .order_by(IntegrationHistory.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
