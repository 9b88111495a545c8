"""APScheduler maintenance jobs."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from broker import metrics
from broker.container import Broker
from broker.db.models import SellerIntegration, utcnow
from broker.errors import BrokerError, ReauthorizationRequired

logger = logging.getLogger(__name__)


async def purge_oauth_states(broker: Broker) -> int:
    """Drop authorization attempts that were never completed."""
    try:
        async with broker.session_factory() as db:
            removed = await broker.state_store.purge_expired(db)
    except Exception:
        metrics.record_scheduler_run("oauth_state_purge", success=False)
        logger.exception("OAuth state purge failed")
        raise
    metrics.record_scheduler_run("oauth_state_purge", success=True)
    return removed


async def refresh_expiring_tokens(broker: Broker) -> int:
    """
    Refresh OAuth tokens that expire within the refresh margin.

    Integrations whose refresh token is refused are left in ``error`` by the
    connection manager; the remaining integrations are still processed.
    """
    horizon = utcnow() + broker.oauth.refresh_margin
    refreshed = 0
    async with broker.session_factory() as db:
        result = await db.execute(
            select(SellerIntegration).where(
                SellerIntegration.status == "connected",
                SellerIntegration.refresh_token.is_not(None),
                SellerIntegration.expires_at.is_not(None),
                SellerIntegration.expires_at <= horizon,
            )
        )
        integrations = list(result.scalars().all())
        for integration in integrations:
            descriptor = broker.registry.get(integration.provider)
            if descriptor is None or descriptor.oauth is None:
                continue
            try:
                await broker.oauth.refresh(db, integration)
                refreshed += 1
            except ReauthorizationRequired:
                logger.warning(
                    f"{integration.provider} integration {integration.id} needs reauthorization"
                )
            except BrokerError as e:
                logger.error(f"Refresh of integration {integration.id} failed: {e.message}")

    metrics.record_scheduler_run("token_refresh", success=True)
    logger.info(f"Token refresh pass: {refreshed}/{len(integrations)} refreshed")
    return refreshed


async def purge_history(broker: Broker) -> dict[str, int]:
    """Apply retention to finished sync jobs and webhook delivery logs."""
    settings = broker.settings
    try:
        jobs = await broker.tracker.purge_finished(settings.sync_job_retention_hours)
        deliveries = await broker.dispatcher.purge_deliveries(settings.webhook_delivery_retention_hours)
    except Exception:
        metrics.record_scheduler_run("retention_purge", success=False)
        logger.exception("Retention purge failed")
        raise
    metrics.record_scheduler_run("retention_purge", success=True)
    logger.info(f"Retention purge removed {jobs} sync jobs and {deliveries} deliveries")
    return {"sync_jobs": jobs, "deliveries": deliveries}


def setup_scheduler(broker: Broker) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Returns:
        Configured scheduler instance (not started)
    """
    settings = broker.settings
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        purge_oauth_states,
        IntervalTrigger(minutes=settings.state_purge_interval_minutes),
        args=[broker],
        id="oauth_state_purge",
        name="Purge expired OAuth states",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        refresh_expiring_tokens,
        IntervalTrigger(minutes=settings.token_refresh_interval_minutes),
        args=[broker],
        id="token_refresh",
        name="Refresh expiring OAuth tokens",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=120,
        replace_existing=True,
    )

    scheduler.add_job(
        purge_history,
        IntervalTrigger(minutes=settings.retention_purge_interval_minutes),
        args=[broker],
        id="retention_purge",
        name="Purge old sync jobs and webhook deliveries",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: state purge every %d minutes, token refresh every %d minutes, "
        "retention purge every %d minutes",
        settings.state_purge_interval_minutes,
        settings.token_refresh_interval_minutes,
        settings.retention_purge_interval_minutes,
    )
    return scheduler
