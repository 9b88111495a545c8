"""Tests for the maintenance jobs."""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from broker.db.models import SellerIntegration, SyncJob, utcnow
from broker.worker.scheduler import purge_history, refresh_expiring_tokens, setup_scheduler

from conftest import add_oauth_integration

TOKEN_URL = "https://auth.shipbob.com/connect/token"


@pytest.mark.asyncio
async def test_refresh_expiring_tokens(broker, db, provider):
    provider.add(
        "POST",
        TOKEN_URL,
        (200, {"access_token": "fresh", "expires_in": 3600}),
        (400, {"error": "invalid_grant"}),
    )
    await add_oauth_integration(broker, db, expires_in=60)
    await add_oauth_integration(broker, db, seller_id="seller-2", expires_in=60)
    await add_oauth_integration(broker, db, seller_id="seller-3", expires_in=7200)

    refreshed = await refresh_expiring_tokens(broker)

    # One refreshed, one refused; the long-lived token is untouched
    assert refreshed == 1
    assert len(provider.calls(TOKEN_URL)) == 2
    rows = (await db.execute(select(SellerIntegration.seller_id, SellerIntegration.status))).all()
    statuses = dict(rows)
    assert sorted([statuses["seller-1"], statuses["seller-2"]]) == ["connected", "error"]
    assert statuses["seller-3"] == "connected"


@pytest.mark.asyncio
async def test_purge_history(broker, db):
    job_id = await broker.tracker.start("seller-1", "shipbob")
    await broker.tracker.complete(job_id)
    await db.execute(
        update(SyncJob).where(SyncJob.id == job_id).values(finished_at=utcnow() - timedelta(days=30))
    )
    await db.commit()

    assert await purge_history(broker) == {"sync_jobs": 1, "deliveries": 0}


@pytest.mark.asyncio
async def test_setup_scheduler_registers_jobs(broker):
    scheduler = setup_scheduler(broker)
    assert {job.id for job in scheduler.get_jobs()} == {"oauth_state_purge", "token_refresh", "retention_purge"}
