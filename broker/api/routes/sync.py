"""Sync job routes."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from broker.api.deps import current_seller, get_broker, get_database
from broker.container import Broker
from broker.db.models import SyncJob
from broker.errors import SyncJobNotFound

router = APIRouter(prefix="/api/sync", tags=["sync"])


class StartSyncRequest(BaseModel):
    environment: str = "live"
    kind: str = "inventory"
    total_estimate: int = Field(0, ge=0)


class SyncJobResponse(BaseModel):
    id: str
    provider: str
    environment: str
    kind: str
    status: str
    processed: int
    total: int
    succeeded: int
    failed: int
    progress_percent: float
    error_message: Optional[str]
    started_at: datetime
    finished_at: Optional[datetime]
    updated_at: datetime

    class Config:
        from_attributes = True


async def _owned_job(broker: Broker, job_id: str, seller_id: str) -> SyncJob:
    job = await broker.tracker.get(job_id)
    if job.seller_id != seller_id:
        raise SyncJobNotFound(f"Sync job {job_id} not found")
    return job


@router.post("/{provider}", response_model=SyncJobResponse, status_code=202)
async def start_sync(
    provider: str,
    body: StartSyncRequest,
    background_tasks: BackgroundTasks,
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    """Start an inventory or order sync; poll the returned job for progress."""
    job_id = await broker.sync.start(
        db, seller_id, provider, environment=body.environment, kind=body.kind, total_estimate=body.total_estimate
    )
    background_tasks.add_task(broker.sync.run, job_id)
    return await broker.tracker.get(job_id)


@router.get("/jobs", response_model=List[SyncJobResponse])
async def list_jobs(
    include_finished: bool = Query(False),
    seller_id: str = Depends(current_seller),
    broker: Broker = Depends(get_broker),
):
    """Running jobs, or the most recent jobs with ``include_finished``."""
    if include_finished:
        return await broker.tracker.list_recent(seller_id)
    return await broker.tracker.list_active(seller_id)


@router.get("/jobs/{job_id}", response_model=SyncJobResponse)
async def get_job(
    job_id: str,
    seller_id: str = Depends(current_seller),
    broker: Broker = Depends(get_broker),
):
    return await _owned_job(broker, job_id, seller_id)


@router.post("/jobs/{job_id}/cancel", response_model=SyncJobResponse)
async def cancel_job(
    job_id: str,
    seller_id: str = Depends(current_seller),
    broker: Broker = Depends(get_broker),
):
    """Cancel a running job; it stops at the next batch boundary."""
    await _owned_job(broker, job_id, seller_id)
    return await broker.tracker.cancel(job_id)
