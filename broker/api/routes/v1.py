"""Public API authenticated by seller API keys."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from broker.api.deps import get_broker, get_database, require_api_key
from broker.api.routes.sync import SyncJobResponse
from broker.container import Broker
from broker.db.models import ApiKey, ExternalOrder, ProductInventory
from broker.errors import SyncJobNotFound

router = APIRouter(prefix="/api/v1", tags=["public"])


class InventoryItem(BaseModel):
    provider: str
    environment: str
    sku: str
    title: Optional[str]
    quantity: int
    location: Optional[str]
    price: Optional[Decimal]
    synced_at: datetime

    class Config:
        from_attributes = True


class OrderItem(BaseModel):
    provider: str
    environment: str
    external_id: str
    status: str
    total: Optional[Decimal]
    tracking_number: Optional[str]
    synced_at: datetime

    class Config:
        from_attributes = True


class InventorySyncRequest(BaseModel):
    provider: str
    environment: str = "live"


def _apply_limit_headers(request: Request, response: Response):
    for name, value in getattr(request.state, "rate_limit_headers", {}).items():
        response.headers[name] = value


@router.get("/inventory", response_model=List[InventoryItem])
async def list_inventory(
    request: Request,
    response: Response,
    provider: Optional[str] = None,
    sku: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    api_key: ApiKey = Depends(require_api_key("inventory:read")),
    db: AsyncSession = Depends(get_database),
):
    """Stock levels synced from the seller's connected providers."""
    _apply_limit_headers(request, response)
    query = select(ProductInventory).where(ProductInventory.seller_id == api_key.seller_id)
    if provider:
        query = query.where(ProductInventory.provider == provider)
    if sku:
        query = query.where(ProductInventory.sku == sku)
    result = await db.execute(query.order_by(ProductInventory.id).offset(offset).limit(limit))
    return result.scalars().all()


@router.get("/orders", response_model=List[OrderItem])
async def list_orders(
    request: Request,
    response: Response,
    provider: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    api_key: ApiKey = Depends(require_api_key("orders:read")),
    db: AsyncSession = Depends(get_database),
):
    _apply_limit_headers(request, response)
    query = select(ExternalOrder).where(ExternalOrder.seller_id == api_key.seller_id)
    if provider:
        query = query.where(ExternalOrder.provider == provider)
    if status:
        query = query.where(ExternalOrder.status == status)
    result = await db.execute(query.order_by(ExternalOrder.id.desc()).offset(offset).limit(limit))
    return result.scalars().all()


@router.post("/inventory/sync", response_model=SyncJobResponse, status_code=202)
async def start_inventory_sync(
    body: InventorySyncRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    api_key: ApiKey = Depends(require_api_key("inventory:write")),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    _apply_limit_headers(request, response)
    job_id = await broker.sync.start(
        db, api_key.seller_id, body.provider, environment=body.environment, kind="inventory"
    )
    background_tasks.add_task(broker.sync.run, job_id)
    return await broker.tracker.get(job_id)


@router.get("/inventory/sync/{job_id}", response_model=SyncJobResponse)
async def get_inventory_sync(
    job_id: str,
    request: Request,
    response: Response,
    api_key: ApiKey = Depends(require_api_key("inventory:read")),
    broker: Broker = Depends(get_broker),
):
    _apply_limit_headers(request, response)
    job = await broker.tracker.get(job_id)
    if job.seller_id != api_key.seller_id:
        raise SyncJobNotFound(f"Sync job {job_id} not found")
    return job
