"""Inbound provider webhooks and seller webhook endpoints."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from broker.api.deps import current_seller, get_broker, get_database
from broker.container import Broker
from broker.db.models import SellerWebhook

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class InboundResponse(BaseModel):
    event: Optional[str]
    handled: int
    ignored: int
    unsupported: bool
    unattributed: bool


class EndpointCreate(BaseModel):
    url: str = Field(..., pattern=r"^https?://")
    name: Optional[str] = None
    events: Optional[List[str]] = None


class EndpointResponse(BaseModel):
    id: int
    name: Optional[str]
    url: str
    events: Optional[List[str]]
    enabled: bool
    last_sent_at: Optional[datetime]
    send_count: int
    error_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class EndpointCreated(EndpointResponse):
    secret: str


class DeliveryResponse(BaseModel):
    delivery_id: str
    event: str
    target_url: str
    status: str
    attempts: int
    response_status: Optional[int]
    error_message: Optional[str]
    response_time_ms: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


class TestDeliveryResponse(BaseModel):
    delivery_id: str
    success: bool
    attempts: int
    status_code: Optional[int]
    error: Optional[str]


async def _get_endpoint(db: AsyncSession, seller_id: str, endpoint_id: int) -> SellerWebhook:
    result = await db.execute(
        select(SellerWebhook).where(SellerWebhook.id == endpoint_id, SellerWebhook.seller_id == seller_id)
    )
    endpoint = result.scalar_one_or_none()
    if endpoint is None:
        raise HTTPException(status_code=404, detail="Webhook endpoint not found")
    return endpoint


@router.post("/ingest/{provider}", response_model=InboundResponse)
async def ingest(
    provider: str,
    request: Request,
    environment: str = Query("live"),
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
    x_webhook_signature: Optional[str] = Header(None, alias="X-Webhook-Signature"),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    """
    Receive a provider push notification.

    The raw body is verified against the provider's shared secret before
    it is parsed. Events the platform does not handle are acknowledged so
    the provider does not retry them.
    """
    body = await request.body()
    result = await broker.inbound.process(
        db, provider, body, x_signature or x_webhook_signature, environment=environment
    )
    return InboundResponse(
        event=result.event,
        handled=result.handled,
        ignored=result.ignored,
        unsupported=result.unsupported,
        unattributed=result.unattributed,
    )


@router.get("/endpoints", response_model=List[EndpointResponse])
async def list_endpoints(
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
):
    result = await db.execute(
        select(SellerWebhook).where(SellerWebhook.seller_id == seller_id).order_by(SellerWebhook.id)
    )
    return result.scalars().all()


@router.post("/endpoints", response_model=EndpointCreated, status_code=201)
async def create_endpoint(
    body: EndpointCreate,
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    """Register a callback URL. The signing secret is shown only in this response."""
    secret = broker.vault.generate_secret()
    endpoint = SellerWebhook(
        seller_id=seller_id,
        name=body.name,
        url=body.url,
        events=body.events,
        secret=broker.vault.encrypt(secret),
        enabled=True,
    )
    db.add(endpoint)
    await db.commit()
    await db.refresh(endpoint)
    return EndpointCreated(**EndpointResponse.model_validate(endpoint).model_dump(), secret=secret)


@router.delete("/endpoints/{endpoint_id}", status_code=204)
async def delete_endpoint(
    endpoint_id: int,
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
):
    endpoint = await _get_endpoint(db, seller_id, endpoint_id)
    await db.delete(endpoint)
    await db.commit()


@router.post("/endpoints/{endpoint_id}/test", response_model=TestDeliveryResponse)
async def test_endpoint(
    endpoint_id: int,
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    """Send a signed ``webhook.test`` event to the endpoint and report the outcome."""
    endpoint = await _get_endpoint(db, seller_id, endpoint_id)
    result = await broker.dispatcher.send_test(seller_id, endpoint)
    return TestDeliveryResponse(
        delivery_id=result.delivery_id,
        success=result.success,
        attempts=result.attempts,
        status_code=result.status_code,
        error=result.error,
    )


@router.get("/deliveries", response_model=List[DeliveryResponse])
async def list_deliveries(
    limit: int = Query(50, ge=1, le=500),
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    return await broker.dispatcher.list_deliveries(db, seller_id, limit=limit)
