"""API key management routes."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from broker.api.deps import current_seller, get_broker, get_database
from broker.container import Broker
from broker.ratelimit.api_keys import PERMISSIONS

router = APIRouter(prefix="/api/api-keys", tags=["api-keys"])


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    permissions: Optional[List[str]] = None
    expires_at: Optional[datetime] = None


class ApiKeyResponse(BaseModel):
    id: int
    name: str
    key: str
    permissions: List[str]
    is_active: bool
    expires_at: Optional[datetime]
    last_used_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class ApiKeyWithSecret(ApiKeyResponse):
    secret: str


def _with_secret(record, secret: str) -> ApiKeyWithSecret:
    return ApiKeyWithSecret(**ApiKeyResponse.model_validate(record).model_dump(), secret=secret)


@router.get("", response_model=List[ApiKeyResponse])
async def list_keys(
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    return await broker.api_keys.list_for_seller(db, seller_id)


@router.get("/permissions", response_model=List[str])
async def list_permissions():
    return sorted(PERMISSIONS)


@router.post("", response_model=ApiKeyWithSecret, status_code=201)
async def create_key(
    body: ApiKeyCreate,
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    """Create a key. The secret is returned once and never again."""
    record, secret = await broker.api_keys.create(
        db, seller_id, body.name, permissions=body.permissions, expires_at=body.expires_at
    )
    return _with_secret(record, secret)


@router.post("/{key_id}/deactivate", response_model=ApiKeyResponse)
async def deactivate_key(
    key_id: int,
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    return await broker.api_keys.deactivate(db, seller_id, key_id)


@router.post("/{key_id}/rotate", response_model=ApiKeyWithSecret)
async def rotate_key(
    key_id: int,
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    """Replace the key and secret; the old key stops working immediately."""
    record, secret = await broker.api_keys.rotate(db, seller_id, key_id)
    return _with_secret(record, secret)
