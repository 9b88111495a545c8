"""Seller integration management routes."""

from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from broker.api.deps import current_seller, get_broker, get_database
from broker.container import Broker
from broker.integrations import repository
from broker.notify import events

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


class IntegrationResponse(BaseModel):
    id: int
    provider: str
    environment: str
    status: str
    status_message: Optional[str]
    expires_at: Optional[datetime]
    connected_at: Optional[datetime]
    webhook_enabled: bool
    webhook_url: Optional[str]
    webhook_events: Optional[List[str]]
    updated_at: datetime

    class Config:
        from_attributes = True


class ProviderResponse(BaseModel):
    name: str
    display_name: str
    category: str
    auth_mode: str
    environments: List[str]
    operations: List[str]
    credential_fields: List[str]


class HistoryResponse(BaseModel):
    event: str
    message: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class ConnectRequest(BaseModel):
    environment: str = "live"
    credentials: dict[str, str]
    metadata: Optional[dict[str, Any]] = None


class WebhookConfigRequest(BaseModel):
    environment: str = "live"
    enabled: bool
    url: Optional[str] = None
    events: Optional[List[str]] = None
    secret: Optional[str] = Field(None, min_length=16)
    # Provider account named in the provider's own webhooks
    account_id: Optional[str] = None


class WebhookConfigResponse(IntegrationResponse):
    # Only present when a secret was generated or replaced
    secret: Optional[str] = None


class TestResponse(BaseModel):
    ok: bool
    status_code: int
    request_id: str


@router.get("", response_model=List[IntegrationResponse])
async def list_integrations(
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
):
    """List the seller's integrations across providers and environments."""
    return await repository.list_integrations(db, seller_id)


@router.get("/providers", response_model=List[ProviderResponse])
async def list_providers(broker: Broker = Depends(get_broker)):
    """Providers a seller can connect to."""
    return [
        ProviderResponse(
            name=d.name,
            display_name=d.label,
            category=d.category.value,
            auth_mode=d.auth_mode.value,
            environments=sorted(d.base_urls),
            operations=sorted(d.operations),
            credential_fields=d.credential_fields,
        )
        for d in broker.registry.all()
    ]


@router.post("/{provider}/connect", response_model=IntegrationResponse)
async def connect(
    provider: str,
    body: ConnectRequest,
    background_tasks: BackgroundTasks,
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    """Connect a non-OAuth provider with raw credential fields."""
    integration = await broker.oauth.connect_with_credentials(
        db, seller_id, provider, body.environment, body.credentials, account_metadata=body.metadata
    )
    background_tasks.add_task(
        broker.dispatcher.dispatch,
        seller_id,
        events.INTEGRATION_CONNECTED,
        {"provider": provider, "environment": body.environment},
    )
    return integration


@router.post("/{provider}/disconnect", response_model=IntegrationResponse)
async def disconnect(
    provider: str,
    background_tasks: BackgroundTasks,
    environment: str = Query("live"),
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    """Disconnect and scrub stored credentials. Safe to repeat."""
    integration = await repository.require_integration(db, seller_id, provider, environment)
    was_connected = integration.is_connected
    integration = await broker.oauth.disconnect(db, integration)
    if was_connected:
        background_tasks.add_task(
            broker.dispatcher.dispatch,
            seller_id,
            events.INTEGRATION_DISCONNECTED,
            {"provider": provider, "environment": environment},
        )
    return integration


@router.post("/{provider}/test", response_model=TestResponse)
async def test_integration(
    provider: str,
    environment: str = Query("live"),
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    """Call the provider's test operation with the stored credentials."""
    integration = await repository.require_integration(db, seller_id, provider, environment)
    response = await broker.integrations.test_connection(db, integration)
    return TestResponse(ok=True, status_code=response.status_code, request_id=response.request_id)


@router.put("/{provider}/webhook", response_model=WebhookConfigResponse)
async def configure_webhook(
    provider: str,
    body: WebhookConfigRequest,
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    """Enable, disable or retarget the integration's outbound webhook."""
    integration = await repository.require_integration(db, seller_id, provider, body.environment)
    secret = await broker.oauth.configure_webhook(
        db,
        integration,
        body.enabled,
        url=body.url,
        events=body.events,
        secret=body.secret,
        account_id=body.account_id,
    )
    response = WebhookConfigResponse.model_validate(integration)
    response.secret = secret
    return response


@router.get("/{provider}/history", response_model=List[HistoryResponse])
async def integration_history(
    provider: str,
    environment: str = Query("live"),
    limit: int = Query(50, ge=1, le=500),
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
):
    """Lifecycle events for one integration, newest first."""
    integration = await repository.require_integration(db, seller_id, provider, environment)
    return await repository.get_history(db, integration.id, limit=limit)
