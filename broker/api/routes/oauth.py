"""OAuth authorize and callback routes.

Both end in a redirect: to the provider on authorize, and back to the seller's
integrations screen on callback, with ``status=connected`` or
``status=error&code=<error code>``.
"""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from broker.api.deps import current_seller, get_broker, get_database
from broker.container import Broker
from broker.errors import BrokerError
from broker.notify import events

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["oauth"])

# Provider callback query parameters kept as non-secret account context
ACCOUNT_PARAMS = {"realmId": "realm_id", "tenantId": "tenant_id", "shop": "shop"}


def _return_url(broker: Broker, provider: str, environment: str, **params) -> str:
    settings = broker.settings
    query = urlencode({"provider": provider, "environment": environment, **params})
    return f"{settings.frontend_url.rstrip('/')}{settings.integrations_return_path}?{query}"


@router.get("/{provider}/authorize")
async def authorize(
    provider: str,
    environment: str = Query("live"),
    seller_id: str = Depends(current_seller),
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    """Redirect the seller to the provider's consent screen."""
    try:
        url = await broker.oauth.begin_authorize(db, seller_id, provider, environment)
    except BrokerError as e:
        logger.warning(f"Authorize for {provider} ({environment}) failed: {e.code}")
        return RedirectResponse(_return_url(broker, provider, environment, status="error", code=e.code))
    return RedirectResponse(url)


@router.get("/{provider}/callback/{environment}")
async def callback(
    provider: str,
    environment: str,
    background_tasks: BackgroundTasks,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    realmId: str | None = None,
    tenantId: str | None = None,
    shop: str | None = None,
    db: AsyncSession = Depends(get_database),
    broker: Broker = Depends(get_broker),
):
    """Finish the OAuth flow and send the seller back to the dashboard."""
    if error:
        logger.warning(f"{provider} returned OAuth error: {error}")
        code = None

    raw_context = {"realmId": realmId, "tenantId": tenantId, "shop": shop}
    account = {ACCOUNT_PARAMS[k]: v for k, v in raw_context.items() if v}

    try:
        integration = await broker.oauth.handle_callback(
            db, code, state, provider, environment, account_metadata=account or None
        )
    except BrokerError as e:
        params = {"status": "error", "code": e.code}
        if error:
            params["provider_error"] = error
        return RedirectResponse(_return_url(broker, provider, environment, **params))

    background_tasks.add_task(
        broker.dispatcher.dispatch,
        integration.seller_id,
        events.INTEGRATION_CONNECTED,
        {"provider": provider, "environment": environment},
    )
    return RedirectResponse(_return_url(broker, provider, environment, status="connected"))
