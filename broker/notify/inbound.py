"""Inbound provider webhooks.

Providers push events to ``/api/webhooks/ingest/{provider}``. A payload is
verified against the provider's shared secret, mapped onto canonical event and
field names using the descriptor, attributed to the one connection whose
stored provider account id the payload carries, applied to that seller's local
state and then re-published to the seller's own webhooks. Events that cannot
be attributed to exactly one connection are acknowledged and dropped.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from broker import metrics
from broker.db.models import SellerIntegration
from broker.errors import InvalidRequest, InvalidSignature
from broker.integrations import repository
from broker.integrations.descriptors import Category, ProviderDescriptor, ProviderDescriptorRegistry
from broker.integrations.normalize import get_path, normalize_record
from broker.notify import events
from broker.notify.webhook_dispatcher import WebhookDispatcher
from broker.security.vault import CredentialVault
from broker.sync.engine import upsert_inventory, upsert_order

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, SellerIntegration, str, dict], Awaitable[Optional[dict]]]


@dataclass
class InboundResult:
    event: Optional[str]
    handled: int = 0
    ignored: int = 0
    unsupported: bool = False
    unattributed: bool = False
    sellers: list[str] = field(default_factory=list)


async def _handle_inventory(db, integration, event, data):
    if not await upsert_inventory(db, integration.seller_id, integration.provider, integration.environment, data):
        logger.warning(f"{integration.provider} inventory webhook without SKU ignored")
        return None
    return {"provider": integration.provider, "sku": data.get("sku"), "quantity": data.get("quantity")}


_ORDER_STATUS = {
    events.ORDER_CREATED: "pending",
    events.ORDER_FULFILLED: "fulfilled",
    events.ORDER_CANCELLED: "cancelled",
    events.SHIPMENT_UPDATED: "shipped",
    events.PAYMENT_RECEIVED: "paid",
}


async def _handle_order(db, integration, event, data):
    status = _ORDER_STATUS.get(event)
    order = await upsert_order(
        db, integration.seller_id, integration.provider, integration.environment, data, status=status
    )
    if order is None:
        logger.warning(f"{integration.provider} {event} webhook without order id ignored")
        return None
    return {
        "provider": integration.provider,
        "external_order_id": order.external_id,
        "status": order.status,
        "tracking_number": order.tracking_number,
    }


_ORDER_CATEGORIES = frozenset(
    {Category.WAREHOUSE, Category.DROPSHIPPING, Category.PAYMENT, Category.ACCOUNTING}
)

# event -> (categories allowed to send it, handler)
EVENT_HANDLERS: dict[str, tuple[frozenset[Category], Handler]] = {
    events.INVENTORY_UPDATED: (frozenset({Category.WAREHOUSE, Category.DROPSHIPPING}), _handle_inventory),
    events.ORDER_CREATED: (_ORDER_CATEGORIES, _handle_order),
    events.ORDER_UPDATED: (_ORDER_CATEGORIES, _handle_order),
    events.ORDER_FULFILLED: (_ORDER_CATEGORIES, _handle_order),
    events.ORDER_CANCELLED: (_ORDER_CATEGORIES, _handle_order),
    events.SHIPMENT_UPDATED: (frozenset({Category.WAREHOUSE, Category.DROPSHIPPING}), _handle_order),
    events.PAYMENT_RECEIVED: (frozenset({Category.PAYMENT, Category.ACCOUNTING}), _handle_order),
}


class InboundWebhookProcessor:
    def __init__(
        self,
        registry: ProviderDescriptorRegistry,
        vault: CredentialVault,
        dispatcher: WebhookDispatcher,
        secrets: dict[str, str],
    ):
        self.registry = registry
        self.vault = vault
        self.dispatcher = dispatcher
        self.secrets = secrets

    def verify(self, provider: str, body: bytes, signature: Optional[str]) -> None:
        """
        Check the HMAC-SHA256 signature of the raw body.

        Raises:
            InvalidSignature: No secret configured for the provider, or mismatch.
        """
        secret = self.secrets.get(provider)
        if not secret:
            raise InvalidSignature(f"No webhook secret configured for {provider}")
        if not self.vault.verify(secret, body, signature):
            raise InvalidSignature("Webhook signature mismatch")

    @staticmethod
    def parse(descriptor: ProviderDescriptor, payload: Any) -> tuple[Optional[str], dict, Optional[str]]:
        """Return (canonical event, normalized data, provider account id if present)."""
        if not isinstance(payload, dict):
            raise InvalidRequest("Webhook payload must be a JSON object")
        inbound = descriptor.inbound
        raw_event = get_path(payload, inbound.event_path)
        event = inbound.event_map.get(str(raw_event), raw_event) if raw_event is not None else None

        data = get_path(payload, inbound.data_path) if inbound.data_path else payload
        if not isinstance(data, dict):
            data = payload
        data = normalize_record(data, inbound.field_map)

        account_id = get_path(payload, inbound.account_path) if inbound.account_path else None
        return event, data, str(account_id) if account_id is not None else None

    @staticmethod
    async def attribute(
        db: AsyncSession, descriptor: ProviderDescriptor, environment: str, account_id: Optional[str]
    ) -> list[SellerIntegration]:
        """Connected integrations that own ``account_id``; empty when none or several do."""
        key = descriptor.inbound.account_key
        if key is None or account_id is None:
            return []
        connected = await repository.list_connected(db, descriptor.name, environment)
        owners = [
            i
            for i in connected
            if (i.account_metadata or {}).get(key) is not None and str(i.account_metadata[key]) == account_id
        ]
        if len(owners) > 1:
            logger.error(
                f"{descriptor.name} account {account_id} is claimed by {len(owners)} connections; "
                f"not applying its webhooks",
                extra={"provider": descriptor.name, "integration_ids": [i.id for i in owners]},
            )
            return []
        return owners

    async def process(
        self,
        db: AsyncSession,
        provider: str,
        body: bytes,
        signature: Optional[str],
        environment: str = "live",
    ) -> InboundResult:
        descriptor = self.registry.require(provider)
        try:
            self.verify(provider, body, signature)
        except InvalidSignature:
            metrics.record_inbound_webhook(provider, "rejected")
            logger.warning(f"Rejected {provider} webhook: bad or missing signature")
            raise

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise InvalidRequest("Webhook body is not valid JSON") from e
        event, data, account_id = self.parse(descriptor, payload)
        result = InboundResult(event=event)

        integrations = await self.attribute(db, descriptor, environment, account_id)
        if not integrations:
            result.unattributed = True
            metrics.record_inbound_webhook(provider, "unattributed")
            logger.warning(
                f"{provider} webhook {event} for account {account_id} ({environment}) "
                f"matches no single connection; acknowledged without processing"
            )
            return result

        entry = EVENT_HANDLERS.get(event) if event else None
        if entry is None:
            result.unsupported = True
            for integration in integrations:
                repository.add_history(db, integration, "error", f"Unsupported webhook event: {event}")
            await db.commit()
            metrics.record_inbound_webhook(provider, "unsupported")
            logger.warning(f"Unsupported {provider} webhook event: {event}")
            return result

        categories, handler = entry
        if descriptor.category not in categories:
            result.ignored = len(integrations)
            metrics.record_inbound_webhook(provider, "ignored")
            logger.info(f"{provider} ({descriptor.category.value}) may not send {event}; ignored")
            return result

        outbound: list[tuple[str, dict]] = []
        for integration in integrations:
            published = await handler(db, integration, event, data)
            if published is None:
                result.ignored += 1
                continue
            result.handled += 1
            result.sellers.append(integration.seller_id)
            outbound.append((integration.seller_id, published))
        await db.commit()

        # Publish only after the local state is committed
        for seller, published in outbound:
            await self.dispatcher.dispatch(seller, event, published)

        metrics.record_inbound_webhook(provider, "processed")
        logger.info(f"Processed {provider} webhook {event} for {result.handled} integration(s)")
        return result
