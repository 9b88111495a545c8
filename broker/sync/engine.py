"""Inventory and order synchronization.

A sync pages through a provider operation (``searchProducts`` or
``listOrders``), writes what it finds into the local read models and reports
progress through the tracker. Pages are batches: cancellation and retries
happen between pages.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from broker.db.models import ExternalOrder, ProductInventory, utcnow
from broker.errors import IntegrationNotFound, SyncFailed, UnsupportedOperation
from broker.integrations import repository
from broker.integrations.descriptors import ProviderDescriptorRegistry
from broker.integrations.service import GenericIntegrationService
from broker.notify import events
from broker.notify.webhook_dispatcher import WebhookDispatcher
from broker.sync.tracker import BatchResult, SyncProgressTracker

logger = logging.getLogger(__name__)

SYNC_OPERATIONS = {
    "inventory": "searchProducts",
    "orders": "listOrders",
}


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


async def upsert_inventory(
    db: AsyncSession, seller_id: str, provider: str, environment: str, item: dict
) -> bool:
    """Write one normalized product record. Returns False when it has no SKU."""
    sku = item.get("sku")
    if not sku:
        return False
    result = await db.execute(
        select(ProductInventory).where(
            ProductInventory.seller_id == seller_id,
            ProductInventory.provider == provider,
            ProductInventory.environment == environment,
            ProductInventory.sku == str(sku),
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = ProductInventory(seller_id=seller_id, provider=provider, environment=environment, sku=str(sku))
        db.add(row)
    if item.get("quantity") is not None:
        row.quantity = max(0, int(item["quantity"]))
    if item.get("title"):
        row.title = str(item["title"])
    if item.get("location"):
        row.location = str(item["location"])
    if item.get("price") is not None:
        row.price = _decimal(item["price"])
    row.synced_at = utcnow()
    return True


async def upsert_order(
    db: AsyncSession,
    seller_id: str,
    provider: str,
    environment: str,
    item: dict,
    status: Optional[str] = None,
) -> Optional[ExternalOrder]:
    """Write one normalized order record. Returns None when it has no id."""
    external_id = item.get("external_id") or item.get("id") or item.get("order_id")
    if not external_id:
        return None
    result = await db.execute(
        select(ExternalOrder).where(
            ExternalOrder.seller_id == seller_id,
            ExternalOrder.provider == provider,
            ExternalOrder.environment == environment,
            ExternalOrder.external_id == str(external_id),
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = ExternalOrder(
            seller_id=seller_id,
            provider=provider,
            environment=environment,
            external_id=str(external_id),
            status=status or str(item.get("status") or "pending"),
        )
        db.add(row)
    elif status or item.get("status"):
        row.status = status or str(item["status"])
    if item.get("total") is not None:
        row.total = _decimal(item["total"])
    if item.get("tracking_number"):
        row.tracking_number = str(item["tracking_number"])
    row.raw = item
    row.synced_at = utcnow()
    return row


class SyncEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProviderDescriptorRegistry,
        integrations: GenericIntegrationService,
        tracker: SyncProgressTracker,
        dispatcher: WebhookDispatcher,
        page_size: int = 50,
        max_pages: int = 200,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.integrations = integrations
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.page_size = page_size
        self.max_pages = max_pages

    async def start(
        self,
        db: AsyncSession,
        seller_id: str,
        provider: str,
        environment: str = "live",
        kind: str = "inventory",
        total_estimate: int = 0,
    ) -> str:
        """
        Validate that a sync can run and create its job.

        Raises:
            UnsupportedOperation: Unknown kind or provider lacks the operation.
            IntegrationNotFound: No connected integration for the tuple.
        """
        operation = SYNC_OPERATIONS.get(kind)
        if operation is None:
            raise UnsupportedOperation(f"Unknown sync kind: {kind}")
        descriptor = self.registry.require(provider)
        if not descriptor.supports(operation):
            raise UnsupportedOperation(f"{provider} does not support {kind} sync")

        integration = await repository.get_integration(db, seller_id, provider, environment)
        if integration is None or not integration.is_connected:
            raise IntegrationNotFound(f"{provider} ({environment}) is not connected")

        return await self.tracker.start(
            seller_id, provider, total_estimate=total_estimate, environment=environment, kind=kind
        )

    def _page_params(self, operation: str, provider: str, page: int) -> dict[str, Any]:
        endpoint = self.registry.require(provider).endpoint(operation)
        params: dict[str, Any] = {}
        if endpoint.page_param:
            params[endpoint.page_param] = page + 1
        if endpoint.page_size_param:
            params[endpoint.page_size_param] = self.page_size
        return params

    async def _run_page(self, job, page: int) -> Optional[BatchResult]:
        operation = SYNC_OPERATIONS[job.kind]
        endpoint = self.registry.require(job.provider).endpoint(operation)
        if page > 0 and not endpoint.page_param:
            # Provider returns everything in one response
            return None

        async with self.session_factory() as db:
            integration = await repository.get_integration(db, job.seller_id, job.provider, job.environment)
            if integration is None or not integration.is_connected:
                raise SyncFailed(f"{job.provider} was disconnected during sync")

            response = await self.integrations.call_api(
                db, integration, operation, self._page_params(operation, job.provider, page)
            )
            items = [item for item in response.items if isinstance(item, dict)]

            succeeded = failed = 0
            for item in items:
                if job.kind == "inventory":
                    ok = await upsert_inventory(db, job.seller_id, job.provider, job.environment, item)
                else:
                    ok = await upsert_order(db, job.seller_id, job.provider, job.environment, item) is not None
                if ok:
                    succeeded += 1
                else:
                    failed += 1
            await db.commit()

        return BatchResult(
            processed=len(items),
            succeeded=succeeded,
            failed=failed,
            done=len(items) < self.page_size,
        )

    async def run(self, job_id: str):
        """Execute a started job to completion and announce the outcome."""
        job = await self.tracker.get(job_id)

        async def fetch(page: int) -> Optional[BatchResult]:
            return await self._run_page(job, page)

        finished = await self.tracker.run(job_id, fetch, max_batches=self.max_pages)
        summary = {
            "job_id": finished.id,
            "provider": finished.provider,
            "environment": finished.environment,
            "kind": finished.kind,
            "status": finished.status,
            "processed": finished.processed,
            "succeeded": finished.succeeded,
            "failed": finished.failed,
        }

        if finished.status == "completed":
            await self.dispatcher.dispatch(finished.seller_id, events.SYNC_COMPLETED, summary)
            if finished.kind == "inventory" and finished.succeeded:
                await self.dispatcher.dispatch(finished.seller_id, events.INVENTORY_UPDATED, summary)
            elif finished.kind == "orders" and finished.succeeded:
                await self.dispatcher.dispatch(finished.seller_id, events.ORDER_UPDATED, summary)
        elif finished.status == "failed":
            summary["error"] = finished.error_message
            await self.dispatcher.dispatch(finished.seller_id, events.SYNC_FAILED, summary)
        return finished
