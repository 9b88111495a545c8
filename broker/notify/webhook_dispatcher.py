"""Outbound webhook dispatch.

Deliveries are best-effort: :meth:`WebhookDispatcher.dispatch` never raises
into the operation that triggered it. Every delivery is signed, retried a
bounded number of times with backoff, and recorded in ``webhook_deliveries``.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from broker import metrics
from broker.db.models import SellerIntegration, SellerWebhook, WebhookDelivery, utcnow
from broker.errors import DecryptionError
from broker.integrations.descriptors import ProviderDescriptorRegistry
from broker.notify.events import WEBHOOK_TEST, relevant_categories
from broker.security.vault import CredentialVault

logger = logging.getLogger(__name__)

USER_AGENT = "integration-broker-webhooks/0.1"


@dataclass
class WebhookTarget:
    url: str
    secret: str
    source: str  # integration | endpoint
    source_id: int

    def __repr__(self) -> str:
        return f"WebhookTarget(url={self.url!r}, source={self.source!r}, source_id={self.source_id})"


@dataclass
class DeliveryResult:
    target: WebhookTarget
    delivery_id: str
    success: bool
    attempts: int
    signature: str
    status_code: Optional[int] = None
    error: Optional[str] = None
    response_time_ms: Optional[int] = None


def encode_payload(event: str, data: Any, timestamp: str) -> bytes:
    """Serialize the ``{event, data, timestamp}`` envelope exactly as it is signed."""
    return json.dumps(
        {"event": event, "data": data, "timestamp": timestamp},
        default=str,
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")


class WebhookDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        registry: ProviderDescriptorRegistry,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.registry = registry
        self._http_client = client
        self._owns_client = client is None
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout, headers={"User-Agent": USER_AGENT}
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------
    # Target selection
    # ------------------------------------------------------------------

    def _integration_wants(self, integration: SellerIntegration, event: str) -> bool:
        if integration.webhook_events:
            return event in integration.webhook_events or "*" in integration.webhook_events
        descriptor = self.registry.get(integration.provider)
        return descriptor is not None and descriptor.category in relevant_categories(event)

    @staticmethod
    def _endpoint_wants(endpoint: SellerWebhook, event: str) -> bool:
        return not endpoint.events or event in endpoint.events or "*" in endpoint.events

    async def _collect_targets(self, db: AsyncSession, seller_id: str, event: str) -> list[WebhookTarget]:
        targets: list[WebhookTarget] = []

        result = await db.execute(
            select(SellerIntegration).where(
                SellerIntegration.seller_id == seller_id,
                SellerIntegration.status == "connected",
                SellerIntegration.webhook_enabled.is_(True),
            )
        )
        for integration in result.scalars().all():
            if not integration.webhook_url or not integration.webhook_secret:
                continue
            if not self._integration_wants(integration, event):
                continue
            try:
                secret = self.vault.decrypt(integration.webhook_secret)
            except DecryptionError:
                logger.error(f"Skipping webhook of integration {integration.id}: secret unreadable")
                continue
            targets.append(WebhookTarget(integration.webhook_url, secret, "integration", integration.id))

        result = await db.execute(
            select(SellerWebhook).where(
                SellerWebhook.seller_id == seller_id,
                SellerWebhook.enabled.is_(True),
            )
        )
        for endpoint in result.scalars().all():
            if not self._endpoint_wants(endpoint, event):
                continue
            try:
                secret = self.vault.decrypt(endpoint.secret)
            except DecryptionError:
                logger.error(f"Skipping webhook endpoint {endpoint.id}: secret unreadable")
                continue
            targets.append(WebhookTarget(endpoint.url, secret, "endpoint", endpoint.id))

        return targets

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, target: WebhookTarget, event: str, body: bytes, timestamp: str) -> DeliveryResult:
        """Send one signed delivery with bounded retries. Never raises."""
        delivery_id = uuid.uuid4().hex
        signature = self.vault.sign(target.secret, body)
        headers = {
            "Content-Type": "application/json",
            "X-Signature": signature,
            "X-Webhook-Event": event,
            "X-Webhook-Delivery": delivery_id,
            "X-Webhook-Timestamp": timestamp,
        }
        client = await self._get_client()

        status_code = None
        error = None
        attempt = 0
        start_time = time.monotonic()
        for attempt in range(1, self.max_attempts + 1):
            attempt_start = time.monotonic()
            retryable = True
            try:
                response = await client.post(target.url, content=body, headers=headers, timeout=self.timeout)
                status_code = response.status_code
                if 200 <= status_code < 300:
                    metrics.record_webhook_delivery(event, True, time.monotonic() - attempt_start)
                    return DeliveryResult(
                        target=target,
                        delivery_id=delivery_id,
                        success=True,
                        attempts=attempt,
                        signature=signature,
                        status_code=status_code,
                        response_time_ms=int((time.monotonic() - start_time) * 1000),
                    )
                error = f"HTTP {status_code}"
                retryable = status_code >= 500 or status_code == 429
            except httpx.HTTPError as e:
                error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            except Exception as e:
                # Malformed target URLs and the like; retrying cannot help
                error = f"{type(e).__name__}: {e}"
                retryable = False

            metrics.record_webhook_delivery(event, False, time.monotonic() - attempt_start)
            logger.warning(
                f"Webhook {event} to {target.source} {target.source_id} failed "
                f"(attempt {attempt}/{self.max_attempts}): {error}"
            )
            if not retryable or attempt == self.max_attempts:
                break
            await self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        return DeliveryResult(
            target=target,
            delivery_id=delivery_id,
            success=False,
            attempts=attempt,
            signature=signature,
            status_code=status_code,
            error=error,
            response_time_ms=int((time.monotonic() - start_time) * 1000),
        )

    async def _record(self, seller_id: str, event: str, body: bytes, results: list[DeliveryResult]):
        """Persist delivery outcomes and endpoint statistics."""
        now = utcnow()
        async with self.session_factory() as db:
            for r in results:
                db.add(
                    WebhookDelivery(
                        delivery_id=r.delivery_id,
                        seller_id=seller_id,
                        event=event,
                        target_url=r.target.url,
                        source=r.target.source,
                        source_id=r.target.source_id,
                        payload=body.decode("utf-8"),
                        signature=r.signature,
                        status="sent" if r.success else "failed",
                        attempts=r.attempts,
                        response_status=r.status_code,
                        error_message=r.error,
                        response_time_ms=r.response_time_ms,
                        created_at=now,
                    )
                )
                if r.target.source == "endpoint":
                    if r.success:
                        values = {"send_count": SellerWebhook.send_count + 1, "last_sent_at": now}
                    else:
                        values = {"error_count": SellerWebhook.error_count + 1}
                    await db.execute(
                        update(SellerWebhook)
                        .where(SellerWebhook.id == r.target.source_id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
            await db.commit()

    async def _send(self, seller_id: str, event: str, data: Any, targets: list[WebhookTarget]) -> list[DeliveryResult]:
        timestamp = utcnow().isoformat() + "Z"
        body = encode_payload(event, data, timestamp)
        results = list(await asyncio.gather(*(self._deliver(t, event, body, timestamp) for t in targets)))
        try:
            await self._record(seller_id, event, body, results)
        except SQLAlchemyError:
            logger.exception(f"Failed to record {len(results)} webhook deliveries for {event}")
        return results

    async def dispatch(self, seller_id: str, event: str, data: Any) -> list[DeliveryResult]:
        """
        Deliver ``event`` to every interested endpoint of a seller.

        Args:
            seller_id: Owner of the event
            event: Dotted event name, e.g. ``order.created``
            data: JSON-serializable event data

        Returns:
            One DeliveryResult per target; empty when nobody listens or
            dispatch itself could not run.
        """
        try:
            async with self.session_factory() as db:
                targets = await self._collect_targets(db, seller_id, event)
            if not targets:
                logger.debug(f"No webhook targets for {event} (seller {seller_id})")
                return []
            results = await self._send(seller_id, event, data, targets)
        except Exception:
            logger.exception(f"Webhook dispatch of {event} for seller {seller_id} failed")
            return []

        failed = sum(1 for r in results if not r.success)
        logger.info(
            f"Dispatched {event} to {len(results)} target(s), {failed} failed",
            extra={"seller_id": seller_id, "event": event},
        )
        return results

    async def send_test(self, seller_id: str, endpoint: SellerWebhook) -> DeliveryResult:
        """Deliver a ``webhook.test`` event to one registered endpoint."""
        target = WebhookTarget(endpoint.url, self.vault.decrypt(endpoint.secret), "endpoint", endpoint.id)
        results = await self._send(seller_id, WEBHOOK_TEST, {"message": "Test delivery"}, [target])
        return results[0]

    async def purge_deliveries(self, older_than_hours: int) -> int:
        cutoff = utcnow() - timedelta(hours=older_than_hours)
        async with self.session_factory() as db:
            result = await db.execute(
                delete(WebhookDelivery)
                .where(WebhookDelivery.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount or 0

    async def list_deliveries(self, db: AsyncSession, seller_id: str, limit: int = 50) -> list[WebhookDelivery]:
        result = await db.execute(
            select(WebhookDelivery)
            .where(WebhookDelivery.seller_id == seller_id)
            .order_by(WebhookDelivery.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
