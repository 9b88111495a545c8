"""Composition root.

The single place where the broker's components are constructed and wired
together. The FastAPI lifespan builds one :class:`Broker` and stores it on
``app.state``; route dependencies read it from there. Nothing else holds
process-wide instances.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from broker.config import Settings
from broker.db.session import create_engine, create_session_factory
from broker.integrations.descriptors import ProviderDescriptorRegistry
from broker.integrations.http_client import ProviderHttpClient
from broker.integrations.service import GenericIntegrationService
from broker.notify.inbound import InboundWebhookProcessor
from broker.notify.webhook_dispatcher import WebhookDispatcher
from broker.oauth.manager import OAuthConnectionManager
from broker.oauth.state_store import OAuthStateStore
from broker.ratelimit.api_keys import ApiKeyService
from broker.ratelimit.limiter import LocalSlidingWindow, RateLimiter, RedisSlidingWindow
from broker.security.vault import CredentialVault
from broker.sync.engine import SyncEngine
from broker.sync.tracker import SyncProgressTracker

logger = logging.getLogger(__name__)


@dataclass
class Broker:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    vault: CredentialVault
    registry: ProviderDescriptorRegistry
    http: ProviderHttpClient
    state_store: OAuthStateStore
    oauth: OAuthConnectionManager
    integrations: GenericIntegrationService
    tracker: SyncProgressTracker
    dispatcher: WebhookDispatcher
    sync: SyncEngine
    inbound: InboundWebhookProcessor
    api_keys: ApiKeyService
    rate_limiter: RateLimiter

    @classmethod
    def build(
        cls,
        settings: Settings,
        engine: Optional[AsyncEngine] = None,
        vault: Optional[CredentialVault] = None,
        registry: Optional[ProviderDescriptorRegistry] = None,
        provider_client: Optional[httpx.AsyncClient] = None,
        webhook_client: Optional[httpx.AsyncClient] = None,
        rate_limit_backend=None,
    ) -> "Broker":
        """
        Wire every component from settings.

        The optional arguments replace the corresponding piece (tests pass an
        SQLite engine, mock transports and an in-process rate-limit backend).
        """
        engine = engine or create_engine(settings.database_url, echo=settings.debug)
        session_factory = create_session_factory(engine)
        vault = vault or CredentialVault.from_settings(settings)
        registry = registry or ProviderDescriptorRegistry.from_file(settings.providers_file or None)

        http = ProviderHttpClient(provider_client, timeout=settings.provider_timeout_seconds)
        state_store = OAuthStateStore(ttl_seconds=settings.oauth_state_ttl_seconds)
        oauth = OAuthConnectionManager(registry, vault, state_store, http, settings)
        integrations = GenericIntegrationService(registry, vault, oauth, http)

        tracker = SyncProgressTracker(
            session_factory,
            max_batch_attempts=settings.sync_batch_max_attempts,
            backoff_seconds=settings.sync_batch_backoff_seconds,
        )
        dispatcher = WebhookDispatcher(
            session_factory,
            vault,
            registry,
            client=webhook_client,
            timeout=settings.webhook_timeout_seconds,
            max_attempts=settings.webhook_max_attempts,
            backoff_seconds=settings.webhook_backoff_seconds,
        )
        sync = SyncEngine(
            session_factory,
            registry,
            integrations,
            tracker,
            dispatcher,
            page_size=settings.sync_page_size,
            max_pages=settings.sync_max_pages,
        )
        inbound = InboundWebhookProcessor(registry, vault, dispatcher, settings.provider_webhook_secrets)

        api_keys = ApiKeyService(vault, prefix=settings.api_key_prefix)
        if rate_limit_backend is None:
            if settings.rate_limit_backend == "local":
                rate_limit_backend = LocalSlidingWindow()
            else:
                rate_limit_backend = RedisSlidingWindow(settings.redis_url)
        rate_limiter = RateLimiter(
            rate_limit_backend, api_keys, settings.rate_limit_tiers, settings.default_plan
        )

        logger.info(f"Broker wired with {len(registry)} providers")
        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            vault=vault,
            registry=registry,
            http=http,
            state_store=state_store,
            oauth=oauth,
            integrations=integrations,
            tracker=tracker,
            dispatcher=dispatcher,
            sync=sync,
            inbound=inbound,
            api_keys=api_keys,
            rate_limiter=rate_limiter,
        )

    async def close(self):
        await self.http.close()
        await self.dispatcher.close()
        await self.rate_limiter.backend.close()
        await self.engine.dispose()
