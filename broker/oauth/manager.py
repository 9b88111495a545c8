"""OAuth connection lifecycle: authorize, callback, refresh, disconnect.

Connection states as persisted on ``SellerIntegration.status``::

    pending -> connected -> disconnected
                   |
                   +-> error   (refresh token rejected, reauthorization needed)

``authorizing`` and ``refreshing`` are transient and never written: an
authorize in flight leaves a brand-new row ``pending`` (an existing connection
keeps working until the callback replaces its tokens), and concurrent refreshes
of one connection are coalesced by a per-connection lock and guarded by the
row's ``version`` column.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Optional
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from broker import metrics
from broker.db.models import SellerIntegration, utcnow
from broker.errors import (
    InvalidCredentials,
    InvalidState,
    ProviderUnavailable,
    ReauthorizationRequired,
    TokenExchangeFailed,
    UnsupportedProvider,
)
from broker.integrations import repository
from broker.integrations.descriptors import (
    ENVIRONMENTS,
    AuthMode,
    ProviderDescriptor,
    ProviderDescriptorRegistry,
)
from broker.integrations.http_client import ProviderHttpClient, response_body
from broker.oauth.state_store import OAuthStateStore
from broker.security.vault import CredentialVault

logger = logging.getLogger(__name__)


class OAuthConnectionManager:
    """Owns every state transition of a SellerIntegration."""

    def __init__(
        self,
        registry: ProviderDescriptorRegistry,
        vault: CredentialVault,
        state_store: OAuthStateStore,
        http: ProviderHttpClient,
        settings,
    ):
        self.registry = registry
        self.vault = vault
        self.state_store = state_store
        self.http = http
        self.settings = settings
        self.refresh_margin = timedelta(seconds=settings.token_refresh_margin_seconds)
        # key -> (lock, tasks holding or waiting on it)
        self._refresh_locks: dict[tuple, tuple[asyncio.Lock, int]] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _refresh_lock(self, key: tuple):
        lock, users = self._refresh_locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._refresh_locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._refresh_locks[key]
            if users == 1:
                del self._refresh_locks[key]
            else:
                self._refresh_locks[key] = (lock, users - 1)

    def _oauth_descriptor(self, provider: str) -> ProviderDescriptor:
        descriptor = self.registry.require(provider)
        if descriptor.auth_mode is not AuthMode.OAUTH2:
            raise UnsupportedProvider(f"{provider} does not support OAuth")
        return descriptor

    @staticmethod
    def _check_environment(environment: str):
        if environment not in ENVIRONMENTS:
            raise UnsupportedProvider(f"Unknown environment: {environment}")

    def _client_credentials(self, provider: str, environment: str) -> dict[str, str]:
        client = self.settings.oauth_client(provider, environment)
        if not client or not client.get("client_id"):
            raise UnsupportedProvider(f"No OAuth client configured for {provider} ({environment})")
        return client

    def redirect_uri(self, provider: str, environment: str) -> str:
        """Callback URL registered with the provider; one per environment."""
        base = self.settings.public_base_url.rstrip("/")
        return f"{base}/api/integrations/{provider}/callback/{environment}"

    def needs_refresh(self, integration: SellerIntegration, now=None) -> bool:
        """True when the access token is expired or about to expire."""
        if integration.expires_at is None:
            return False
        return integration.expires_at - self.refresh_margin <= (now or utcnow())

    def _apply_tokens(self, integration: SellerIntegration, token_data: dict[str, Any]):
        integration.access_token = self.vault.encrypt(str(token_data["access_token"]))
        if token_data.get("refresh_token"):
            integration.refresh_token = self.vault.encrypt(str(token_data["refresh_token"]))
        integration.token_type = token_data.get("token_type") or "Bearer"
        if token_data.get("scope"):
            scope = token_data["scope"]
            integration.scopes = " ".join(scope) if isinstance(scope, list) else str(scope)

        expires_in = token_data.get("expires_in")
        try:
            integration.expires_at = (
                utcnow() + timedelta(seconds=int(expires_in)) if expires_in is not None else None
            )
        except (TypeError, ValueError):
            integration.expires_at = None

    async def _token_request(
        self, descriptor: ProviderDescriptor, environment: str, form: dict[str, str], operation: str
    ) -> dict[str, Any]:
        """
        POST to the provider token endpoint.

        Raises:
            TokenExchangeFailed: Non-2xx, unreachable, or no ``access_token`` in the body.
        """
        _, token_url = descriptor.oauth.urls_for(environment)
        try:
            response = await self.http.post_form(token_url, form, descriptor.name, operation)
        except ProviderUnavailable as e:
            raise TokenExchangeFailed(f"{descriptor.name}: token endpoint unreachable") from e

        if not 200 <= response.status_code < 300:
            body = response_body(response)
            detail = body.get("error_description") or body.get("error") if isinstance(body, dict) else None
            logger.error(
                f"{descriptor.name}: token endpoint returned {response.status_code} for {operation}",
                extra={"provider": descriptor.name, "environment": environment, "provider_error": detail},
            )
            raise TokenExchangeFailed(detail or f"Token endpoint returned {response.status_code}")

        try:
            token_data = response.json()
        except ValueError as e:
            raise TokenExchangeFailed("Token endpoint returned a non-JSON body") from e
        if not isinstance(token_data, dict) or not token_data.get("access_token"):
            raise TokenExchangeFailed("Token response is missing access_token")
        return token_data

    # ------------------------------------------------------------------
    # Authorize / callback
    # ------------------------------------------------------------------

    async def begin_authorize(
        self, db: AsyncSession, seller_id: str, provider: str, environment: str
    ) -> str:
        """
        Start an OAuth flow and return the provider authorize URL.

        Raises:
            UnsupportedProvider: Unknown provider, non-OAuth provider or no client configured.
        """
        self._check_environment(environment)
        descriptor = self._oauth_descriptor(provider)
        client = self._client_credentials(provider, environment)

        await repository.get_or_create_integration(db, seller_id, provider, environment)
        state = await self.state_store.issue(db, seller_id, provider, environment)
        await db.commit()

        authorize_url, _ = descriptor.oauth.urls_for(environment)
        query = {
            "response_type": "code",
            "client_id": client["client_id"],
            "redirect_uri": self.redirect_uri(provider, environment),
            "scope": descriptor.oauth.scope_separator.join(descriptor.oauth.scopes),
            "state": state,
            **descriptor.oauth.authorize_params,
        }
        separator = "&" if "?" in authorize_url else "?"
        logger.info(
            f"OAuth authorize started for {provider} ({environment})",
            extra={"seller_id": seller_id, "provider": provider, "environment": environment},
        )
        return f"{authorize_url}{separator}{urlencode(query)}"

    async def handle_callback(
        self,
        db: AsyncSession,
        code: Optional[str],
        state: Optional[str],
        provider: str,
        environment: str,
        account_metadata: Optional[dict[str, Any]] = None,
    ) -> SellerIntegration:
        """
        Finish an OAuth flow.

        The state token is consumed before the code exchange and stays consumed
        whatever happens next. On success the consumption, the token write and
        the history entry commit as one transaction.

        Raises:
            InvalidState: Unknown, expired or replayed state.
            TokenExchangeFailed: Provider refused the code or answered garbage.
        """
        self._check_environment(environment)
        descriptor = self._oauth_descriptor(provider)

        seller_id = await self.state_store.consume(db, state, provider, environment)
        if seller_id is None:
            await db.rollback()
            metrics.record_oauth_callback(provider, environment, success=False)
            logger.warning(
                f"OAuth callback with invalid state for {provider} ({environment})",
                extra={"provider": provider, "environment": environment},
            )
            raise InvalidState("OAuth state is invalid or expired")

        integration = await repository.get_or_create_integration(db, seller_id, provider, environment)

        try:
            if not code:
                raise TokenExchangeFailed("Provider did not return an authorization code")
            client = self._client_credentials(provider, environment)
            token_data = await self._token_request(
                descriptor,
                environment,
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.redirect_uri(provider, environment),
                    "client_id": client["client_id"],
                    "client_secret": client.get("client_secret", ""),
                },
                "authorization_code",
            )
        except (TokenExchangeFailed, UnsupportedProvider) as e:
            if integration.status != "connected":
                integration.status = "disconnected"
                integration.status_message = e.message
            repository.add_history(db, integration, "error", f"Token exchange failed: {e.message}")
            await db.commit()
            metrics.record_oauth_callback(provider, environment, success=False)
            raise

        reconnect = integration.status == "connected"
        self._apply_tokens(integration, token_data)
        if account_metadata:
            integration.account_metadata = {**(integration.account_metadata or {}), **account_metadata}
        integration.status = "connected"
        integration.status_message = None
        integration.connected_at = utcnow()
        repository.add_history(
            db, integration, "updated" if reconnect else "connected", f"Connected via OAuth ({environment})"
        )
        await db.commit()

        metrics.record_oauth_callback(provider, environment, success=True)
        logger.info(
            f"OAuth connection established for {provider} ({environment})",
            extra={"integration_id": integration.id, "provider": provider, "environment": environment},
        )
        return integration

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _mark_error(self, db: AsyncSession, integration: SellerIntegration, message: str):
        integration.status = "error"
        integration.status_message = message
        repository.add_history(db, integration, "error", message)
        try:
            await db.commit()
        except StaleDataError:
            # Someone else wrote the row meanwhile; their state wins
            await db.rollback()
            await db.refresh(integration)

    async def refresh(self, db: AsyncSession, integration: SellerIntegration) -> SellerIntegration:
        """
        Exchange the stored refresh token for a new access token.

        Concurrent refreshes of the same connection in this process queue on a
        lock; whoever comes second sees the new token and returns without
        calling the provider. Across processes the ``version`` column makes the
        loser's write fail, and the loser keeps the winner's tokens.

        Raises:
            ReauthorizationRequired: No refresh token, or the provider refused it.
                The integration is left in ``error``.
        """
        descriptor = self._oauth_descriptor(integration.provider)
        seen_token = integration.access_token

        async with self._refresh_lock(integration.key):
            await db.refresh(integration)
            if integration.status == "connected" and integration.access_token != seen_token:
                logger.debug(f"Token for integration {integration.id} already refreshed")
                return integration

            refresh_token = self.vault.decrypt_optional(integration.refresh_token)
            if not refresh_token:
                metrics.record_token_refresh(integration.provider, success=False)
                await self._mark_error(db, integration, "No refresh token stored; reauthorization required")
                raise ReauthorizationRequired(f"{integration.provider} connection needs to be re-authorized")

            client = self._client_credentials(integration.provider, integration.environment)
            try:
                token_data = await self._token_request(
                    descriptor,
                    integration.environment,
                    {
                        "grant_type": "refresh_token",
                        "refresh_token": refresh_token,
                        "client_id": client["client_id"],
                        "client_secret": client.get("client_secret", ""),
                    },
                    "refresh_token",
                )
            except TokenExchangeFailed as e:
                metrics.record_token_refresh(integration.provider, success=False)
                logger.error(
                    f"Token refresh failed for integration {integration.id}: {e.message}",
                    extra={"integration_id": integration.id, "provider": integration.provider},
                )
                await self._mark_error(db, integration, f"Token refresh failed: {e.message}")
                raise ReauthorizationRequired(
                    f"{integration.provider} connection needs to be re-authorized"
                ) from e

            self._apply_tokens(integration, token_data)
            integration.status = "connected"
            integration.status_message = None
            repository.add_history(db, integration, "refreshed", "Access token refreshed")
            try:
                await db.commit()
            except StaleDataError:
                await db.rollback()
                await db.refresh(integration)
                logger.info(f"Concurrent refresh won for integration {integration.id}; keeping its tokens")
                return integration

        metrics.record_token_refresh(integration.provider, success=True)
        logger.info(
            f"Refreshed token for integration {integration.id}",
            extra={"integration_id": integration.id, "provider": integration.provider},
        )
        return integration

    # ------------------------------------------------------------------
    # Direct credentials, webhook config, disconnect
    # ------------------------------------------------------------------

    async def connect_with_credentials(
        self,
        db: AsyncSession,
        seller_id: str,
        provider: str,
        environment: str,
        fields: dict[str, Any],
        account_metadata: Optional[dict[str, Any]] = None,
    ) -> SellerIntegration:
        """
        Store raw credential fields for an api_key/manual provider.

        Raises:
            UnsupportedProvider: Provider uses OAuth.
            InvalidCredentials: A declared credential field is missing.
        """
        self._check_environment(environment)
        descriptor = self.registry.require(provider)
        if descriptor.auth_mode is AuthMode.OAUTH2:
            raise UnsupportedProvider(f"{provider} connects through OAuth")

        missing = [name for name in descriptor.credential_fields if not fields.get(name)]
        if missing:
            raise InvalidCredentials(f"Missing credential fields: {', '.join(missing)}")

        integration = await repository.get_or_create_integration(db, seller_id, provider, environment)
        reconnect = integration.status == "connected"
        integration.credentials = self.vault.encrypt_fields(
            {name: fields[name] for name in descriptor.credential_fields}
        )
        if account_metadata:
            integration.account_metadata = {**(integration.account_metadata or {}), **account_metadata}
        integration.status = "connected"
        integration.status_message = None
        integration.connected_at = utcnow()
        repository.add_history(
            db, integration, "updated" if reconnect else "connected", "Credentials stored"
        )
        await db.commit()

        logger.info(
            f"Stored credentials for {provider} ({environment})",
            extra={"integration_id": integration.id, "provider": provider},
        )
        return integration

    async def configure_webhook(
        self,
        db: AsyncSession,
        integration: SellerIntegration,
        enabled: bool,
        url: Optional[str] = None,
        events: Optional[list[str]] = None,
        secret: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> Optional[str]:
        """
        Update the integration's webhook sub-configuration.

        ``account_id`` is the provider-side account the provider's own
        webhooks name; inbound events are only applied to the connection
        that recorded it.

        Returns:
            The signing secret in plaintext when one was generated or supplied,
            so it can be shown to the seller once; otherwise None.
        """
        if enabled and not (url or integration.webhook_url):
            raise InvalidCredentials("A webhook URL is required to enable webhooks")
        account_key = self.registry.require(integration.provider).inbound.account_key
        if account_id is not None and account_key is None:
            raise InvalidCredentials(f"{integration.provider} webhooks do not carry an account id")

        new_secret = None
        if secret or (enabled and not integration.webhook_secret):
            new_secret = secret or self.vault.generate_secret()
            integration.webhook_secret = self.vault.encrypt(new_secret)

        integration.webhook_enabled = enabled
        if url is not None:
            integration.webhook_url = url
        if events is not None:
            integration.webhook_events = list(events)
        if account_id is not None:
            integration.account_metadata = {**(integration.account_metadata or {}), account_key: account_id}
        repository.add_history(
            db, integration, "updated", f"Webhook {'enabled' if enabled else 'disabled'}"
        )
        await db.commit()
        return new_secret

    async def disconnect(self, db: AsyncSession, integration: SellerIntegration) -> SellerIntegration:
        """Scrub credentials and mark the integration disconnected. Idempotent."""
        if integration.status == "disconnected" and not (
            integration.credentials or integration.access_token or integration.refresh_token
        ):
            return integration

        integration.credentials = None
        integration.access_token = None
        integration.refresh_token = None
        integration.token_type = None
        integration.scopes = None
        integration.expires_at = None
        integration.webhook_secret = None
        integration.webhook_enabled = False
        integration.status = "disconnected"
        integration.status_message = None
        repository.add_history(db, integration, "disconnected", "Disconnected by seller")
        await db.commit()

        logger.info(
            f"Disconnected integration {integration.id}",
            extra={"integration_id": integration.id, "provider": integration.provider},
        )
        return integration
