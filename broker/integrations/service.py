"""Generic, descriptor-driven provider calls.

Every feature that talks to a provider (inventory sync, labels, ad metrics,
tax lookups, connection tests) goes through :meth:`GenericIntegrationService.call_api`
instead of carrying its own HTTP code.
"""

import logging
import time
import uuid
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from broker import metrics
from broker.db.models import SellerIntegration
from broker.errors import (
    BrokerError,
    IntegrationCallFailed,
    IntegrationNotFound,
    InvalidCredentials,
    InvalidRequest,
    ReauthorizationRequired,
    UnsupportedOperation,
)
from broker.integrations.descriptors import (
    AuthMode,
    Endpoint,
    ProviderDescriptor,
    ProviderDescriptorRegistry,
)
from broker.integrations.http_client import (
    AuthRejected,
    ProviderHttpClient,
    ProviderRequest,
    raise_for_provider_status,
    response_body,
)
from broker.integrations.normalize import NormalizedResponse, normalize_response
from broker.logging_config import get_logger
from broker.oauth.manager import OAuthConnectionManager
from broker.security.vault import CredentialVault

logger = logging.getLogger(__name__)

# One refresh-and-retry at most: attempt 0, then attempt 1 after a refresh.
MAX_CALL_ATTEMPTS = 2


class GenericIntegrationService:
    def __init__(
        self,
        registry: ProviderDescriptorRegistry,
        vault: CredentialVault,
        oauth: OAuthConnectionManager,
        http: ProviderHttpClient,
    ):
        self.registry = registry
        self.vault = vault
        self.oauth = oauth
        self.http = http

    def _credential_values(
        self, descriptor: ProviderDescriptor, integration: SellerIntegration
    ) -> dict[str, str]:
        values = self.vault.decrypt_fields(integration.credentials)
        if descriptor.auth_mode is AuthMode.OAUTH2:
            access_token = self.vault.decrypt_optional(integration.access_token)
            if not access_token:
                raise ReauthorizationRequired(f"{descriptor.name} has no access token")
            values["access_token"] = access_token
        return values

    def _default_field(self, descriptor: ProviderDescriptor) -> str:
        if descriptor.auth_mode is AuthMode.OAUTH2:
            return "access_token"
        return descriptor.credential_fields[0]

    def build_request(
        self,
        descriptor: ProviderDescriptor,
        endpoint: Endpoint,
        integration: SellerIntegration,
        params: Optional[dict[str, Any]],
        request_id: str,
    ) -> ProviderRequest:
        """Render the endpoint template and attach credentials per the descriptor."""
        params = dict(params or {})
        # Account context fills path placeholders the caller did not supply
        for name in endpoint.placeholders:
            if params.get(name) is None and integration.account_metadata:
                params[name] = integration.account_metadata.get(name)
        try:
            path, remaining = endpoint.render(params)
        except KeyError as e:
            raise InvalidRequest(f"Missing parameter {e.args[0]!r} for {descriptor.name}") from e

        request = ProviderRequest(
            method=endpoint.method,
            url=f"{descriptor.base_url(integration.environment)}{path}",
            headers={
                "Accept": "application/json",
                "X-Request-ID": request_id,
            },
            timeout=descriptor.timeout_seconds,
        )
        if endpoint.sends_body:
            request.json = remaining
        else:
            request.params = remaining

        credentials = self._credential_values(descriptor, integration)
        injection = descriptor.injection

        if injection.style == "basic":
            try:
                request.auth = (credentials[injection.username_field], credentials[injection.password_field])
            except KeyError as e:
                raise InvalidCredentials(f"{descriptor.name}: credential {e.args[0]!r} not configured") from e
            return request

        field = injection.field or self._default_field(descriptor)
        value = credentials.get(field)
        if not value:
            raise InvalidCredentials(f"{descriptor.name}: credential {field!r} not configured")

        if injection.style == "bearer":
            prefix = injection.prefix if injection.prefix is not None else "Bearer "
            request.headers[injection.name] = f"{prefix}{value}"
        elif injection.style == "header":
            request.headers[injection.name] = f"{injection.prefix or ''}{value}"
        elif injection.style == "query":
            request.params[injection.name] = value
        elif injection.style == "body":
            if request.json is None:
                request.json = {}
            request.json[injection.name] = value
        return request

    async def call_api(
        self,
        db: AsyncSession,
        integration: SellerIntegration,
        operation: str,
        params: Optional[dict[str, Any]] = None,
        descriptor: Optional[ProviderDescriptor] = None,
    ) -> NormalizedResponse:
        """
        Run a logical operation against the integration's provider.

        OAuth connections with an expired (or nearly expired) token are refreshed
        first. A 401 triggers one refresh and one retry, unless a refresh already
        happened during this call.

        Args:
            db: Session the integration was loaded from (refresh writes through it)
            integration: Connected SellerIntegration
            operation: Logical operation name, e.g. ``searchProducts``
            params: Path placeholders plus query/body parameters

        Returns:
            NormalizedResponse with canonical field names

        Raises:
            UnsupportedOperation: Descriptor has no endpoint for ``operation``.
            ProviderUnavailable: Timeout, transport error, 429 or 5xx.
            InvalidRequest: Other 4xx, provider body attached.
            IntegrationCallFailed: Still rejected after a refresh.
            ReauthorizationRequired: Refresh token no longer works.
        """
        descriptor = descriptor or self.registry.require(integration.provider)
        endpoint = descriptor.endpoint(operation)
        if endpoint is None:
            raise UnsupportedOperation(f"{descriptor.name} does not support {operation}")

        if integration.status == "error" and descriptor.auth_mode is AuthMode.OAUTH2:
            raise ReauthorizationRequired(f"{descriptor.name} connection needs to be re-authorized")
        if integration.status != "connected":
            raise IntegrationNotFound(f"{descriptor.name} is not connected")

        request_id = uuid.uuid4().hex
        log = get_logger(
            __name__,
            integration_id=integration.id,
            provider=descriptor.name,
            operation=operation,
            request_id=request_id,
        )
        is_oauth = descriptor.auth_mode is AuthMode.OAUTH2
        refreshed = False

        if is_oauth and self.oauth.needs_refresh(integration):
            log.info("Access token expired or expiring, refreshing before call")
            integration = await self.oauth.refresh(db, integration)
            refreshed = True

        started = time.monotonic()
        response = None
        for attempt in range(MAX_CALL_ATTEMPTS):
            request = self.build_request(descriptor, endpoint, integration, params, request_id)
            try:
                response = await self.http.send(request, descriptor.name, operation)
                raise_for_provider_status(response, descriptor.name, operation)
                break
            except AuthRejected:
                if is_oauth and not refreshed and attempt + 1 < MAX_CALL_ATTEMPTS:
                    log.info("Provider rejected access token, refreshing and retrying once")
                    integration = await self.oauth.refresh(db, integration)
                    refreshed = True
                    continue
                metrics.record_provider_call(descriptor.name, operation, "auth_failed", time.monotonic() - started)
                log.error(f"{descriptor.name} rejected credentials for {operation} (attempt {attempt + 1})")
                raise IntegrationCallFailed(
                    f"{descriptor.name} rejected credentials for {operation}"
                ) from None
            except InvalidRequest as e:
                metrics.record_provider_call(descriptor.name, operation, "invalid_request", time.monotonic() - started)
                log.warning(f"{descriptor.name} rejected {operation} with {e.status}", extra={"provider_body": e.body})
                raise
            except BrokerError as e:
                metrics.record_provider_call(descriptor.name, operation, e.code, time.monotonic() - started)
                log.warning(f"{descriptor.name} call {operation} failed: {e.message}")
                raise

        duration = time.monotonic() - started
        payload = response_body(response)
        data = normalize_response(payload, endpoint.result_path, endpoint.field_map)
        metrics.record_provider_call(descriptor.name, operation, "success", duration)
        log.info(f"{descriptor.name} {operation} succeeded in {duration * 1000:.0f}ms ({response.status_code})")

        return NormalizedResponse(
            provider=descriptor.name,
            operation=operation,
            status_code=response.status_code,
            data=data,
            request_id=request_id,
            raw=payload,
        )

    async def test_connection(self, db: AsyncSession, integration: SellerIntegration) -> NormalizedResponse:
        """Call the descriptor's ``test`` operation."""
        return await self.call_api(db, integration, "test")
