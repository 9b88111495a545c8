"""Outbound HTTP to providers with status-aware error classification.

Provider calls are single attempts: a 5xx or timeout is reported as
``ProviderUnavailable`` and the caller decides whether to try again later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from broker.errors import InvalidRequest, ProviderUnavailable

logger = logging.getLogger(__name__)

# Transport errors reported as ProviderUnavailable
TRANSPORT_EXC = (
    httpx.TransportError,
    httpx.TooManyRedirects,
)

USER_AGENT = "integration-broker/0.1"


class AuthRejected(RuntimeError):
    """Provider answered 401; the caller may refresh credentials and retry once."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"Provider rejected credentials ({response.status_code})")
        self.response = response


@dataclass
class ProviderRequest:
    """A fully built provider request, credentials included."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    json: Optional[Any] = None
    data: Optional[dict[str, Any]] = None
    auth: Optional[tuple[str, str]] = None
    timeout: Optional[float] = None


def response_body(response: httpx.Response) -> Any:
    """Decoded JSON body, falling back to (truncated) text."""
    try:
        return response.json()
    except ValueError:
        return response.text[:2000]


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError):
        return None


def raise_for_provider_status(response: httpx.Response, provider: str, operation: str) -> None:
    """
    Map a provider status code onto the broker error taxonomy.

    Raises:
        AuthRejected: 401
        ProviderUnavailable: 429 or 5xx
        InvalidRequest: any other 4xx, with the provider body attached
    """
    sc = response.status_code
    if 200 <= sc < 300:
        return
    if sc == 401:
        raise AuthRejected(response)
    if sc == 429:
        raise ProviderUnavailable(
            f"{provider}: rate limited on {operation}",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if sc >= 500:
        raise ProviderUnavailable(f"{provider}: server error {sc} on {operation}")
    if 400 <= sc < 500:
        raise InvalidRequest(
            f"{provider}: request rejected with {sc} on {operation}",
            status=sc,
            body=response_body(response),
        )
    # 1xx / 3xx that survived redirect handling
    raise ProviderUnavailable(f"{provider}: unexpected status {sc} on {operation}")


class ProviderHttpClient:
    """Thin wrapper over a shared ``httpx.AsyncClient``."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 10.0)),
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, request: ProviderRequest, provider: str, operation: str) -> httpx.Response:
        """
        Perform one request.

        Raises:
            ProviderUnavailable: On timeouts and transport failures.
        """
        client = self._get_client()
        try:
            return await client.request(
                request.method,
                request.url,
                headers=request.headers,
                params=request.params or None,
                json=request.json,
                data=request.data,
                auth=request.auth,
                timeout=request.timeout or self.timeout,
            )
        except TRANSPORT_EXC as e:
            logger.warning(
                f"{provider}: transport error on {operation}: {type(e).__name__}",
                extra={"provider": provider, "operation": operation},
            )
            raise ProviderUnavailable(f"{provider}: {type(e).__name__} on {operation}") from e

    async def post_form(
        self,
        url: str,
        form: dict[str, str],
        provider: str,
        operation: str,
        auth: Optional[tuple[str, str]] = None,
    ) -> httpx.Response:
        """POST ``application/x-www-form-urlencoded`` (OAuth token endpoint style)."""
        return await self.send(
            ProviderRequest(
                method="POST",
                url=url,
                headers={"Accept": "application/json"},
                data=form,
                auth=auth,
            ),
            provider,
            operation,
        )
