"""Provider descriptors and the registry that serves them.

A descriptor is the static description of how to talk to one provider: how it
authenticates, where its API lives per environment, which logical operations it
supports and how credentials are attached to requests. Adding a provider is a
catalog entry, not a code change.
"""

import json
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Literal, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, model_validator

from broker.errors import UnsupportedProvider

logger = logging.getLogger(__name__)

DEFAULT_CATALOG = Path(__file__).parent / "providers.json"

ENVIRONMENTS = ("sandbox", "live")

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


class AuthMode(str, Enum):
    OAUTH2 = "oauth2"
    API_KEY = "api_key"
    MANUAL = "manual"


class Category(str, Enum):
    WAREHOUSE = "warehouse"
    DROPSHIPPING = "dropshipping"
    PAYMENT = "payment"
    ACCOUNTING = "accounting"
    ADVERTISING = "advertising"
    COMMUNICATION = "communication"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class OAuthEndpoints(_Frozen):
    authorize_url: str
    token_url: str
    scopes: list[str] = Field(default_factory=list)
    scope_separator: str = " "
    sandbox_authorize_url: Optional[str] = None
    sandbox_token_url: Optional[str] = None
    # Extra query parameters some providers require on the authorize URL
    authorize_params: dict[str, str] = Field(default_factory=dict)

    def urls_for(self, environment: str) -> tuple[str, str]:
        """Return (authorize_url, token_url) for an environment."""
        if environment == "sandbox":
            return (
                self.sandbox_authorize_url or self.authorize_url,
                self.sandbox_token_url or self.token_url,
            )
        return self.authorize_url, self.token_url


class CredentialInjection(_Frozen):
    """Where and how a credential is attached to outgoing requests.

    ``style``:
        bearer  - ``Authorization: Bearer <value>`` (or ``name`` header with ``prefix``)
        header  - arbitrary header ``name`` set to ``prefix + value``
        query   - query parameter ``name``
        body    - JSON body field ``name``
        basic   - HTTP basic auth from ``username_field`` / ``password_field``
    """

    style: Literal["bearer", "header", "query", "body", "basic"] = "bearer"
    name: str = "Authorization"
    field: Optional[str] = None
    prefix: Optional[str] = None
    username_field: str = "client_id"
    password_field: str = "client_secret"


class Endpoint(_Frozen):
    """Template for one logical operation."""

    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    path: str
    # Fixed parameters merged under the caller's params
    defaults: dict[str, Any] = Field(default_factory=dict)
    # Dotted path to the interesting part of the response (a list or an object)
    result_path: Optional[str] = None
    # canonical field -> dotted path inside each result record
    field_map: dict[str, str] = Field(default_factory=dict)
    # Query parameter names used for paging, when the operation pages
    page_param: Optional[str] = None
    page_size_param: Optional[str] = None

    @property
    def placeholders(self) -> list[str]:
        return _PLACEHOLDER.findall(self.path)

    def render(self, params: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """
        Fill path placeholders from ``params``.

        Returns:
            (path, remaining params)

        Raises:
            KeyError: If a placeholder has no value.
        """
        merged = {**self.defaults, **(params or {})}
        path = self.path
        for name in dict.fromkeys(self.placeholders):
            if merged.get(name) is None:
                raise KeyError(name)
            path = path.replace("{" + name + "}", quote(str(merged.pop(name)), safe=""))
        return path, merged

    @property
    def sends_body(self) -> bool:
        return self.method in ("POST", "PUT", "PATCH")


class InboundWebhook(_Frozen):
    """How to read webhooks the provider pushes to us."""

    event_path: str = "event"
    data_path: Optional[str] = "data"
    # Payload path of the provider account id, matched against
    # account_metadata[account_key] of the connection it belongs to
    account_path: Optional[str] = None
    account_key: Optional[str] = None
    # provider event name -> canonical dotted event name
    event_map: dict[str, str] = Field(default_factory=dict)
    field_map: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check(self) -> "InboundWebhook":
        if (self.account_path is None) != (self.account_key is None):
            raise ValueError("account_path and account_key must be set together")
        return self


class ProviderDescriptor(_Frozen):
    name: str
    display_name: Optional[str] = None
    category: Category
    auth_mode: AuthMode
    base_urls: dict[str, str]
    oauth: Optional[OAuthEndpoints] = None
    injection: CredentialInjection = Field(default_factory=CredentialInjection)
    operations: dict[str, Endpoint] = Field(default_factory=dict)
    credential_fields: list[str] = Field(default_factory=list)
    inbound: InboundWebhook = Field(default_factory=InboundWebhook)
    timeout_seconds: Optional[float] = None

    @model_validator(mode="after")
    def _check(self) -> "ProviderDescriptor":
        if self.auth_mode is AuthMode.OAUTH2 and self.oauth is None:
            raise ValueError(f"{self.name}: oauth2 providers need oauth endpoints")
        if self.auth_mode is not AuthMode.OAUTH2 and not self.credential_fields:
            raise ValueError(f"{self.name}: {self.auth_mode.value} providers must declare credential_fields")
        unknown = set(self.base_urls) - set(ENVIRONMENTS)
        if unknown:
            raise ValueError(f"{self.name}: unknown environments {sorted(unknown)}")
        if "live" not in self.base_urls:
            raise ValueError(f"{self.name}: a live base URL is required")
        return self

    def base_url(self, environment: str) -> str:
        return (self.base_urls.get(environment) or self.base_urls["live"]).rstrip("/")

    def endpoint(self, operation: str) -> Optional[Endpoint]:
        return self.operations.get(operation)

    def supports(self, operation: str) -> bool:
        return operation in self.operations

    @property
    def label(self) -> str:
        return self.display_name or self.name


class ProviderDescriptorRegistry:
    """Immutable lookup of descriptors keyed by provider name."""

    def __init__(self, descriptors: Iterable[ProviderDescriptor]):
        by_name: dict[str, ProviderDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in by_name:
                raise ValueError(f"Duplicate provider descriptor: {descriptor.name}")
            by_name[descriptor.name] = descriptor
        self._descriptors = by_name

    @classmethod
    def from_file(cls, path: str | Path | None = None) -> "ProviderDescriptorRegistry":
        """Load a JSON catalog: ``{"providers": [ {...}, ... ]}``."""
        path = Path(path) if path else DEFAULT_CATALOG
        with open(path, encoding="utf-8") as fh:
            raw = json.load(fh)
        registry = cls(ProviderDescriptor.model_validate(item) for item in raw.get("providers", []))
        logger.info(f"Loaded {len(registry)} provider descriptors from {path}")
        return registry

    def get(self, name: str) -> Optional[ProviderDescriptor]:
        return self._descriptors.get(name)

    def require(self, name: str) -> ProviderDescriptor:
        descriptor = self._descriptors.get(name)
        if descriptor is None:
            raise UnsupportedProvider(f"Unknown provider: {name}")
        return descriptor

    def by_category(self, category: Category | str) -> list[ProviderDescriptor]:
        category = Category(category)
        return [d for d in self._descriptors.values() if d.category is category]

    def all(self) -> list[ProviderDescriptor]:
        return sorted(self._descriptors.values(), key=lambda d: d.name)

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)
