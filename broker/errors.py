"""Broker error taxonomy.

Every error carries a machine-readable ``code`` (used in API error bodies and
in the OAuth callback redirect) and the HTTP status the API layer answers with.
"""

from typing import Any, Optional


class BrokerError(RuntimeError):
    """Base class for all broker errors."""

    code = "broker_error"
    status_code = 500

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code


# OAuth layer

class InvalidState(BrokerError):
    """OAuth state token missing, expired, already consumed or for another provider."""

    code = "invalid_state"
    status_code = 400


class UnsupportedProvider(BrokerError):
    """Provider is unknown or does not support the requested auth flow."""

    code = "unsupported_provider"
    status_code = 400


class TokenExchangeFailed(BrokerError):
    code = "token_exchange_failed"
    status_code = 502


class ReauthorizationRequired(BrokerError):
    """Stored refresh token no longer works; the seller must connect again."""

    code = "reauthorization_required"
    status_code = 409


# Integration-call layer

class IntegrationNotFound(BrokerError):
    code = "integration_not_found"
    status_code = 404


class UnsupportedOperation(BrokerError):
    code = "unsupported_operation"
    status_code = 400


class ProviderUnavailable(BrokerError):
    """Provider timed out, could not be reached or answered 5xx/429."""

    code = "provider_unavailable"
    status_code = 503

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class InvalidRequest(BrokerError):
    """Provider rejected the request (4xx other than 401)."""

    code = "invalid_request"
    status_code = 422

    def __init__(self, message: Optional[str] = None, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class IntegrationCallFailed(BrokerError):
    """Call still failed authentication after one refresh-and-retry."""

    code = "integration_call_failed"
    status_code = 502


class DecryptionError(BrokerError):
    code = "decryption_failed"
    status_code = 500


class InvalidCredentials(BrokerError):
    """Credential fields submitted for a direct connection are incomplete."""

    code = "invalid_credentials"
    status_code = 422


# Sync layer

class SyncJobNotFound(BrokerError):
    code = "sync_job_not_found"
    status_code = 404


class SyncFailed(BrokerError):
    code = "sync_failed"
    status_code = 502


class SyncCancelled(BrokerError):
    code = "sync_cancelled"
    status_code = 409


# Webhooks

class InvalidSignature(BrokerError):
    code = "invalid_signature"
    status_code = 401


# Rate limiting / API keys

class QuotaExceeded(BrokerError):
    code = "quota_exceeded"
    status_code = 429

    def __init__(self, retry_after: int, limit: Optional[int] = None):
        super().__init__(f"Rate limit exceeded, retry in {retry_after}s")
        self.retry_after = retry_after
        self.limit = limit


class InvalidApiKey(BrokerError):
    code = "invalid_api_key"
    status_code = 401


class InvalidPermission(BrokerError):
    code = "invalid_permission"
    status_code = 400


class PermissionDenied(BrokerError):
    code = "permission_denied"
    status_code = 403
