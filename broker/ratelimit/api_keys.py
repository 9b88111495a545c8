"""API keys for programmatic seller access."""

import logging
import secrets
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from broker.db.models import ApiKey, utcnow
from broker.errors import InvalidApiKey, InvalidPermission, PermissionDenied
from broker.security.vault import CredentialVault

logger = logging.getLogger(__name__)

PERMISSIONS = frozenset(
    {
        "products:read",
        "products:write",
        "orders:read",
        "orders:write",
        "customers:read",
        "customers:write",
        "inventory:read",
        "inventory:write",
        "analytics:read",
    }
)

DEFAULT_PERMISSIONS = ("products:read", "orders:read")


def validate_permissions(permissions: Optional[Iterable[str]]) -> list[str]:
    """
    Check a requested permission set against the fixed taxonomy.

    Raises:
        InvalidPermission: Unknown permission names.
    """
    requested = list(dict.fromkeys(permissions)) if permissions else list(DEFAULT_PERMISSIONS)
    unknown = [p for p in requested if p not in PERMISSIONS]
    if unknown:
        raise InvalidPermission(f"Unknown permissions: {', '.join(sorted(unknown))}")
    return sorted(requested)


class ApiKeyService:
    def __init__(self, vault: CredentialVault, prefix: str = "mgz_"):
        self.vault = vault
        self.prefix = prefix

    def _new_key(self) -> str:
        return f"{self.prefix}{secrets.token_hex(24)}"

    async def create(
        self,
        db: AsyncSession,
        seller_id: str,
        name: str,
        permissions: Optional[Iterable[str]] = None,
        expires_at: Optional[datetime] = None,
    ) -> tuple[ApiKey, str]:
        """
        Issue a new key for a seller. Keys are active on creation.

        Returns:
            (record, plaintext secret); the secret is only ever returned here.
        """
        perms = validate_permissions(permissions)
        secret = secrets.token_hex(32)
        record = ApiKey(
            seller_id=seller_id,
            name=name,
            key=self._new_key(),
            secret=self.vault.encrypt(secret),
            permissions=perms,
            is_active=True,
            expires_at=expires_at,
        )
        db.add(record)
        await db.commit()
        await db.refresh(record)
        logger.info(f"Created API key {record.id} for seller {seller_id}", extra={"permissions": perms})
        return record, secret

    async def lookup(self, db: AsyncSession, key: str) -> Optional[ApiKey]:
        if not key:
            return None
        result = await db.execute(select(ApiKey).where(ApiKey.key == key))
        return result.scalar_one_or_none()

    async def validate(self, db: AsyncSession, key: str) -> ApiKey:
        """
        Return the active, unexpired record for ``key``.

        Raises:
            InvalidApiKey: Unknown, inactive or expired key.
        """
        record = await self.lookup(db, key)
        if record is None:
            raise InvalidApiKey("Unknown API key")
        if not record.is_active:
            raise InvalidApiKey("API key is inactive")
        if record.is_expired():
            raise InvalidApiKey("API key has expired")
        return record

    async def get(self, db: AsyncSession, seller_id: str, key_id: int) -> ApiKey:
        result = await db.execute(
            select(ApiKey).where(ApiKey.id == key_id, ApiKey.seller_id == seller_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise InvalidApiKey("API key not found")
        return record

    async def list_for_seller(self, db: AsyncSession, seller_id: str) -> list[ApiKey]:
        result = await db.execute(
            select(ApiKey).where(ApiKey.seller_id == seller_id).order_by(ApiKey.id.asc())
        )
        return list(result.scalars().all())

    async def deactivate(self, db: AsyncSession, seller_id: str, key_id: int) -> ApiKey:
        record = await self.get(db, seller_id, key_id)
        record.is_active = False
        await db.commit()
        logger.info(f"Deactivated API key {key_id}")
        return record

    async def rotate(self, db: AsyncSession, seller_id: str, key_id: int) -> tuple[ApiKey, str]:
        """Replace key and secret, keeping name, permissions and expiry."""
        record = await self.get(db, seller_id, key_id)
        if not record.is_active:
            raise InvalidApiKey("Inactive API keys cannot be rotated")
        secret = secrets.token_hex(32)
        record.key = self._new_key()
        record.secret = self.vault.encrypt(secret)
        record.last_used_at = None
        await db.commit()
        await db.refresh(record)
        logger.info(f"Rotated API key {key_id}")
        return record, secret

    async def touch(self, db: AsyncSession, record: ApiKey):
        """Stamp last-used time."""
        await db.execute(
            update(ApiKey)
            .where(ApiKey.id == record.id)
            .values(last_used_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    @staticmethod
    def require_permission(record: ApiKey, permission: str):
        if permission not in (record.permissions or []):
            raise PermissionDenied(f"API key lacks {permission}")
