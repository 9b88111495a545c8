"""Re-encrypt stored secrets under the vault's current primary key."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from broker.db.models import ApiKey, SellerIntegration, SellerWebhook
from broker.security.vault import CredentialVault

logger = logging.getLogger(__name__)

INTEGRATION_TOKEN_FIELDS = ("access_token", "refresh_token", "webhook_secret")


def _rotate_integration(vault: CredentialVault, integration: SellerIntegration) -> int:
    changed = 0
    for field in INTEGRATION_TOKEN_FIELDS:
        value = getattr(integration, field)
        if value:
            setattr(integration, field, vault.rotate(value))
            changed += 1
    if integration.credentials:
        # Assign a new dict so the JSON column is flagged dirty
        integration.credentials = {
            name: vault.rotate(value) for name, value in integration.credentials.items()
        }
        changed += len(integration.credentials)
    return changed


async def rotate_all(
    session_factory: async_sessionmaker[AsyncSession], vault: CredentialVault
) -> dict[str, int]:
    """
    Re-encrypt every ciphertext the broker stores.

    Safe to run repeatedly; values already under the primary key are simply
    re-encrypted again. Raises DecryptionError if a value cannot be read with
    any configured key, leaving the transaction uncommitted.

    Returns:
        Number of rows touched per table.
    """
    counts = {"seller_integrations": 0, "seller_webhooks": 0, "api_keys": 0}
    async with session_factory() as db:
        for integration in (await db.execute(select(SellerIntegration))).scalars():
            if _rotate_integration(vault, integration):
                counts["seller_integrations"] += 1

        for endpoint in (await db.execute(select(SellerWebhook))).scalars():
            endpoint.secret = vault.rotate(endpoint.secret)
            counts["seller_webhooks"] += 1

        for record in (await db.execute(select(ApiKey))).scalars():
            record.secret = vault.rotate(record.secret)
            counts["api_keys"] += 1

        await db.commit()

    logger.info(f"Re-encrypted secrets: {counts}")
    return counts
