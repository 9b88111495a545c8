"""Tests for re-encrypting stored secrets under a new key."""

import pytest
from sqlalchemy import select

from broker.db.models import ApiKey, SellerIntegration, SellerWebhook
from broker.errors import DecryptionError
from broker.security.rotation import rotate_all
from broker.security.vault import CredentialVault

from conftest import SELLER, add_oauth_integration


@pytest.mark.asyncio
async def test_rotate_all(broker, db):
    old_vault = broker.vault
    await add_oauth_integration(broker, db)
    await broker.oauth.connect_with_credentials(db, SELLER, "fourpx", "live", {"api_key": "4px-key"})
    db.add(SellerWebhook(seller_id=SELLER, url="https://hooks.test", secret=old_vault.encrypt("hook-secret")))
    await db.commit()
    _, api_secret = await broker.api_keys.create(db, SELLER, "Storefront")

    new_key = CredentialVault.generate_key()
    new_vault = CredentialVault(new_key, previous_keys=[broker.settings.encryption_key])
    counts = await rotate_all(broker.session_factory, new_vault)

    assert counts == {"seller_integrations": 2, "seller_webhooks": 1, "api_keys": 1}

    # Readable with the new key alone
    only_new = CredentialVault(new_key)
    async with broker.session_factory() as session:
        integrations = (
            await session.execute(select(SellerIntegration).order_by(SellerIntegration.provider))
        ).scalars().all()
        fourpx, shipbob = integrations
        assert only_new.decrypt_fields(fourpx.credentials) == {"api_key": "4px-key"}
        assert only_new.decrypt(shipbob.access_token) == "access-1"
        assert only_new.decrypt(shipbob.refresh_token) == "refresh-1"

        endpoint = (await session.execute(select(SellerWebhook))).scalar_one()
        assert only_new.decrypt(endpoint.secret) == "hook-secret"
        record = (await session.execute(select(ApiKey))).scalar_one()
        assert only_new.decrypt(record.secret) == api_secret

        with pytest.raises(DecryptionError):
            old_vault.decrypt(endpoint.secret)
