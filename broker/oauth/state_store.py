"""Single-use OAuth state tokens."""

import logging
import secrets
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from broker.db.models import OAuthState, utcnow

logger = logging.getLogger(__name__)


class OAuthStateStore:
    """Issues and consumes OAuth ``state`` tokens.

    Consumption is one ``DELETE ... RETURNING`` statement, so of two concurrent
    callbacks carrying the same token exactly one gets the seller back. Expired
    tokens match nothing and are swept by :meth:`purge_expired`.

    Neither method commits; the caller owns the transaction so that consuming a
    state and writing the resulting integration commit together.
    """

    def __init__(self, ttl_seconds: int = 600, clock: Callable = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    async def issue(self, db: AsyncSession, seller_id: str, provider: str, environment: str) -> str:
        token = secrets.token_urlsafe(32)
        db.add(
            OAuthState(
                token=token,
                seller_id=seller_id,
                provider=provider,
                environment=environment,
                created_at=self._clock(),
            )
        )
        await db.flush()
        return token

    async def consume(
        self, db: AsyncSession, token: str, provider: str, environment: str
    ) -> Optional[str]:
        """
        Atomically delete a live state token.

        Returns:
            The seller id bound to the token, or None when the token is unknown,
            expired, already used, or was issued for another provider/environment.
        """
        if not token:
            return None
        cutoff = self._clock() - self.ttl
        result = await db.execute(
            delete(OAuthState)
            .where(
                OAuthState.token == token,
                OAuthState.provider == provider,
                OAuthState.environment == environment,
                OAuthState.created_at > cutoff,
            )
            .returning(OAuthState.seller_id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def purge_expired(self, db: AsyncSession) -> int:
        cutoff = self._clock() - self.ttl
        result = await db.execute(
            delete(OAuthState)
            .where(OAuthState.created_at <= cutoff)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount:
            logger.info(f"Purged {result.rowcount} expired OAuth states")
        return result.rowcount or 0
