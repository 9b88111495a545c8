"""Sync job progress tracking with cooperative cancellation.

Each state change is a single guarded UPDATE in its own short transaction, so
pollers always see committed progress and a cancel wins over any later
``advance``: progress only moves while the row is still ``running``.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from broker import metrics
from broker.db.models import SyncJob, utcnow
from broker.errors import BrokerError, ProviderUnavailable, SyncCancelled, SyncFailed, SyncJobNotFound

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed", "cancelled")


@dataclass
class BatchResult:
    """What one batch did."""

    processed: int
    succeeded: int = 0
    failed: int = 0
    done: bool = False


BatchFetcher = Callable[[int], Awaitable[Optional[BatchResult]]]


class SyncProgressTracker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_batch_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.max_batch_attempts = max_batch_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def start(
        self,
        seller_id: str,
        provider: str,
        total_estimate: int = 0,
        environment: str = "live",
        kind: str = "inventory",
    ) -> str:
        job_id = uuid.uuid4().hex
        async with self.session_factory() as db:
            db.add(
                SyncJob(
                    id=job_id,
                    seller_id=seller_id,
                    provider=provider,
                    environment=environment,
                    kind=kind,
                    status="running",
                    total=max(0, total_estimate),
                )
            )
            await db.commit()
        metrics.sync_jobs_running.inc()
        logger.info(f"Started {kind} sync job {job_id} for {provider}", extra={"job_id": job_id})
        return job_id

    async def get(self, job_id: str) -> SyncJob:
        async with self.session_factory() as db:
            job = await db.get(SyncJob, job_id)
        if job is None:
            raise SyncJobNotFound(f"Sync job {job_id} not found")
        return job

    async def list_active(self, seller_id: str) -> list[SyncJob]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncJob)
                .where(SyncJob.seller_id == seller_id, SyncJob.status == "running")
                .order_by(SyncJob.started_at.desc())
            )
            return list(result.scalars().all())

    async def list_recent(self, seller_id: str, limit: int = 20) -> list[SyncJob]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncJob)
                .where(SyncJob.seller_id == seller_id)
                .order_by(SyncJob.started_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def advance(self, job_id: str, delta: int, succeeded: int = 0, failed: int = 0) -> bool:
        """
        Add ``delta`` processed items to a running job.

        ``total`` is raised to ``processed`` when an estimate was too low.

        Returns:
            False when the job is no longer running (cancelled or finished).
        """
        if delta < 0:
            raise ValueError("Progress cannot move backwards")
        new_processed = SyncJob.processed + delta
        async with self.session_factory() as db:
            result = await db.execute(
                update(SyncJob)
                .where(
                    SyncJob.id == job_id,
                    SyncJob.status == "running",
                    SyncJob.cancel_requested.is_(False),
                )
                .values(
                    processed=new_processed,
                    total=case((SyncJob.total < new_processed, new_processed), else_=SyncJob.total),
                    succeeded=SyncJob.succeeded + succeeded,
                    failed=SyncJob.failed + failed,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount > 0

    async def set_total(self, job_id: str, total: int) -> bool:
        """Replace the estimate once the real item count is known (never below ``processed``)."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == "running")
                .values(
                    total=case((SyncJob.processed > total, SyncJob.processed), else_=total),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount > 0

    async def _finish(self, job_id: str, status: str, error: Optional[str] = None, **values) -> bool:
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == "running")
                .values(status=status, error_message=error, finished_at=now, updated_at=now, **values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if not result.rowcount:
                return False
            provider = await db.scalar(select(SyncJob.provider).where(SyncJob.id == job_id))
        metrics.sync_jobs_running.dec()
        metrics.record_sync_finished(provider or "unknown", status)
        return True

    async def cancel(self, job_id: str) -> SyncJob:
        """
        Request cancellation. The job stops at the next batch boundary.

        Cancelling a finished job changes nothing.
        """
        if await self._finish(job_id, "cancelled", cancel_requested=True):
            logger.info(f"Sync job {job_id} cancelled")
        return await self.get(job_id)

    async def complete(self, job_id: str) -> bool:
        return await self._finish(
            job_id,
            "completed",
            total=case((SyncJob.total < SyncJob.processed, SyncJob.processed), else_=SyncJob.total),
        )

    async def fail(self, job_id: str, error: str) -> bool:
        logger.error(f"Sync job {job_id} failed: {error}", extra={"job_id": job_id})
        return await self._finish(job_id, "failed", error=error[:2000])

    async def is_cancelled(self, job_id: str) -> bool:
        async with self.session_factory() as db:
            row = (
                await db.execute(
                    select(SyncJob.status, SyncJob.cancel_requested).where(SyncJob.id == job_id)
                )
            ).one_or_none()
        if row is None:
            raise SyncJobNotFound(f"Sync job {job_id} not found")
        return row.cancel_requested or row.status == "cancelled"

    async def _fetch_with_retries(self, fetch: BatchFetcher, page: int) -> Optional[BatchResult]:
        """Retry ``ProviderUnavailable`` a bounded number of times; everything else propagates."""
        for attempt in range(1, self.max_batch_attempts + 1):
            try:
                return await fetch(page)
            except ProviderUnavailable as e:
                if attempt == self.max_batch_attempts:
                    raise SyncFailed(
                        f"Batch {page} failed after {attempt} attempts: {e.message}"
                    ) from e
                delay = e.retry_after if e.retry_after is not None else self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"Batch {page} attempt {attempt} failed ({e.message}), retrying in {delay:.1f}s")
                await self._sleep(delay)
        return None

    async def run(self, job_id: str, fetch: BatchFetcher, max_batches: int = 1000) -> SyncJob:
        """
        Drive a job batch by batch until done, failed or cancelled.

        ``fetch(batch_index)`` processes one batch and returns its BatchResult,
        or None when there is nothing left. Cancellation is checked before each
        batch and by ``advance`` after it, never in the middle of one.
        """
        try:
            for batch in range(max_batches):
                if await self.is_cancelled(job_id):
                    raise SyncCancelled(f"Sync job {job_id} cancelled before batch {batch}")
                result = await self._fetch_with_retries(fetch, batch)
                if result is None:
                    break
                if not await self.advance(job_id, result.processed, result.succeeded, result.failed):
                    raise SyncCancelled(f"Sync job {job_id} stopped after batch {batch}")
                if result.done:
                    break
            await self.complete(job_id)
            logger.info(f"Sync job {job_id} completed")
        except SyncCancelled as e:
            logger.info(e.message)
        except BrokerError as e:
            await self.fail(job_id, e.message)
        except Exception as e:
            logger.exception(f"Sync job {job_id} crashed")
            await self.fail(job_id, f"{type(e).__name__}: {e}")
        return await self.get(job_id)

    async def purge_finished(self, older_than_hours: int) -> int:
        cutoff = utcnow() - timedelta(hours=older_than_hours)
        async with self.session_factory() as db:
            result = await db.execute(
                delete(SyncJob)
                .where(SyncJob.status.in_(TERMINAL_STATUSES), SyncJob.finished_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount or 0
