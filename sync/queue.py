"""
Durable job queue backed by the ``sync_jobs`` table.

Claiming is a single ``UPDATE ... WHERE id = (SELECT ...) RETURNING id``:
the subquery picks the oldest eligible pending job (FIFO on ``queued_at``
then ``id``) whose integration has nothing running, and the outer
``status = 'pending'`` predicate makes losing a race a no-op instead of a
double claim.  Every method opens and closes its own session, so no
transaction is held while a worker waits on a provider.

Backoff lives here and nowhere else.  A failed job is never touched again;
a retry is a new row that inherits the parent's ``queued_at``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from config.settings import config
from connectors.errors import JobClaimConflict
from connectors.schemas import JobKind, JobStatus
from database.models import SyncJob
from utils.timeutils import isoformat, utcnow

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int) -> int:
    """Seconds to wait before retrying a job that failed on ``attempt``."""
    delay = config.backoff_base_seconds * (2 ** max(attempt - 1, 0))
    return min(delay, config.backoff_max_seconds)


class JobQueue:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── Producers ───────────────────────────────────────────────────────

    async def enqueue(
        self,
        integration_id: uuid.UUID,
        kind: JobKind,
        payload: Optional[Dict[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        """Insert a ``pending`` job and return its id. No deduplication."""
        now = now or utcnow()
        async with self._session_factory() as session:
            job = SyncJob(
                integration_id=integration_id,
                kind=kind.value,
                status=JobStatus.PENDING.value,
                payload=payload or {},
                attempt=1,
                queued_at=now,
                created_at=now,
            )
            session.add(job)
            await session.commit()
            logger.info("Enqueued %s job %s for integration %s", kind.value, job.id, integration_id)
            return job.id

    # ── Claiming ────────────────────────────────────────────────────────

    async def claim_next(self, now: Optional[datetime] = None) -> Optional[SyncJob]:
        """
        Atomically move the next eligible job to ``running`` and return it.

        Returns None when nothing is eligible.  Lost races are retried up to
        ``claim_conflict_retries`` times.
        """
        for attempt in range(1, config.claim_conflict_retries + 1):
            try:
                return await self._try_claim(now or utcnow())
            except JobClaimConflict:
                logger.debug("Claim conflict (attempt %d), retrying", attempt)
        logger.info("Giving up after %d claim conflicts", config.claim_conflict_retries)
        return None

    def _candidate(self, now: datetime):
        candidate = aliased(SyncJob, name="candidate")
        running = aliased(SyncJob, name="running")
        busy = select(running.id).where(
            running.integration_id == candidate.integration_id,
            running.status == JobStatus.RUNNING.value,
        )
        return (
            select(candidate.id)
            .where(
                candidate.status == JobStatus.PENDING.value,
                or_(candidate.not_before.is_(None), candidate.not_before <= now),
                ~busy.exists(),
            )
            .order_by(candidate.queued_at, candidate.id)
            .limit(1)
        )

    async def _try_claim(self, now: datetime) -> Optional[SyncJob]:
        pick = self._candidate(now).with_for_update(skip_locked=True).scalar_subquery()
        stmt = (
            update(SyncJob)
            .where(SyncJob.id == pick, SyncJob.status == JobStatus.PENDING.value)
            .values(status=JobStatus.RUNNING.value, started_at=now)
            .returning(SyncJob.id)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            try:
                job_id = (await session.execute(stmt)).scalar_one_or_none()
            except IntegrityError as exc:
                # Another worker started a job for the same integration.
                await session.rollback()
                raise JobClaimConflict(str(exc.orig)) from exc

            if job_id is None:
                await session.rollback()
                still_pending = (await session.execute(self._candidate(now))).scalar_one_or_none()
                if still_pending is not None:
                    raise JobClaimConflict(f"job {still_pending} was claimed concurrently")
                return None

            job = await session.get(SyncJob, job_id)
            await session.commit()
            logger.info(
                "Claimed %s job %s (attempt %d) for integration %s",
                job.kind, job.id, job.attempt, job.integration_id,
            )
            return job

    # ── Finalization ────────────────────────────────────────────────────

    async def mark_succeeded(
        self,
        job_id: int,
        entity_count: int = 0,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == JobStatus.RUNNING.value)
                .values(
                    status=JobStatus.SUCCEEDED.value,
                    completed_at=now or utcnow(),
                    entity_count=entity_count,
                    last_error=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            logger.warning("Job %s was not running; success not recorded", job_id)
            return False
        logger.info("Job %s succeeded (%d entities)", job_id, entity_count)
        return True

    async def mark_failed(
        self,
        job_id: int,
        error: str,
        *,
        retryable: bool = True,
        retry_after: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Fail a running job and, when allowed, enqueue its retry.

        ``retry_after`` (from ``RateLimited``) replaces the exponential
        backoff.  Returns the successor's id, or None if the failure is
        terminal.
        """
        now = now or utcnow()
        error = (error or "unknown error")[:2000]
        async with self._session_factory() as session:
            job = await session.get(SyncJob, job_id)
            if job is None:
                logger.warning("Cannot fail unknown job %s", job_id)
                return None

            result = await session.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == JobStatus.RUNNING.value)
                .values(status=JobStatus.FAILED.value, completed_at=now, last_error=error)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                logger.warning("Job %s was not running; failure not recorded", job_id)
                return None

            if not retryable:
                await session.commit()
                logger.warning("Job %s failed permanently: %s", job_id, error)
                return None

            if job.attempt >= config.max_job_attempts:
                await session.commit()
                logger.error(
                    "Job %s (%s, integration %s) gave up after %d attempts: %s",
                    job_id, job.kind, job.integration_id, job.attempt, error,
                )
                return None

            delay = retry_after if retry_after is not None else backoff_delay(job.attempt)
            successor = SyncJob(
                integration_id=job.integration_id,
                kind=job.kind,
                status=JobStatus.PENDING.value,
                payload=job.payload or {},
                attempt=job.attempt + 1,
                parent_job_id=job.id,
                queued_at=job.queued_at,
                not_before=now + timedelta(seconds=delay),
                created_at=now,
            )
            session.add(successor)
            await session.commit()
            logger.info(
                "Job %s failed (attempt %d): %s; retry %s in %ss",
                job_id, job.attempt, error, successor.id, delay,
            )
            return successor.id

    async def reap_stale(self, older_than: timedelta, *, now: Optional[datetime] = None) -> int:
        """Fail (retryably) jobs stuck in ``running`` since before ``now - older_than``."""
        now = now or utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncJob.id).where(
                    SyncJob.status == JobStatus.RUNNING.value,
                    SyncJob.started_at < now - older_than,
                )
            )
            stale_ids = list(result.scalars().all())

        for job_id in stale_ids:
            await self.mark_failed(job_id, "abandoned: worker stopped while the job was running", now=now)
        if stale_ids:
            logger.info("Reaped %d stale running jobs", len(stale_ids))
        return len(stale_ids)

    # ── Reads ───────────────────────────────────────────────────────────

    async def get(self, job_id: int) -> Optional[SyncJob]:
        async with self._session_factory() as session:
            return await session.get(SyncJob, job_id)

    async def recent_jobs(self, integration_id: uuid.UUID, limit: int = 20) -> List[SyncJob]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncJob)
                .where(SyncJob.integration_id == integration_id)
                .order_by(SyncJob.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def has_open_job(self, integration_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncJob.id)
                .where(
                    SyncJob.integration_id == integration_id,
                    SyncJob.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]),
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None


def job_summary(job: SyncJob) -> Dict[str, Any]:
    return {
        "job_id": job.id,
        "integration_id": str(job.integration_id),
        "kind": job.kind,
        "status": job.status,
        "attempt": job.attempt,
        "parent_job_id": job.parent_job_id,
        "queued_at": isoformat(job.queued_at),
        "not_before": isoformat(job.not_before),
        "started_at": isoformat(job.started_at),
        "completed_at": isoformat(job.completed_at),
        "entity_count": job.entity_count,
        "last_error": job.last_error,
    }
