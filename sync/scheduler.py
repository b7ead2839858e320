"""
Periodic scheduler — keeps every healthy integration on a polling cadence.

An integration is due when it has never synced or its last sync is older
than ``sync_interval_minutes``, and nothing is already queued or running
for it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import config
from connectors.schemas import JobKind, JobStatus
from database.models import Integration, SyncJob
from sync.queue import JobQueue
from utils.timeutils import utcnow

logger = logging.getLogger(__name__)


async def schedule_periodic_syncs(
    session_factory: async_sessionmaker[AsyncSession],
    queue: JobQueue,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Enqueue an ``incremental_sync`` for each due integration. Returns how many."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=config.sync_interval_minutes)
    open_job = select(SyncJob.id).where(
        SyncJob.integration_id == Integration.integration_id,
        SyncJob.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]),
    )
    stmt = select(Integration.integration_id).where(
        Integration.active.is_(True),
        Integration.needs_reconnect.is_(False),
        or_(Integration.last_synced_at.is_(None), Integration.last_synced_at < cutoff),
        ~open_job.exists(),
    )
    async with session_factory() as session:
        due = list((await session.execute(stmt)).scalars().all())

    for integration_id in due:
        await queue.enqueue(integration_id, JobKind.INCREMENTAL_SYNC, now=now)
    if due:
        logger.info("Scheduled %d periodic syncs", len(due))
    return len(due)
