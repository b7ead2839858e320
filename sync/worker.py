"""
Background worker — an in-process polling loop started with the app when
``JOB_WORKER_ENABLED`` is set.  Deployments without it call
``POST /internal/process-jobs`` from a cron instead; both run ``run_cycle``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from config.settings import config
from sync.scheduler import schedule_periodic_syncs
from sync.service import SyncServices

logger = logging.getLogger(__name__)


def stale_after() -> timedelta:
    return timedelta(seconds=config.job_timeout_seconds * 2)


async def run_cycle(services: SyncServices, max_jobs: Optional[int] = None) -> Dict[str, Any]:
    """Schedule due syncs, reap abandoned jobs, then drain the queue once."""
    scheduled = await schedule_periodic_syncs(services.session_factory, services.queue)
    reaped = await services.queue.reap_stale(stale_after())
    drained = await services.runner.drain(max_jobs)
    return {"scheduled": scheduled, "reaped": reaped, **drained}


class SyncWorker:
    def __init__(self, services: SyncServices, interval: Optional[float] = None):
        self._services = services
        self._interval = interval if interval is not None else config.job_poll_interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="sync-worker")
        logger.info("Sync worker started (every %.1fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Sync worker stopped")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await run_cycle(self._services)
            except Exception:
                logger.exception("Sync worker cycle failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
