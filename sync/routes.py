"""
Sync routes — manual sync triggers, job history and the internal drain
endpoint called by cron.

Routes: /sync, /sync/jobs, /internal/process-jobs
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from auth.dependencies import get_current_user_id, require_cron_secret
from connectors.schemas import JobKind
from sync.queue import job_summary
from sync.service import SyncServices, get_services
from sync.worker import run_cycle

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])


class SyncRequest(BaseModel):
    integration_id: uuid.UUID
    kind: JobKind = JobKind.INCREMENTAL_SYNC


@router.post("/sync", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    body: SyncRequest,
    user_id: str = Depends(get_current_user_id),
    services: SyncServices = Depends(get_services),
) -> Dict[str, Any]:
    """Queue a sync for one of the user's integrations."""
    if body.kind == JobKind.WEBHOOK_EVENT:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "kind must be full_sync or incremental_sync")
    integration = await services.store.get_for_owner(body.integration_id, user_id)
    if integration is None or not integration.active:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Integration not found")
    job_id = await services.queue.enqueue(integration.integration_id, body.kind)
    return {"job_id": job_id}


@router.get("/sync/jobs")
async def list_jobs(
    integration_id: uuid.UUID = Query(...),
    limit: int = Query(20, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    services: SyncServices = Depends(get_services),
) -> list[dict]:
    """Most recent jobs for an integration, newest first."""
    integration = await services.store.get_for_owner(integration_id, user_id)
    if integration is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Integration not found")
    return [job_summary(job) for job in await services.queue.recent_jobs(integration_id, limit)]


@router.post("/internal/process-jobs", dependencies=[Depends(require_cron_secret)])
async def process_jobs(services: SyncServices = Depends(get_services)) -> Dict[str, Any]:
    """Schedule due syncs, reap abandoned jobs and drain the queue once."""
    return await run_cycle(services)
