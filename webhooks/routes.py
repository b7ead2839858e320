"""
Webhook routes — one public endpoint per provider.

Route: POST /webhooks/{provider}
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from sync.service import SyncServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    services: SyncServices = Depends(get_services),
) -> JSONResponse:
    """Verify the provider signature and enqueue a ``webhook_event`` job."""
    raw_body = await request.body()
    result = await services.ingress.receive(provider, raw_body, request.headers)
    return JSONResponse(content=result.body, status_code=result.status_code)
