"""
Integration API routes — OAuth authorize/callback, API-key registration,
list integrations, disconnect.

Routes: /oauth/*, /integrations*, /providers
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from auth.dependencies import get_current_user_id
from config.settings import config
from connectors.credential_store import integration_summary
from connectors.encryption import decrypt_token
from connectors.errors import (
    AuthRejected,
    IntegrationError,
    InvalidOAuthState,
    OAuthExchangeError,
)
from connectors.registry import parse_provider
from connectors.schemas import JobKind, Provider, TokenSet
from sync.service import SyncServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])


class ApiKeyRequest(BaseModel):
    provider: str
    api_key: str
    account_id: Optional[str] = None
    account_label: Optional[str] = None


def _provider_or_404(value: str) -> Provider:
    provider = parse_provider(value)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Provider '{value}' not found",
        )
    return provider


def _status_redirect(provider: Optional[str], outcome: str, reason: Optional[str] = None) -> RedirectResponse:
    params = {"provider": provider or "", "status": outcome}
    if reason:
        params["reason"] = reason
    separator = "&" if "?" in config.oauth_status_redirect else "?"
    return RedirectResponse(
        url=f"{config.oauth_status_redirect}{separator}{urlencode(params)}",
        status_code=status.HTTP_302_FOUND,
    )


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers(services: SyncServices = Depends(get_services)) -> list[dict]:
    """
    List all available providers and their configuration status.
    No auth required — used by the frontend to show available integrations.
    """
    return services.registry.list_providers()


@router.get("/oauth/authorize")
async def authorize(
    provider: str = Query(...),
    user_id: str = Depends(get_current_user_id),
    services: SyncServices = Depends(get_services),
) -> RedirectResponse:
    """Redirect the user to the provider's consent screen."""
    selected = _provider_or_404(provider)
    connector = services.registry.get(selected)
    if connector is None or not connector.is_configured():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Provider '{provider}' has no OAuth client configured",
        )
    url = services.broker.build_authorization_url(selected, user_id)
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.get("/oauth/callback")
async def oauth_callback(
    state: str = Query(...),
    code: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    provider: Optional[str] = Query(None),
    services: SyncServices = Depends(get_services),
) -> RedirectResponse:
    """
    OAuth callback — the provider redirects here after consent.

    Exchanges the code, stores the integration, enqueues the initial
    ``full_sync`` and redirects to the frontend status page.
    """
    # 1. Verify state → owner + provider
    expected = parse_provider(provider) if provider else None
    if provider and expected is None:
        return _status_redirect(provider, "error", "unknown_provider")
    try:
        owner_id, selected = services.broker.verify_state(state, expected)
    except InvalidOAuthState as exc:
        logger.warning("OAuth callback with invalid state: %s", exc)
        return _status_redirect(provider, "error", "invalid_state")

    if error or not code:
        logger.info("OAuth consent for %s not granted: %s", selected.value, error)
        return _status_redirect(selected.value, "error", error or "missing_code")

    # 2. Exchange code for tokens
    try:
        tokens = await services.broker.exchange_code(selected, code)
    except OAuthExchangeError as exc:
        logger.error("OAuth exchange failed for %s: %s", selected.value, exc)
        return _status_redirect(selected.value, "error", "exchange_failed")
    except IntegrationError as exc:
        logger.error("OAuth exchange for %s could not reach the provider: %s", selected.value, exc)
        return _status_redirect(selected.value, "error", "provider_unavailable")

    # 3. Store integration and kick off the first sync
    integration = await services.store.save_tokens(owner_id, selected, tokens)
    await services.queue.enqueue(integration.integration_id, JobKind.FULL_SYNC)

    logger.info(
        "OAuth connected: owner=%s provider=%s account=%s",
        owner_id, selected.value, integration.account_label,
    )
    return _status_redirect(selected.value, "success")


@router.post("/integrations/api-key", status_code=status.HTTP_201_CREATED)
async def register_api_key(
    body: ApiKeyRequest,
    user_id: str = Depends(get_current_user_id),
    services: SyncServices = Depends(get_services),
) -> Dict[str, Any]:
    """Register a static, non-expiring API key (providers that accept one)."""
    selected = _provider_or_404(body.provider)
    connector = services.registry.get(selected)
    if connector is None or not connector.supports_api_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Provider '{body.provider}' does not accept API keys",
        )

    account_id, account_label = body.account_id, body.account_label
    if not account_id:
        try:
            account = await connector.fetch_account(body.api_key)
        except AuthRejected:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="API key was rejected")
        except IntegrationError as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"Could not validate API key: {exc}",
            )
        account_id = account.get("account_id")
        account_label = account_label or account.get("account_label")

    tokens = TokenSet(access_token=body.api_key, account_id=account_id, account_label=account_label)
    integration = await services.store.save_tokens(user_id, selected, tokens)
    job_id = await services.queue.enqueue(integration.integration_id, JobKind.FULL_SYNC)
    return {**integration_summary(integration), "job_id": job_id}


@router.get("/integrations")
async def list_integrations(
    user_id: str = Depends(get_current_user_id),
    services: SyncServices = Depends(get_services),
) -> list[dict]:
    """List the user's integrations (tokens are never returned)."""
    return [integration_summary(i) for i in await services.store.list_for_owner(user_id)]


@router.delete("/integrations/{integration_id}")
async def disconnect_integration(
    integration_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    services: SyncServices = Depends(get_services),
) -> Dict[str, Any]:
    """Soft-delete an integration and revoke its token where the provider allows it."""
    integration = await services.store.deactivate(integration_id, user_id)
    if integration is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Integration not found")

    revoked = False
    connector = services.registry.get(integration.provider)
    access_token = decrypt_token(integration.access_token)
    if connector is not None and access_token:
        revoked = await connector.revoke_token(access_token)
    return {"status": "disconnected", "integration_id": str(integration_id), "revoked": revoked}
