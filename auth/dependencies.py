"""
FastAPI dependencies for authentication.

``get_current_user_id`` identifies the owner of the integrations a request
touches; ``require_cron_secret`` guards the internal job trigger.
"""

from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth.jwt import verify_token
from config.settings import config

_bearer_scheme = HTTPBearer()
_cron_scheme = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """
    Extract and verify the Bearer token, returning the authenticated
    owner id (UUID string).
    """
    return verify_token(credentials.credentials)


async def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(_cron_scheme),
) -> None:
    """Only the scheduler holding ``CRON_SECRET`` may trigger job processing."""
    if not config.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRON_SECRET is not configured",
        )
    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode("utf-8", "surrogateescape"),
        config.cron_secret.encode(),
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )
