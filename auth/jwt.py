"""
JWT-style token creation and verification.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256.
Secret key is loaded from ``config.jwt_secret`` (env var: ``JWT_SECRET``).
The subject is the owner id every integration is scoped to.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Optional

from fastapi import HTTPException, status

from config.settings import config


def _sign(raw: bytes) -> str:
    return hmac.new(config.jwt_secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(owner_id: str, expires_in: Optional[int] = None) -> str:
    """Create a signed token containing ``owner_id`` and expiry."""
    payload = {
        "owner_id": str(owner_id),
        "exp": int(time.time()) + (expires_in if expires_in is not None else config.jwt_expiry_seconds),
    }
    raw = json.dumps(payload).encode()
    return urlsafe_b64encode(raw).decode() + "." + _sign(raw)


def verify_token(token: str) -> str:
    """
    Verify token and return ``owner_id``.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        encoded, _, sig = token.partition(".")
        if not encoded or not sig:
            raise ValueError("bad format")
        raw = urlsafe_b64decode(encoded)
        if not hmac.compare_digest(sig.encode(), _sign(raw).encode()):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("token expired")
        return str(uuid.UUID(payload["owner_id"]))
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )
