"""
OAuth broker — authorization URLs, code exchange, refresh, and the single
choke point every adapter call goes through: ``get_valid_access_token``.

Refresh convergence:

* inside one process, a per-integration ``asyncio.Lock`` makes concurrent
  callers share one provider refresh;
* across processes, ``CredentialStore.update_tokens`` is conditioned on
  ``token_version`` so racing refreshes converge on one winner and the
  loser re-reads the stored token.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Type
from urllib.parse import urlencode

import httpx

from config.settings import config
from connectors.base import BaseConnector, signatures_match
from connectors.credential_store import CredentialStore
from connectors.encryption import decrypt_token
from connectors.errors import (
    IntegrationError,
    InvalidOAuthState,
    OAuthExchangeError,
    RateLimited,
    TokenRefreshFailed,
    TransientNetworkError,
)
from connectors.registry import ConnectorRegistry, parse_provider
from connectors.schemas import Provider, TokenSet
from database.models import Integration
from utils.timeutils import utcnow

logger = logging.getLogger(__name__)

_CLOCK_SKEW_SECONDS = 60


class OAuthBroker:
    def __init__(
        self,
        store: CredentialStore,
        registry: ConnectorRegistry,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._store = store
        self._registry = registry
        self._transport = transport
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}

    # ── State token (CSRF + replay window) ─────────────────────────────

    def create_state(self, owner_id: str, provider: Provider, now: Optional[datetime] = None) -> str:
        """``base64url(json{owner_id, provider, iat}) + "." + hmac``."""
        issued_at = int((now or utcnow()).timestamp())
        raw = json.dumps(
            {"owner_id": str(owner_id), "provider": provider.value, "iat": issued_at},
            separators=(",", ":"),
        ).encode()
        return base64.urlsafe_b64encode(raw).decode().rstrip("=") + "." + _sign(raw)

    def verify_state(
        self,
        state: str,
        provider: Optional[Provider] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[str, Provider]:
        """Return ``(owner_id, provider)`` or raise ``InvalidOAuthState``."""
        encoded, _, signature = state.partition(".")
        if not encoded or not signature:
            raise InvalidOAuthState("bad format")
        try:
            raw = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
        except ValueError as exc:
            raise InvalidOAuthState("bad encoding") from exc
        if not signatures_match(signature, _sign(raw)):
            raise InvalidOAuthState("bad signature")
        try:
            payload = json.loads(raw)
            owner_id = str(payload["owner_id"])
            issued_at = int(payload["iat"])
            state_provider = Provider(payload["provider"])
        except (ValueError, KeyError, TypeError) as exc:
            raise InvalidOAuthState("bad payload") from exc

        age = (now or utcnow()).timestamp() - issued_at
        if age > config.oauth_state_ttl_seconds or age < -_CLOCK_SKEW_SECONDS:
            raise InvalidOAuthState("state expired")
        if provider is not None and provider != state_provider:
            raise InvalidOAuthState("provider mismatch")
        return owner_id, state_provider

    # ── Authorization-code flow ─────────────────────────────────────────

    def _connector(self, provider: Provider) -> BaseConnector:
        connector = self._registry.get(provider)
        if connector is None:
            raise IntegrationError(f"Unknown provider '{provider}'")
        return connector

    def build_authorization_url(self, provider: Provider, owner_id: str) -> str:
        connector = self._connector(provider)
        params = {
            "client_id": connector.credentials["client_id"],
            "redirect_uri": connector.redirect_uri(),
            "response_type": "code",
            "state": self.create_state(owner_id, provider),
        }
        params.update(connector.authorization_params())
        return f"{connector.auth_url}?{urlencode(params)}"

    async def exchange_code(self, provider: Provider, code: str) -> TokenSet:
        """Exchange an authorization code; raises ``OAuthExchangeError``."""
        connector = self._connector(provider)
        data = await self._token_request(
            connector,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": connector.redirect_uri(),
            },
            OAuthExchangeError,
        )
        try:
            tokens = connector.parse_token_response(data)
        except KeyError as exc:
            raise OAuthExchangeError(f"{connector.display_name} token response missing {exc}") from exc

        if not tokens.account_id:
            account = await connector.fetch_account(tokens.access_token)
            tokens.account_id = account.get("account_id")
            tokens.account_label = tokens.account_label or account.get("account_label")
        return tokens

    async def refresh(self, provider: Provider, refresh_token: str) -> TokenSet:
        """Refresh a token pair; raises ``TokenRefreshFailed`` when the grant is rejected."""
        connector = self._connector(provider)
        data = await self._token_request(
            connector,
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            TokenRefreshFailed,
        )
        try:
            return connector.parse_token_response(data)
        except KeyError as exc:
            raise TokenRefreshFailed(f"{connector.display_name} refresh response missing {exc}") from exc

    async def _token_request(
        self,
        connector: BaseConnector,
        form: Dict[str, str],
        error_cls: Type[IntegrationError],
    ) -> Dict[str, Any]:
        creds = connector.credentials
        form = {"client_id": creds["client_id"], "client_secret": creds["client_secret"], **form}
        try:
            async with httpx.AsyncClient(
                timeout=config.provider_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    connector.token_url,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{connector.display_name} token endpoint unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise TransientNetworkError(f"{connector.display_name} token endpoint error {response.status_code}")
        if response.status_code == 429:
            raise RateLimited(int(response.headers.get("retry-after", "60") or 60))
        if response.status_code >= 400:
            raise error_cls(f"{connector.display_name} token endpoint returned {response.status_code}: {response.text[:200]}")
        try:
            data = response.json()
        except ValueError as exc:
            raise error_cls(f"{connector.display_name} token endpoint returned non-JSON") from exc
        if data.get("error") or data.get("ok") is False:
            raise error_cls(
                f"{connector.display_name} OAuth error: {data.get('error_description') or data.get('error')}"
            )
        return data

    # ── Token choke point ───────────────────────────────────────────────

    def _is_expiring(self, integration: Integration, now: datetime) -> bool:
        if integration.token_expires_at is None:
            return False
        margin = config.token_refresh_margin_seconds
        return integration.token_expires_at.timestamp() - now.timestamp() <= margin

    async def get_valid_access_token(self, integration: Integration, *, force_refresh: bool = False) -> str:
        """
        Return a usable access token for ``integration``.

        The stored token is returned while it is unexpired beyond the safety
        margin (or never expires).  Otherwise it is refreshed and persisted.
        ``force_refresh`` is used after a provider rejected a token that
        looked valid.
        """
        lock = self._locks.setdefault(integration.integration_id, asyncio.Lock())
        async with lock:
            current = await self._store.get(integration.integration_id)
            if current is None or not current.active:
                raise TokenRefreshFailed(f"Integration {integration.integration_id} is not active")

            now = utcnow()
            already_refreshed = current.token_version != integration.token_version
            if not self._is_expiring(current, now) and (not force_refresh or already_refreshed):
                return decrypt_token(current.access_token)

            refresh_token = decrypt_token(current.refresh_token)
            if not refresh_token:
                raise TokenRefreshFailed(
                    "Provider rejected the access token and no refresh token is available"
                    if force_refresh
                    else "Access token expired and no refresh token is available"
                )

            provider = parse_provider(current.provider)
            tokens = await self.refresh(provider, refresh_token)
            if await self._store.update_tokens(current.integration_id, current.token_version, tokens, now=now):
                logger.info("Refreshed %s token for integration %s", current.provider, current.integration_id)
                integration.token_version = current.token_version + 1
                return tokens.access_token

            winner = await self._store.get(current.integration_id)
            logger.info(
                "Lost %s refresh race for integration %s; using the stored token",
                current.provider,
                current.integration_id,
            )
            integration.token_version = winner.token_version
            return decrypt_token(winner.access_token)


def _sign(raw: bytes) -> str:
    return hmac.new(config.oauth_state_secret.encode(), raw, hashlib.sha256).hexdigest()
