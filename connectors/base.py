"""
BaseConnector — abstract interface for every provider adapter.

A connector carries two things:

* the provider's OAuth metadata (endpoints, scopes, token-response shape),
  consumed by the generic ``OAuthBroker``;
* the sync capability set ``{fetch_batch, translate_webhook}`` plus the
  provider's webhook signature scheme, consumed by the runner and ingress.

All provider HTTP goes through ``_send`` / ``_graphql`` so that every
adapter maps failures onto the same error taxonomy.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

import httpx

from config.settings import config
from connectors.errors import (
    AuthRejected,
    MalformedResponse,
    RateLimited,
    SignatureInvalid,
    TransientNetworkError,
)
from connectors.schemas import Batch, NormalizedEntity, Provider, RescanRequest, TokenSet

logger = logging.getLogger(__name__)

_AUTH_ERROR_MARKERS = ("authentication", "unauthorized", "unauthenticated", "invalid token", "forbidden")
_DEFAULT_RETRY_AFTER = 60

WebhookTranslation = Union[List[NormalizedEntity], RescanRequest]


class BaseConnector(ABC):
    """Abstract base for all provider adapters."""

    #: Integration column the ingress routes webhooks by.
    webhook_lookup_field = "external_account_id"
    #: Providers that accept a static, non-expiring API key.
    supports_api_key = False
    #: Pushes without an account id go to every integration of the provider.
    webhook_fanout = False

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider(self) -> Provider:
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes requested by this connector."""
        ...

    @property
    @abstractmethod
    def auth_url(self) -> str:
        ...

    @property
    @abstractmethod
    def token_url(self) -> str:
        ...

    @property
    def credentials(self) -> Dict[str, str]:
        return config.provider_credentials(self.provider.value)

    def is_configured(self) -> bool:
        """True when the OAuth client id and secret are set."""
        creds = self.credentials
        return bool(creds["client_id"] and creds["client_secret"])

    def redirect_uri(self) -> str:
        return f"{config.public_base_url}/oauth/callback"

    def webhook_url(self) -> str:
        return f"{config.public_base_url}/webhooks/{self.provider.value}"

    # ── OAuth hooks (used by the broker) ────────────────────────────────

    def authorization_params(self) -> Dict[str, str]:
        """Provider-specific query params appended to the consent URL."""
        return {"scope": " ".join(self.scopes)}

    def parse_token_response(self, data: Dict[str, Any]) -> TokenSet:
        """Turn a token-endpoint JSON body into a ``TokenSet``."""
        scope = data.get("scope") or ""
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            scopes=[s for s in scope.replace(",", " ").split() if s],
        )

    async def fetch_account(self, access_token: str) -> Dict[str, Optional[str]]:
        """
        Look up the provider-side account for a fresh token.

        Returns ``{"account_id": ..., "account_label": ...}``.
        """
        return {"account_id": None, "account_label": None}

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke the token at the provider. Best-effort; False if unsupported."""
        return False

    # ── Sync capability set ─────────────────────────────────────────────

    @abstractmethod
    async def fetch_batch(
        self,
        access_token: str,
        cursor: Optional[str] = None,
        *,
        since: Optional[datetime] = None,
        hint: Optional[Dict[str, Any]] = None,
    ) -> Batch:
        """
        Fetch ONE page of records.

        ``next_cursor`` is None once the provider is exhausted.  ``hint``
        (``{"record_id": ...}``) restricts the fetch to a single record.
        """
        ...

    @abstractmethod
    def translate_webhook(self, event: Dict[str, Any]) -> WebhookTranslation:
        """
        Normalize a stored webhook envelope ``{"body": ..., "headers": ...}``.

        Returns entities when the provider sends records inline, or a
        ``RescanRequest`` when it only signals that something changed.
        """
        ...

    @abstractmethod
    def verify_signature(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        secret: str,
        now: datetime,
    ) -> bool:
        ...

    def authenticate_push(self, raw_body: bytes, headers: Mapping[str, str], now: datetime) -> None:
        """Raise ``SignatureInvalid`` unless the push carries a valid signature."""
        secret = self.credentials["webhook_secret"]
        if not secret:
            raise SignatureInvalid(f"no {self.provider.value} signing secret configured")
        if not self.verify_signature(raw_body, headers, secret, now):
            raise SignatureInvalid(f"invalid {self.provider.value} signature")

    def webhook_account_id(self, event: Dict[str, Any]) -> Optional[str]:
        """Provider account a push belongs to; None when the push names none."""
        return None

    def webhook_headers(self, headers: Mapping[str, str]) -> Dict[str, str]:
        """Headers worth keeping in the job payload."""
        return {}

    async def register_webhook(self, access_token: str, integration: Any) -> Optional[Dict[str, Any]]:
        """
        Register a push channel with the provider.

        Returns webhook metadata to persist, or None when the provider is
        configured out-of-band (app dashboards).
        """
        return None

    # ── HTTP helpers ────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=config.provider_timeout_seconds,
            transport=self._transport,
        )

    async def _send(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        allow_404: bool = False,
        **kwargs: Any,
    ) -> Optional[Dict[str, Any]]:
        request_headers = {"Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        response = await self._request(method, url, access_token=access_token, headers=request_headers, **kwargs)
        if allow_404 and response.status_code == 404:
            return None
        self._raise_for_status(response)
        return self._json(response)

    async def _fetch_text(self, url: str, *, access_token: str, **kwargs: Any) -> str:
        """GET a plain-text body (file exports)."""
        response = await self._request(
            "GET", url, access_token=access_token, headers={"Accept": "text/plain"}, **kwargs
        )
        self._raise_for_status(response)
        return response.text

    async def _request(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"
        try:
            async with self._client() as client:
                return await client.request(method, url, headers=request_headers, **kwargs)
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{self.display_name} request failed: {exc}") from exc

    async def _graphql(
        self,
        url: str,
        query: str,
        variables: Dict[str, Any],
        access_token: str,
    ) -> Dict[str, Any]:
        body = await self._send(
            "POST",
            url,
            access_token=access_token,
            json={"query": query, "variables": variables},
        )
        errors = body.get("errors") or []
        if errors:
            messages = [str(err.get("message", "")) for err in errors if isinstance(err, dict)]
            lowered = " ".join(messages).lower()
            if any(marker in lowered for marker in _AUTH_ERROR_MARKERS):
                raise AuthRejected(f"{self.display_name}: {messages[0]}")
            if "ratelimit" in lowered.replace(" ", "").replace("_", ""):
                raise RateLimited(_DEFAULT_RETRY_AFTER)
            raise MalformedResponse(
                f"{self.display_name} GraphQL error: {messages[0] if messages else errors}",
                excerpt=str(errors),
            )
        data = body.get("data")
        if not isinstance(data, dict):
            raise MalformedResponse(f"{self.display_name} GraphQL response without data", excerpt=str(body))
        return data

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        if status in (401, 403):
            raise AuthRejected(f"{self.display_name} rejected the access token ({status})")
        if status == 429:
            raise RateLimited(retry_after_seconds(response))
        if status >= 500:
            raise TransientNetworkError(f"{self.display_name} server error {status}")
        raise MalformedResponse(f"{self.display_name} returned {status}", excerpt=response.text)

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponse(
                f"{self.display_name} returned a non-JSON body", excerpt=response.text
            ) from exc
        if not isinstance(data, dict):
            raise MalformedResponse(f"{self.display_name} returned {type(data).__name__}", excerpt=response.text)
        return data


def retry_after_seconds(response: httpx.Response, default: int = _DEFAULT_RETRY_AFTER) -> int:
    value = response.headers.get("retry-after")
    if not value:
        return default
    try:
        return max(int(float(value)), 0)
    except ValueError:
        return default


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def signatures_match(received: str, expected: str) -> bool:
    """
    Constant-time comparison of a caller-supplied signature.

    Compares bytes: ``compare_digest`` refuses non-ASCII ``str`` input, and
    headers and query params can carry any character.
    """
    return hmac.compare_digest(
        received.encode("utf-8", "surrogateescape"),
        expected.encode("utf-8", "surrogateescape"),
    )


def require(record: Dict[str, Any], key: str, provider: str) -> Any:
    """Fetch a mandatory field, mapping absence onto ``MalformedResponse``."""
    try:
        return record[key]
    except (KeyError, TypeError) as exc:
        raise MalformedResponse(f"{provider} record missing '{key}'", excerpt=str(record)) from exc
