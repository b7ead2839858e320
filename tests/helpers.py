"""
Shared test doubles: a scripted HTTP backend and a scripted connector.
"""

from __future__ import annotations

import inspect
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from connectors.base import BaseConnector, WebhookTranslation
from connectors.credential_store import CredentialStore
from connectors.schemas import Batch, NormalizedEntity, Provider, TokenSet


class FakeHTTP:
    """Records requests and answers them from per-URL scripts."""

    def __init__(self):
        self.routes: List[list] = []
        self.requests: List[httpx.Request] = []

    def add(self, method: str, url: str, *responses: Any) -> "FakeHTTP":
        """Queue responses for ``method url*``; the last one repeats."""
        self.routes.append([method, url, list(responses)])
        return self

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls(self, url: str) -> List[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(url)]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, url, responses in self.routes:
            if request.method == method and str(request.url).startswith(url):
                answer = responses.pop(0) if len(responses) > 1 else responses[0]
                if callable(answer):
                    answer = answer(request)
                    if inspect.isawaitable(answer):
                        answer = await answer
                if isinstance(answer, Exception):
                    raise answer
                return httpx.Response(answer.status_code, headers=answer.headers, content=answer.content)
        return httpx.Response(404, json={"error": f"no route for {request.method} {request.url}"})


def entity(native_id: str, provider: Provider = Provider.LINEAR, **fields: Any) -> NormalizedEntity:
    return NormalizedEntity(
        native_id=native_id,
        provider=provider,
        kind=fields.pop("kind", "issue"),
        title=fields.pop("title", f"record {native_id}"),
        payload=fields.pop("payload", {"id": native_id}),
        **fields,
    )


class ScriptedConnector(BaseConnector):
    """
    Connector whose ``fetch_batch`` replays a script of batches/exceptions.

    Poses as an existing provider so the registry and store accept it.
    """

    def __init__(
        self,
        provider: Provider = Provider.LINEAR,
        pages: Optional[List[Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(transport)
        self._provider = provider
        self.pages = list(pages or [])
        self.calls: List[Dict[str, Any]] = []
        self.translate: Callable[[Dict[str, Any]], WebhookTranslation] = lambda event: []
        self.webhook_meta: Optional[Dict[str, Any]] = None
        self.registrations = 0

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def display_name(self) -> str:
        return "Scripted"

    @property
    def scopes(self) -> List[str]:
        return ["read"]

    @property
    def auth_url(self) -> str:
        return "https://auth.example.com/authorize"

    @property
    def token_url(self) -> str:
        return "https://auth.example.com/token"

    async def fetch_batch(
        self,
        access_token: str,
        cursor: Optional[str] = None,
        *,
        since: Optional[datetime] = None,
        hint: Optional[Dict[str, Any]] = None,
    ) -> Batch:
        self.calls.append({"token": access_token, "cursor": cursor, "since": since, "hint": hint})
        step = self.pages.pop(0) if self.pages else Batch()
        if callable(step):
            step = step()
            if inspect.isawaitable(step):
                step = await step
        if isinstance(step, Exception):
            raise step
        return step

    def translate_webhook(self, event: Dict[str, Any]) -> WebhookTranslation:
        return self.translate(event)

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: str, now: datetime) -> bool:
        return headers.get("x-test-signature") == secret

    async def register_webhook(self, access_token: str, integration: Any) -> Optional[Dict[str, Any]]:
        self.registrations += 1
        return self.webhook_meta


async def add_integration(
    store: CredentialStore,
    provider: Provider = Provider.LINEAR,
    *,
    owner_id: Optional[uuid.UUID] = None,
    access_token: str = "access-1",
    refresh_token: Optional[str] = "refresh-1",
    expires_in: Optional[int] = 3600,
    account_id: Optional[str] = "org-1",
    now: Optional[datetime] = None,
):
    tokens = TokenSet(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        account_id=account_id,
        account_label=f"{provider.value} account",
    )
    return await store.save_tokens(owner_id or uuid.uuid4(), provider, tokens, now=now)


def token_response(access_token: str = "access-2", refresh_token: Optional[str] = "refresh-2", expires_in: int = 3600) -> httpx.Response:
    body: Dict[str, Any] = {"access_token": access_token, "expires_in": expires_in, "token_type": "Bearer"}
    if refresh_token:
        body["refresh_token"] = refresh_token
    return httpx.Response(200, json=body)
