"""
Webhook ingress — authenticate a provider push and turn it into
``webhook_event`` jobs.

The ingress never syncs inline and never deduplicates: a redelivered push
becomes a second job, and idempotent upserts make that harmless.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from connectors.credential_store import CredentialStore
from connectors.errors import SignatureInvalid
from connectors.registry import ConnectorRegistry
from connectors.schemas import JobKind, Provider
from sync.queue import JobQueue
from utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    status_code: int
    body: Dict[str, Any]
    job_ids: List[int] = field(default_factory=list)


_UNAUTHORIZED = {"ok": False, "error": "unauthorized"}


class WebhookIngress:
    def __init__(self, registry: ConnectorRegistry, store: CredentialStore, queue: JobQueue):
        self._registry = registry
        self._store = store
        self._queue = queue

    async def receive(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        *,
        now: Optional[datetime] = None,
    ) -> WebhookResult:
        connector = self._registry.get(provider)
        if connector is None:
            logger.warning("Webhook for unknown provider '%s' rejected", provider)
            return WebhookResult(401, dict(_UNAUTHORIZED))

        lowered = {name.lower(): value for name, value in headers.items()}
        try:
            connector.authenticate_push(raw_body, lowered, now or utcnow())
        except SignatureInvalid as exc:
            logger.warning("Webhook for %s rejected: %s", provider, exc)
            return WebhookResult(401, dict(_UNAUTHORIZED))

        body = _parse_body(raw_body)
        if connector.provider == Provider.SLACK and isinstance(body, dict) and body.get("type") == "url_verification":
            return WebhookResult(200, {"challenge": body.get("challenge")})

        event = {"body": body, "headers": connector.webhook_headers(lowered)}
        account_id = connector.webhook_account_id(event)
        if account_id is None and not connector.webhook_fanout:
            logger.info("Webhook for %s names no account; nothing to route", provider)
            return WebhookResult(200, {"ok": True})

        targets = await self._store.find_for_webhook(
            connector.provider, connector.webhook_lookup_field, account_id
        )
        if not targets:
            logger.info("Webhook for %s account %s matched no active integration", provider, account_id)
            return WebhookResult(200, {"ok": True})

        job_ids = []
        for integration in targets:
            job_ids.append(
                await self._queue.enqueue(integration.integration_id, JobKind.WEBHOOK_EVENT, event)
            )
        return WebhookResult(200, {"ok": True}, job_ids)


def _parse_body(raw_body: bytes) -> Optional[Any]:
    if not raw_body:
        return None
    try:
        return json.loads(raw_body)
    except ValueError:
        logger.debug("Webhook body is not JSON (%d bytes)", len(raw_body))
        return None
