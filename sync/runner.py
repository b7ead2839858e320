"""
Job runner — claims jobs, calls adapters through the broker, upserts
entities and finalizes each job.

Failure classification:

* ``AuthRejected``        → one forced refresh and retry; a second rejection
                             is terminal and flags ``needs_reconnect``
* ``TokenRefreshFailed``  → terminal, ``needs_reconnect`` (never deactivates)
* ``RateLimited(n)``      → retry after exactly ``n`` seconds
* ``TransientNetworkError``, timeout, anything unexpected → default backoff
* ``MalformedResponse``   → terminal, logged at ERROR with a payload excerpt
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import config
from connectors.base import BaseConnector
from connectors.broker import OAuthBroker
from connectors.credential_store import CredentialStore
from connectors.errors import (
    AuthRejected,
    IntegrationError,
    MalformedResponse,
    RateLimited,
    TokenRefreshFailed,
    TransientNetworkError,
)
from connectors.registry import ConnectorRegistry
from connectors.schemas import Batch, JobKind, NormalizedEntity, RescanRequest, WebhookStatus
from database.helpers import upsert_entity
from database.models import Integration, SyncJob
from sync.queue import JobQueue
from utils.timeutils import isoformat, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
RETRIED = "retried"
FAILED = "failed"


@dataclass
class _JobContext:
    job: SyncJob
    integration: Integration
    connector: BaseConnector
    access_token: str
    started_at: datetime
    refreshed: bool = False


class JobRunner:
    def __init__(
        self,
        queue: JobQueue,
        store: CredentialStore,
        broker: OAuthBroker,
        registry: ConnectorRegistry,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._queue = queue
        self._store = store
        self._broker = broker
        self._registry = registry
        self._session_factory = session_factory

    async def drain(self, max_jobs: Optional[int] = None) -> Dict[str, int]:
        """Claim and process jobs one after another until the queue is empty."""
        limit = max_jobs if max_jobs is not None else config.jobs_per_drain
        summary = {"processed": 0, SUCCEEDED: 0, RETRIED: 0, FAILED: 0}
        while summary["processed"] < limit:
            job = await self._queue.claim_next()
            if job is None:
                break
            outcome = await self.process(job)
            summary["processed"] += 1
            summary[outcome] += 1
        if summary["processed"]:
            logger.info("Drain finished: %s", summary)
        return summary

    async def run_once(self) -> Optional[str]:
        job = await self._queue.claim_next()
        if job is None:
            return None
        return await self.process(job)

    async def process(self, job: SyncJob) -> str:
        """Run one claimed job to a terminal state. Returns the outcome."""
        integration = await self._store.get(job.integration_id)
        if integration is None or not integration.active:
            return await self._fail(job, "integration deactivated", retryable=False)

        connector = self._registry.get(integration.provider)
        if connector is None:
            return await self._fail(job, f"no adapter for provider '{integration.provider}'", retryable=False)

        try:
            count = await asyncio.wait_for(
                self._execute(job, integration, connector),
                timeout=config.job_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return await self._fail(job, f"timed out after {config.job_timeout_seconds}s")
        except TokenRefreshFailed as exc:
            await self._store.flag_reconnect(integration.integration_id, f"Token refresh failed: {exc}")
            return await self._fail(job, str(exc), retryable=False)
        except AuthRejected as exc:
            await self._store.flag_reconnect(integration.integration_id, f"Access rejected after refresh: {exc}")
            return await self._fail(job, str(exc), retryable=False)
        except RateLimited as exc:
            return await self._fail(job, str(exc), retry_after=exc.retry_after)
        except MalformedResponse as exc:
            logger.error(
                "Job %s (%s) got a malformed response: %s | excerpt: %s",
                job.id, integration.provider, exc, exc.excerpt,
            )
            return await self._fail(job, f"malformed response: {exc}", retryable=False)
        except TransientNetworkError as exc:
            return await self._fail(job, str(exc))
        except Exception as exc:
            logger.exception("Job %s (%s) crashed", job.id, integration.provider)
            return await self._fail(job, f"{type(exc).__name__}: {exc}")

        if not await self._queue.mark_succeeded(job.id, count):
            # Reaped or finalized elsewhere while running; its outcome stands.
            logger.warning("Job %s finished after it was taken out of running; not counted", job.id)
            return FAILED
        return SUCCEEDED

    async def _fail(
        self,
        job: SyncJob,
        error: str,
        *,
        retryable: bool = True,
        retry_after: Optional[int] = None,
    ) -> str:
        successor = await self._queue.mark_failed(
            job.id, error, retryable=retryable, retry_after=retry_after
        )
        return RETRIED if successor is not None else FAILED

    # ── Job bodies ──────────────────────────────────────────────────────

    async def _execute(self, job: SyncJob, integration: Integration, connector: BaseConnector) -> int:
        ctx = _JobContext(
            job=job,
            integration=integration,
            connector=connector,
            access_token=await self._broker.get_valid_access_token(integration),
            started_at=utcnow(),
        )
        kind = JobKind(job.kind)
        if kind == JobKind.WEBHOOK_EVENT:
            return await self._handle_webhook(ctx)
        return await self._handle_sync(ctx, kind)

    async def _handle_webhook(self, ctx: _JobContext) -> int:
        translation = ctx.connector.translate_webhook(ctx.job.payload or {})
        if not isinstance(translation, RescanRequest):
            return await self._store_entities(ctx, translation)

        hint = translation.as_hint()
        if hint:
            batch = await self._fetch(ctx, hint=hint)
            return await self._store_entities(ctx, batch.entities)

        logger.info("Job %s: %s asked for a rescan (%s)", ctx.job.id, ctx.integration.provider, translation.reason)
        count, _ = await self._sweep(ctx, cursor=None, since=ctx.integration.last_synced_at, origin=JobKind.WEBHOOK_EVENT)
        return count

    async def _handle_sync(self, ctx: _JobContext, kind: JobKind) -> int:
        payload = ctx.job.payload or {}
        if "cursor" in payload or "since" in payload:
            # Continuation of a sweep cut short by the page limit.
            cursor = payload.get("cursor")
            since = parse_timestamp(payload.get("since"))
            sweep_started = parse_timestamp(payload.get("sweep_started_at")) or ctx.started_at
            origin = JobKind(payload.get("origin", kind.value))
        else:
            cursor = None
            since = ctx.integration.last_synced_at if kind == JobKind.INCREMENTAL_SYNC else None
            sweep_started = ctx.started_at
            origin = kind

        count, exhausted = await self._sweep(
            ctx, cursor=cursor, since=since, origin=origin, sweep_started=sweep_started
        )
        if exhausted:
            await self._store.record_sync(ctx.integration.integration_id, sweep_started)
            if origin == JobKind.FULL_SYNC and ctx.integration.webhook_status != WebhookStatus.REGISTERED.value:
                await self._register_webhook(ctx)
        return count

    async def _sweep(
        self,
        ctx: _JobContext,
        *,
        cursor: Optional[str],
        since: Optional[datetime],
        origin: JobKind,
        sweep_started: Optional[datetime] = None,
    ) -> Tuple[int, bool]:
        """Page until the provider is exhausted or the per-job page limit is hit."""
        total = 0
        for _ in range(config.max_pages_per_job):
            batch = await self._fetch(ctx, cursor=cursor, since=since)
            total += await self._store_entities(ctx, batch.entities)
            cursor = batch.next_cursor
            if not cursor:
                return total, True

        continuation = await self._queue.enqueue(
            ctx.integration.integration_id,
            JobKind.INCREMENTAL_SYNC,
            {
                "cursor": cursor,
                "since": isoformat(since),
                "sweep_started_at": isoformat(sweep_started or ctx.started_at),
                "origin": origin.value,
            },
        )
        logger.info(
            "Job %s hit the %d-page limit; continuing in job %s",
            ctx.job.id, config.max_pages_per_job, continuation,
        )
        return total, False

    async def _fetch(self, ctx: _JobContext, **kwargs: Any) -> Batch:
        try:
            return await ctx.connector.fetch_batch(ctx.access_token, **kwargs)
        except AuthRejected:
            if ctx.refreshed:
                raise
            logger.warning(
                "Job %s: %s rejected the access token; forcing a refresh",
                ctx.job.id, ctx.integration.provider,
            )
            ctx.refreshed = True
            ctx.access_token = await self._broker.get_valid_access_token(ctx.integration, force_refresh=True)
            return await ctx.connector.fetch_batch(ctx.access_token, **kwargs)

    async def _store_entities(self, ctx: _JobContext, entities: List[NormalizedEntity]) -> int:
        """Upsert each entity in its own transaction; a bad one is skipped."""
        stored = 0
        for entity in entities:
            entity.owner_id = ctx.integration.owner_id
            try:
                async with self._session_factory() as session:
                    await upsert_entity(session, entity, ctx.integration.owner_id, ctx.integration.integration_id)
                    await session.commit()
                stored += 1
            except Exception:
                logger.exception(
                    "Job %s: skipping %s entity %s", ctx.job.id, entity.provider.value, entity.native_id,
                )
        return stored

    async def _register_webhook(self, ctx: _JobContext) -> None:
        try:
            meta = await ctx.connector.register_webhook(ctx.access_token, ctx.integration)
        except IntegrationError as exc:
            logger.warning(
                "Webhook registration failed for %s integration %s: %s",
                ctx.integration.provider, ctx.integration.integration_id, exc,
            )
            await self._store.set_webhook_state(ctx.integration.integration_id, WebhookStatus.FAILED)
            return
        if meta is None:
            return
        await self._store.set_webhook_state(ctx.integration.integration_id, WebhookStatus.REGISTERED, meta)
        logger.info(
            "Registered %s webhook channel %s for integration %s",
            ctx.integration.provider, meta.get("channel_id"), ctx.integration.integration_id,
        )
