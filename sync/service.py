"""
Wiring — one place that builds the store, broker, queue, runner and
ingress around a session factory.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.broker import OAuthBroker
from connectors.credential_store import CredentialStore
from connectors.registry import ConnectorRegistry, get_registry
from sync.queue import JobQueue
from sync.runner import JobRunner
from webhooks.ingress import WebhookIngress


@dataclass
class SyncServices:
    session_factory: async_sessionmaker[AsyncSession]
    registry: ConnectorRegistry
    store: CredentialStore
    broker: OAuthBroker
    queue: JobQueue
    runner: JobRunner
    ingress: WebhookIngress


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    registry: Optional[ConnectorRegistry] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SyncServices:
    registry = registry or get_registry()
    store = CredentialStore(session_factory)
    broker = OAuthBroker(store, registry, transport=transport)
    queue = JobQueue(session_factory)
    runner = JobRunner(queue, store, broker, registry, session_factory)
    ingress = WebhookIngress(registry, store, queue)
    return SyncServices(
        session_factory=session_factory,
        registry=registry,
        store=store,
        broker=broker,
        queue=queue,
        runner=runner,
        ingress=ingress,
    )


_services: Optional[SyncServices] = None


def get_services() -> SyncServices:
    """FastAPI dependency; tests override it with their own wiring."""
    global _services
    if _services is None:
        from database.session import async_session_factory

        _services = build_services(async_session_factory)
    return _services
