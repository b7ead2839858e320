"""
Database helper functions — idempotent entity persistence.

"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.schemas import NormalizedEntity
from database.models import SyncedEntity
from utils.timeutils import utcnow

logger = logging.getLogger(__name__)

_NATURAL_KEY = ["owner_id", "provider", "native_id"]


def _to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


def _insert_for(session: AsyncSession):
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    return sqlite_insert if dialect == "sqlite" else pg_insert


async def upsert_entity(
    session: AsyncSession,
    entity: NormalizedEntity,
    owner_id: str | uuid.UUID,
    integration_id: Optional[uuid.UUID] = None,
    *,
    now: Optional[datetime] = None,
) -> None:
    """
    Insert or update one entity keyed by ``(owner_id, provider, native_id)``.

    Re-ingesting the same record overwrites its content and bumps
    ``ingest_count``; it never creates a second row.
    """
    now = now or utcnow()
    insert = _insert_for(session)
    values = {
        "entity_id": uuid.uuid4(),
        "owner_id": _to_uuid(owner_id),
        "provider": entity.provider.value,
        "native_id": entity.native_id,
        "kind": entity.kind,
        "integration_id": integration_id,
        "title": entity.title,
        "url": entity.url,
        "payload": entity.payload,
        "source_updated_at": entity.source_updated_at,
        "first_seen_at": now,
        "updated_at": now,
        "ingest_count": 1,
    }
    stmt = insert(SyncedEntity).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=_NATURAL_KEY,
        set_={
            "kind": stmt.excluded.kind,
            "integration_id": stmt.excluded.integration_id,
            "title": stmt.excluded.title,
            "url": stmt.excluded.url,
            "payload": stmt.excluded.payload,
            "source_updated_at": stmt.excluded.source_updated_at,
            "updated_at": stmt.excluded.updated_at,
            "ingest_count": SyncedEntity.ingest_count + 1,
        },
    )
    await session.execute(stmt)
    await session.flush()


async def count_entities(
    session: AsyncSession,
    owner_id: Optional[str | uuid.UUID] = None,
    provider: Optional[str] = None,
) -> int:
    stmt = select(func.count()).select_from(SyncedEntity)
    if owner_id is not None:
        stmt = stmt.where(SyncedEntity.owner_id == _to_uuid(owner_id))
    if provider is not None:
        stmt = stmt.where(SyncedEntity.provider == provider)
    return (await session.execute(stmt)).scalar_one()


async def get_entity(
    session: AsyncSession,
    owner_id: str | uuid.UUID,
    provider: str,
    native_id: str,
) -> Optional[SyncedEntity]:
    result = await session.execute(
        select(SyncedEntity).where(
            SyncedEntity.owner_id == _to_uuid(owner_id),
            SyncedEntity.provider == provider,
            SyncedEntity.native_id == native_id,
        )
    )
    return result.scalar_one_or_none()
