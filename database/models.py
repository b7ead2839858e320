"""
SQLAlchemy ORM models for integrations, sync jobs and synced entities.

Types are portable between PostgreSQL (production, asyncpg) and SQLite
(tests, aiosqlite): JSON falls back from JSONB, and ``UTCDateTime`` keeps
every timestamp timezone-aware on the way in and out.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship


def _now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime that is always timezone-aware UTC in Python."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")
JobId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Integration(Base):
    __tablename__ = "integrations"

    integration_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    external_account_id = Column(String(256))
    account_label = Column(String(256))

    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    token_expires_at = Column(UTCDateTime)
    token_version = Column(Integer, nullable=False, default=1)
    scopes = Column(JSONType, default=list)
    provider_meta = Column(JSONType, default=dict)

    webhook_status = Column(String(16), nullable=False, default="unregistered")
    webhook_channel_id = Column(String(256), index=True)
    webhook_meta = Column(JSONType, default=dict)

    active = Column(Boolean, nullable=False, default=True)
    needs_reconnect = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text)
    last_synced_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=_now)
    updated_at = Column(UTCDateTime, default=_now, onupdate=_now)

    jobs = relationship("SyncJob", back_populates="integration", cascade="all, delete-orphan")

    __table_args__ = (
        # At most one active integration per (owner, provider).
        Index(
            "uq_integrations_active_owner_provider",
            "owner_id",
            "provider",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
        Index("ix_integrations_provider_account", "provider", "external_account_id"),
    )


class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id = Column(JobId, primary_key=True, autoincrement=True)
    integration_id = Column(
        Uuid,
        ForeignKey("integrations.integration_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    payload = Column(JSONType, default=dict)

    attempt = Column(Integer, nullable=False, default=1)
    parent_job_id = Column(JobId, ForeignKey("sync_jobs.id", ondelete="SET NULL"))

    queued_at = Column(UTCDateTime, nullable=False, default=_now)
    not_before = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False, default=_now)
    started_at = Column(UTCDateTime)
    completed_at = Column(UTCDateTime)
    last_error = Column(Text)
    entity_count = Column(Integer, nullable=False, default=0)

    integration = relationship("Integration", back_populates="jobs")

    __table_args__ = (
        Index("ix_sync_jobs_claim", "status", "queued_at", "id"),
        # One running job per integration, whatever the claimers do.
        Index(
            "uq_sync_jobs_one_running",
            "integration_id",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
    )


class SyncedEntity(Base):
    __tablename__ = "synced_entities"

    entity_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, nullable=False)
    provider = Column(String(32), nullable=False)
    native_id = Column(String(256), nullable=False)
    kind = Column(String(32), nullable=False)
    integration_id = Column(Uuid, ForeignKey("integrations.integration_id", ondelete="SET NULL"))
    title = Column(Text)
    url = Column(Text)
    payload = Column(JSONType, default=dict)
    source_updated_at = Column(UTCDateTime)
    first_seen_at = Column(UTCDateTime, default=_now)
    updated_at = Column(UTCDateTime, default=_now)
    ingest_count = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index(
            "uq_synced_entities_natural_key",
            "owner_id",
            "provider",
            "native_id",
            unique=True,
        ),
    )
