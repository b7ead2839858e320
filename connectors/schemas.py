"""
Pydantic schemas exchanged between the broker, adapters and the runner.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class Provider(str, Enum):
    FIREFLIES = "fireflies"   # meeting transcripts
    LINEAR = "linear"         # issue tracker
    SLACK = "slack"           # chat
    GOOGLE = "google"         # file storage (Drive)


class JobKind(str, Enum):
    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"
    WEBHOOK_EVENT = "webhook_event"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WebhookStatus(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    FAILED = "failed"


class TokenSet(BaseModel):
    """Output of a code exchange or a refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scopes: List[str] = Field(default_factory=list)
    account_id: Optional[str] = None
    account_label: Optional[str] = None
    provider_meta: Dict[str, Any] = Field(default_factory=dict)


class NormalizedEntity(BaseModel):
    """
    Provider-agnostic record ready for idempotent storage.

    ``native_id`` + ``provider`` is the natural key; ``owner_id`` is bound
    by the runner from the owning integration.
    """

    native_id: str
    provider: Provider
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    source_updated_at: Optional[datetime] = None
    title: Optional[str] = None
    url: Optional[str] = None
    owner_id: Optional[UUID] = None


class Batch(BaseModel):
    entities: List[NormalizedEntity] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class RescanRequest(BaseModel):
    """
    A push said "something changed" without the record itself.

    ``record_id`` scopes the rescan to a single record; ``None`` asks for an
    incremental sweep.
    """

    record_id: Optional[str] = None
    reason: str = ""

    def as_hint(self) -> Optional[Dict[str, Any]]:
        return {"record_id": self.record_id} if self.record_id else None
