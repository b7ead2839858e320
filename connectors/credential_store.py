"""
Credential store — persists integrations and their (encrypted) tokens.

Token columns are written only through ``save_tokens`` (new credentials from
a callback or API key) and ``update_tokens`` (versioned refresh write).
Nothing here decrypts a token; that is the broker's job.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import encrypt_token
from connectors.schemas import Provider, TokenSet, WebhookStatus
from database.models import Integration
from utils.timeutils import isoformat, utcnow

logger = logging.getLogger(__name__)


def _to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


def _expiry(tokens: TokenSet, now: datetime) -> Optional[datetime]:
    return now + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None


class CredentialStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def save_tokens(
        self,
        owner_id: str | uuid.UUID,
        provider: Provider,
        tokens: TokenSet,
        *,
        now: Optional[datetime] = None,
    ) -> Integration:
        """
        Create or refresh the owner's active integration for ``provider``.

        Re-connecting updates the existing active row in place (and clears
        ``needs_reconnect``) so the one-active-per-provider rule holds.
        """
        now = now or utcnow()
        owner = _to_uuid(owner_id)
        for attempt in range(2):
            async with self._session_factory() as session:
                existing = (
                    await session.execute(
                        select(Integration).where(
                            Integration.owner_id == owner,
                            Integration.provider == provider.value,
                            Integration.active.is_(True),
                        )
                    )
                ).scalar_one_or_none()

                if existing is None:
                    existing = Integration(
                        integration_id=uuid.uuid4(),
                        owner_id=owner,
                        provider=provider.value,
                        token_version=1,
                        active=True,
                        webhook_status=WebhookStatus.UNREGISTERED.value,
                    )
                    session.add(existing)
                    created = True
                else:
                    existing.token_version = (existing.token_version or 0) + 1
                    created = False

                existing.access_token = encrypt_token(tokens.access_token)
                existing.refresh_token = encrypt_token(tokens.refresh_token)
                existing.token_expires_at = _expiry(tokens, now)
                existing.scopes = tokens.scopes
                existing.provider_meta = tokens.provider_meta
                existing.external_account_id = tokens.account_id or existing.external_account_id
                existing.account_label = tokens.account_label or existing.account_label
                existing.needs_reconnect = False
                existing.last_error = None
                existing.updated_at = now

                try:
                    await session.commit()
                except IntegrityError:
                    # Another request created the active row first; update it instead.
                    await session.rollback()
                    if attempt:
                        raise
                    continue

                logger.info(
                    "%s %s integration %s for owner %s",
                    "Created" if created else "Updated",
                    provider.value,
                    existing.integration_id,
                    owner,
                )
                return existing
        raise RuntimeError("unreachable")

    async def update_tokens(
        self,
        integration_id: uuid.UUID,
        expected_version: int,
        tokens: TokenSet,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Versioned refresh write.

        Succeeds only if nobody changed the tokens since ``expected_version``
        was read; returns False to the loser of a refresh race.
        """
        now = now or utcnow()
        values: Dict[str, Any] = {
            "access_token": encrypt_token(tokens.access_token),
            "token_expires_at": _expiry(tokens, now),
            "token_version": expected_version + 1,
            "needs_reconnect": False,
            "updated_at": now,
        }
        # Some providers rotate refresh tokens.
        if tokens.refresh_token:
            values["refresh_token"] = encrypt_token(tokens.refresh_token)

        async with self._session_factory() as session:
            result = await session.execute(
                update(Integration)
                .where(
                    Integration.integration_id == integration_id,
                    Integration.token_version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def get(self, integration_id: str | uuid.UUID) -> Optional[Integration]:
        async with self._session_factory() as session:
            return await session.get(Integration, _to_uuid(integration_id), populate_existing=True)

    async def get_for_owner(
        self,
        integration_id: str | uuid.UUID,
        owner_id: str | uuid.UUID,
    ) -> Optional[Integration]:
        integration = await self.get(integration_id)
        if integration is None or integration.owner_id != _to_uuid(owner_id):
            return None
        return integration

    async def list_for_owner(self, owner_id: str | uuid.UUID) -> List[Integration]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Integration)
                .where(Integration.owner_id == _to_uuid(owner_id))
                .order_by(Integration.created_at.desc())
            )
            return list(result.scalars().all())

    async def find_for_webhook(
        self,
        provider: Provider,
        lookup_field: str,
        value: Optional[str],
    ) -> List[Integration]:
        """Active integrations a push should fan out to."""
        stmt = select(Integration).where(
            Integration.provider == provider.value,
            Integration.active.is_(True),
        )
        if value is not None:
            stmt = stmt.where(getattr(Integration, lookup_field) == value)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def _set(self, integration_id: uuid.UUID, **values: Any) -> None:
        values.setdefault("updated_at", utcnow())
        async with self._session_factory() as session:
            await session.execute(
                update(Integration)
                .where(Integration.integration_id == integration_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def flag_reconnect(self, integration_id: uuid.UUID, reason: str) -> None:
        """Consent revoked: keep the integration, ask the user to reconnect."""
        await self._set(integration_id, needs_reconnect=True, last_error=reason[:2000])
        logger.warning("Integration %s needs reconnect: %s", integration_id, reason)

    async def record_sync(self, integration_id: uuid.UUID, synced_at: datetime) -> None:
        await self._set(integration_id, last_synced_at=synced_at, last_error=None)

    async def set_webhook_state(
        self,
        integration_id: uuid.UUID,
        status: WebhookStatus,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        values: Dict[str, Any] = {"webhook_status": status.value}
        if meta is not None:
            values["webhook_meta"] = meta
            values["webhook_channel_id"] = meta.get("channel_id")
        await self._set(integration_id, **values)

    async def deactivate(
        self,
        integration_id: str | uuid.UUID,
        owner_id: str | uuid.UUID,
    ) -> Optional[Integration]:
        """Soft-delete (``active=false``). Returns the integration, or None if not found."""
        integration = await self.get_for_owner(integration_id, owner_id)
        if integration is None:
            return None
        await self._set(integration.integration_id, active=False)
        integration.active = False
        logger.info("Deactivated %s integration %s", integration.provider, integration.integration_id)
        return integration


def integration_summary(integration: Integration) -> Dict[str, Any]:
    """Public view of an integration — never exposes tokens."""
    return {
        "integration_id": str(integration.integration_id),
        "provider": integration.provider,
        "account_id": integration.external_account_id,
        "account_label": integration.account_label,
        "active": integration.active,
        "needs_reconnect": integration.needs_reconnect,
        "status": _display_status(integration),
        "webhook_status": integration.webhook_status,
        "scopes": integration.scopes or [],
        "last_synced_at": isoformat(integration.last_synced_at),
        "last_error": integration.last_error,
        "created_at": isoformat(integration.created_at),
    }


def _display_status(integration: Integration) -> str:
    if not integration.active:
        return "disconnected"
    if integration.needs_reconnect:
        return "reconnect_required"
    return "connected"
