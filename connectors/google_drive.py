"""
GoogleDriveConnector — OAuth2 web flow plus Drive file sync.

Drive pushes (``changes.watch`` channels) carry only headers, so every push
becomes a ``RescanRequest``.  The channel token is an HMAC of the channel
id, which is how the ingress authenticates a push.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from config.settings import config
from connectors.base import BaseConnector, WebhookTranslation, hmac_sha256_hex, require, signatures_match
from connectors.errors import AuthRejected, IntegrationError, MalformedResponse
from connectors.schemas import Batch, NormalizedEntity, Provider, RescanRequest
from utils.timeutils import parse_timestamp

logger = logging.getLogger(__name__)

# Google OAuth2 / Drive endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_DRIVE_API = "https://www.googleapis.com/drive/v3"

_FILE_FIELDS = (
    "id,name,mimeType,modifiedTime,createdTime,webViewLink,trashed,"
    "owners(displayName,emailAddress),lastModifyingUser(displayName),size,version"
)
_DOC_MIME = "application/vnd.google-apps.document"
_FILE_TYPES = {
    _DOC_MIME: "document",
    "application/vnd.google-apps.spreadsheet": "spreadsheet",
    "application/vnd.google-apps.presentation": "presentation",
}
_FILE_ID_IN_URI = re.compile(r"/files/([^/?]+)")
_PUSH_HEADERS = (
    "x-goog-channel-id",
    "x-goog-channel-token",
    "x-goog-resource-id",
    "x-goog-resource-state",
    "x-goog-resource-uri",
    "x-goog-message-number",
)


class GoogleDriveConnector(BaseConnector):
    """File-storage provider."""

    webhook_lookup_field = "webhook_channel_id"

    @property
    def provider(self) -> Provider:
        return Provider.GOOGLE

    @property
    def display_name(self) -> str:
        return "Google Drive"

    @property
    def scopes(self) -> List[str]:
        return [
            "https://www.googleapis.com/auth/drive.readonly",
            "https://www.googleapis.com/auth/userinfo.email",
        ]

    @property
    def auth_url(self) -> str:
        return _GOOGLE_AUTH_URL

    @property
    def token_url(self) -> str:
        return _GOOGLE_TOKEN_URL

    def authorization_params(self) -> Dict[str, str]:
        return {
            "scope": " ".join(self.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }

    async def fetch_account(self, access_token: str) -> Dict[str, Optional[str]]:
        data = await self._send("GET", f"{_DRIVE_API}/about", access_token=access_token, params={"fields": "user"})
        user = data.get("user") or {}
        return {"account_id": user.get("permissionId"), "account_label": user.get("emailAddress")}

    async def revoke_token(self, access_token: str) -> bool:
        try:
            await self._send("POST", _GOOGLE_REVOKE_URL, params={"token": access_token})
            return True
        except IntegrationError:
            logger.warning("Google token revocation failed", exc_info=True)
            return False

    # ── Sync ────────────────────────────────────────────────────────────

    async def fetch_batch(
        self,
        access_token: str,
        cursor: Optional[str] = None,
        *,
        since: Optional[datetime] = None,
        hint: Optional[Dict[str, Any]] = None,
    ) -> Batch:
        if hint and hint.get("record_id"):
            record = await self._send(
                "GET",
                f"{_DRIVE_API}/files/{hint['record_id']}",
                access_token=access_token,
                params={"fields": _FILE_FIELDS},
                allow_404=True,
            )
            return Batch(entities=[await self._hydrate(record, access_token)] if record else [])

        query = "trashed = false"
        if since:
            query += f" and modifiedTime > '{since.strftime('%Y-%m-%dT%H:%M:%S')}'"
        params = {
            "pageSize": config.sync_page_size,
            "q": query,
            "fields": f"nextPageToken,files({_FILE_FIELDS})",
        }
        if cursor:
            params["pageToken"] = cursor

        data = await self._send("GET", f"{_DRIVE_API}/files", access_token=access_token, params=params)
        entities = [await self._hydrate(f, access_token) for f in data.get("files") or []]
        return Batch(entities=entities, next_cursor=data.get("nextPageToken") or None)

    async def _hydrate(self, record: Dict[str, Any], access_token: str) -> NormalizedEntity:
        """Build the entity, pulling the text body of Google Docs."""
        content = None
        if record.get("mimeType") == _DOC_MIME and record.get("id"):
            content = await self._export_text(record["id"], access_token)
        return self._to_entity(record, content)

    async def _export_text(self, file_id: str, access_token: str) -> Optional[str]:
        try:
            text = await self._fetch_text(
                f"{_DRIVE_API}/files/{file_id}/export",
                access_token=access_token,
                params={"mimeType": "text/plain"},
            )
        except (AuthRejected, MalformedResponse) as exc:
            # The listing already succeeded with this token, so a refusal here
            # is about the file itself (export size limit, no export rights).
            logger.warning("Could not export Drive document %s: %s", file_id, exc)
            return None
        return text.strip()

    def _to_entity(self, record: Dict[str, Any], content: Optional[str] = None) -> NormalizedEntity:
        file_id = require(record, "id", self.display_name)
        payload = dict(record)
        if content is not None:
            payload["content"] = content
        return NormalizedEntity(
            native_id=str(file_id),
            provider=self.provider,
            kind=_FILE_TYPES.get(record.get("mimeType"), "document"),
            title=record.get("name"),
            url=record.get("webViewLink"),
            source_updated_at=parse_timestamp(record.get("modifiedTime")),
            payload=payload,
        )

    # ── Webhooks ────────────────────────────────────────────────────────

    def translate_webhook(self, event: Dict[str, Any]) -> WebhookTranslation:
        headers = event.get("headers") or {}
        state = headers.get("x-goog-resource-state")
        if state == "sync":
            # Handshake sent when the channel is created.
            return []
        match = _FILE_ID_IN_URI.search(headers.get("x-goog-resource-uri") or "")
        return RescanRequest(record_id=match.group(1) if match else None, reason=f"drive {state}")

    def webhook_account_id(self, event: Dict[str, Any]) -> Optional[str]:
        return (event.get("headers") or {}).get("x-goog-channel-id")

    def webhook_headers(self, headers: Mapping[str, str]) -> Dict[str, str]:
        return {name: headers[name] for name in _PUSH_HEADERS if name in headers}

    def verify_signature(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        secret: str,
        now: datetime,
    ) -> bool:
        channel_id = headers.get("x-goog-channel-id", "")
        token = headers.get("x-goog-channel-token", "")
        if not channel_id or not token:
            return False
        return signatures_match(token, channel_token(secret, channel_id))

    async def register_webhook(self, access_token: str, integration: Any) -> Optional[Dict[str, Any]]:
        secret = self.credentials["webhook_secret"]
        if not secret:
            logger.warning("GOOGLE_WEBHOOK_SECRET not set — skipping Drive watch registration")
            return None

        start = await self._send(
            "GET", f"{_DRIVE_API}/changes/startPageToken", access_token=access_token
        )
        page_token = require(start, "startPageToken", self.display_name)
        channel_id = f"drive-{integration.integration_id}"
        channel = await self._send(
            "POST",
            f"{_DRIVE_API}/changes/watch",
            access_token=access_token,
            params={"pageToken": page_token},
            json={
                "id": channel_id,
                "type": "web_hook",
                "address": self.webhook_url(),
                "token": channel_token(secret, channel_id),
            },
        )
        return {
            "channel_id": channel_id,
            "resource_id": channel.get("resourceId"),
            "expiration": channel.get("expiration"),
            "start_page_token": page_token,
        }


def channel_token(secret: str, channel_id: str) -> str:
    return hmac_sha256_hex(secret, channel_id.encode())
