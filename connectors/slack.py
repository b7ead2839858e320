"""
SlackConnector — channel messages over the Slack Web API.

A sync sweep walks every channel the bot is a member of; the cursor is
``"<channel_id>:<history_cursor>"`` so a sweep can resume mid-channel.
Events API pushes carry the message inline.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from config.settings import config
from connectors.base import BaseConnector, WebhookTranslation, hmac_sha256_hex, require, signatures_match
from connectors.errors import AuthRejected, IntegrationError, MalformedResponse, RateLimited
from connectors.schemas import Batch, NormalizedEntity, Provider, TokenSet
from utils.timeutils import parse_timestamp

logger = logging.getLogger(__name__)

_SLACK_AUTH_URL = "https://slack.com/oauth/v2/authorize"
_SLACK_TOKEN_URL = "https://slack.com/api/oauth.v2.access"
_SLACK_API = "https://slack.com/api"

_AUTH_ERRORS = {"invalid_auth", "token_revoked", "token_expired", "account_inactive", "not_authed"}
_SIGNATURE_MAX_AGE_SECONDS = 60 * 5


class SlackConnector(BaseConnector):
    """Chat provider."""

    @property
    def provider(self) -> Provider:
        return Provider.SLACK

    @property
    def display_name(self) -> str:
        return "Slack"

    @property
    def scopes(self) -> List[str]:
        return ["channels:history", "channels:read", "groups:history", "groups:read", "users:read", "team:read"]

    @property
    def auth_url(self) -> str:
        return _SLACK_AUTH_URL

    @property
    def token_url(self) -> str:
        return _SLACK_TOKEN_URL

    def authorization_params(self) -> Dict[str, str]:
        return {"scope": ",".join(self.scopes)}

    def parse_token_response(self, data: Dict[str, Any]) -> TokenSet:
        tokens = super().parse_token_response(data)
        team = data.get("team") or {}
        tokens.account_id = team.get("id")
        tokens.account_label = team.get("name")
        tokens.provider_meta = {
            "bot_user_id": data.get("bot_user_id"),
            "app_id": data.get("app_id"),
        }
        return tokens

    async def revoke_token(self, access_token: str) -> bool:
        try:
            await self._call("auth.revoke", access_token)
            return True
        except IntegrationError:
            logger.warning("Slack token revocation failed", exc_info=True)
            return False

    async def _call(self, method: str, access_token: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        data = await self._send("GET", f"{_SLACK_API}/{method}", access_token=access_token, params=query)
        if data.get("ok"):
            return data
        error = data.get("error", "unknown_error")
        if error in _AUTH_ERRORS:
            raise AuthRejected(f"Slack {method}: {error}")
        if error == "ratelimited":
            raise RateLimited(60)
        raise MalformedResponse(f"Slack {method} failed: {error}", excerpt=str(data))

    # ── Sync ────────────────────────────────────────────────────────────

    async def _member_channels(self, access_token: str) -> List[Dict[str, Any]]:
        channels: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            data = await self._call(
                "conversations.list",
                access_token,
                {
                    "types": "public_channel,private_channel",
                    "exclude_archived": "true",
                    "limit": 200,
                    "cursor": cursor,
                },
            )
            channels.extend(c for c in data.get("channels") or [] if c.get("is_member"))
            cursor = (data.get("response_metadata") or {}).get("next_cursor") or None
            if not cursor:
                return channels

    async def fetch_batch(
        self,
        access_token: str,
        cursor: Optional[str] = None,
        *,
        since: Optional[datetime] = None,
        hint: Optional[Dict[str, Any]] = None,
    ) -> Batch:
        if hint and hint.get("record_id"):
            return await self._fetch_one(access_token, hint["record_id"])

        channels = await self._member_channels(access_token)
        if not channels:
            return Batch()
        names = {c["id"]: c.get("name") for c in channels}
        order = [c["id"] for c in channels]

        channel_id, history_cursor = _split_cursor(cursor) if cursor else (order[0], None)
        if channel_id not in names:
            logger.info("Slack channel %s no longer visible; ending sweep", channel_id)
            return Batch()

        data = await self._call(
            "conversations.history",
            access_token,
            {
                "channel": channel_id,
                "limit": config.sync_page_size,
                "cursor": history_cursor,
                "oldest": f"{since.timestamp():.6f}" if since else None,
            },
        )
        entities = [
            self._to_entity(message, channel_id, names[channel_id])
            for message in data.get("messages") or []
            if _is_user_message(message)
        ]

        next_history = (data.get("response_metadata") or {}).get("next_cursor") or None
        if next_history:
            next_cursor: Optional[str] = f"{channel_id}:{next_history}"
        else:
            position = order.index(channel_id)
            next_cursor = f"{order[position + 1]}:" if position + 1 < len(order) else None
        return Batch(entities=entities, next_cursor=next_cursor)

    async def _fetch_one(self, access_token: str, record_id: str) -> Batch:
        channel_id, _, ts = record_id.partition(":")
        data = await self._call(
            "conversations.history",
            access_token,
            {"channel": channel_id, "latest": ts, "inclusive": "true", "limit": 1},
        )
        messages = [m for m in data.get("messages") or [] if m.get("ts") == ts and _is_user_message(m)]
        return Batch(entities=[self._to_entity(m, channel_id, None) for m in messages])

    def _to_entity(self, message: Dict[str, Any], channel_id: str, channel_name: Optional[str]) -> NormalizedEntity:
        ts = require(message, "ts", self.display_name)
        text = message.get("text") or ""
        return NormalizedEntity(
            native_id=f"{channel_id}:{ts}",
            provider=self.provider,
            kind="message",
            title=text[:80],
            source_updated_at=parse_timestamp((message.get("edited") or {}).get("ts") or ts),
            payload={
                "channel": channel_id,
                "channel_name": channel_name,
                "user": message.get("user"),
                "text": text,
                "ts": ts,
                "thread_ts": message.get("thread_ts"),
                "files": message.get("files") or [],
            },
        )

    # ── Webhooks ────────────────────────────────────────────────────────

    def translate_webhook(self, event: Dict[str, Any]) -> WebhookTranslation:
        body = event.get("body") or {}
        if body.get("type") != "event_callback":
            return []
        inner = body.get("event") or {}
        if inner.get("type") != "message" or not _is_user_message(inner):
            return []
        channel_id = inner.get("channel")
        if not channel_id:
            raise MalformedResponse("Slack message event without channel", excerpt=str(body))
        return [self._to_entity(inner, channel_id, None)]

    def webhook_account_id(self, event: Dict[str, Any]) -> Optional[str]:
        body = event.get("body")
        return body.get("team_id") if isinstance(body, dict) else None

    def verify_signature(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        secret: str,
        now: datetime,
    ) -> bool:
        signature = headers.get("x-slack-signature", "")
        timestamp = headers.get("x-slack-request-timestamp", "")
        if not signature or not timestamp:
            return False
        try:
            sent_at = int(timestamp)
        except ValueError:
            return False
        if abs(now.timestamp() - sent_at) > _SIGNATURE_MAX_AGE_SECONDS:
            return False
        base = b"v0:" + timestamp.encode() + b":" + raw_body
        return signatures_match(signature, "v0=" + hmac_sha256_hex(secret, base))


def _split_cursor(cursor: str) -> Tuple[str, Optional[str]]:
    channel_id, _, history_cursor = cursor.partition(":")
    return channel_id, history_cursor or None


def _is_user_message(message: Dict[str, Any]) -> bool:
    if message.get("bot_id") or message.get("subtype"):
        return False
    return bool((message.get("text") or "").strip())
