"""
FirefliesConnector — meeting transcripts over the Fireflies GraphQL API.

Fireflies accepts either an OAuth token or a static API key (sent the same
way, as a Bearer token).  Its webhook only announces that a transcript is
ready, so pushes become a ``RescanRequest`` for that meeting.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from config.settings import config
from connectors.base import BaseConnector, WebhookTranslation, hmac_sha256_hex, require, signatures_match
from connectors.schemas import Batch, NormalizedEntity, Provider, RescanRequest
from utils.timeutils import isoformat, parse_timestamp

logger = logging.getLogger(__name__)

_FF_AUTH_URL = "https://app.fireflies.ai/oauth/authorize"
_FF_TOKEN_URL = "https://api.fireflies.ai/oauth/token"
_FF_GRAPHQL = "https://api.fireflies.ai/graphql"

_TRANSCRIPT_FIELDS = """
    id
    title
    date
    duration
    transcript_url
    meeting_link
    organizer_email
    participants
    summary {
      overview
      keywords
      action_items
    }
"""

_LIST_QUERY = (
    "query Transcripts($limit: Int, $skip: Int, $fromDate: DateTime) {"
    "  transcripts(limit: $limit, skip: $skip, fromDate: $fromDate) {" + _TRANSCRIPT_FIELDS + "  }"
    "}"
)

_DETAIL_QUERY = (
    "query Transcript($id: String!) {"
    "  transcript(id: $id) {" + _TRANSCRIPT_FIELDS + "  }"
    "}"
)

_USER_QUERY = "query { user { user_id email name } }"

_READY_EVENTS = {"Transcription completed", "transcription.completed", "transcript_ready"}


class FirefliesConnector(BaseConnector):
    """Transcript provider."""

    supports_api_key = True
    webhook_fanout = True

    @property
    def provider(self) -> Provider:
        return Provider.FIREFLIES

    @property
    def display_name(self) -> str:
        return "Fireflies"

    @property
    def scopes(self) -> List[str]:
        return ["read:transcripts"]

    @property
    def auth_url(self) -> str:
        return _FF_AUTH_URL

    @property
    def token_url(self) -> str:
        return _FF_TOKEN_URL

    async def fetch_account(self, access_token: str) -> Dict[str, Optional[str]]:
        data = await self._graphql(_FF_GRAPHQL, _USER_QUERY, {}, access_token)
        user = data.get("user") or {}
        return {"account_id": user.get("user_id"), "account_label": user.get("email") or user.get("name")}

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
            data = await self._graphql(_FF_GRAPHQL, _DETAIL_QUERY, {"id": hint["record_id"]}, access_token)
            transcript = data.get("transcript")
            return Batch(entities=[self._to_entity(transcript)] if transcript else [])

        limit = config.sync_page_size
        skip = int(cursor) if cursor else 0
        variables: Dict[str, Any] = {"limit": limit, "skip": skip}
        if since:
            variables["fromDate"] = isoformat(since)

        data = await self._graphql(_FF_GRAPHQL, _LIST_QUERY, variables, access_token)
        transcripts = data.get("transcripts") or []
        entities = [self._to_entity(t) for t in transcripts]
        next_cursor = str(skip + len(transcripts)) if len(transcripts) >= limit else None
        return Batch(entities=entities, next_cursor=next_cursor)

    def _to_entity(self, transcript: Dict[str, Any]) -> NormalizedEntity:
        transcript_id = require(transcript, "id", self.display_name)
        return NormalizedEntity(
            native_id=str(transcript_id),
            provider=self.provider,
            kind="meeting",
            title=transcript.get("title"),
            url=transcript.get("transcript_url"),
            source_updated_at=parse_timestamp(transcript.get("date")),
            payload=transcript,
        )

    # ── Webhooks ────────────────────────────────────────────────────────

    def translate_webhook(self, event: Dict[str, Any]) -> WebhookTranslation:
        body = event.get("body")
        if not isinstance(body, dict):
            return []
        event_type = body.get("eventType") or body.get("event_type")
        if event_type not in _READY_EVENTS:
            return []
        # Some deliveries name the transcript instead of the meeting.
        meeting_id = body.get("meetingId") or body.get("transcript_id") or body.get("id")
        if not meeting_id:
            return []
        return RescanRequest(record_id=str(meeting_id), reason="transcript ready")

    def verify_signature(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        secret: str,
        now: datetime,
    ) -> bool:
        signature = headers.get("x-hub-signature", "")
        if not signature:
            return False
        expected = "sha256=" + hmac_sha256_hex(secret, raw_body)
        return signatures_match(signature, expected)
