"""
LinearConnector — issues over the Linear GraphQL API.

Linear webhooks carry the full issue inline, so ``translate_webhook``
yields entities directly.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from config.settings import config
from connectors.base import BaseConnector, WebhookTranslation, hmac_sha256_hex, require, signatures_match
from connectors.errors import IntegrationError, MalformedResponse
from connectors.schemas import Batch, NormalizedEntity, Provider
from utils.timeutils import isoformat, parse_timestamp

logger = logging.getLogger(__name__)

_LINEAR_AUTH_URL = "https://linear.app/oauth/authorize"
_LINEAR_TOKEN_URL = "https://api.linear.app/oauth/token"
_LINEAR_REVOKE_URL = "https://api.linear.app/oauth/revoke"
_LINEAR_GRAPHQL = "https://api.linear.app/graphql"

_ISSUES_QUERY = """
query Issues($first: Int!, $after: String, $filter: IssueFilter) {
  issues(first: $first, after: $after, filter: $filter, orderBy: updatedAt) {
    pageInfo { hasNextPage endCursor }
    nodes {
      id
      identifier
      title
      description
      priority
      url
      createdAt
      updatedAt
      state { name type }
      assignee { name email }
      team { id name key }
      labels { nodes { name } }
    }
  }
}
"""

_ISSUE_QUERY = """
query Issue($id: String!) {
  issue(id: $id) {
    id
    identifier
    title
    description
    priority
    url
    createdAt
    updatedAt
    state { name type }
    assignee { name email }
    team { id name key }
    labels { nodes { name } }
  }
}
"""

_VIEWER_QUERY = "query { viewer { id email organization { id name } } }"


class LinearConnector(BaseConnector):
    """Issue-tracker provider."""

    @property
    def provider(self) -> Provider:
        return Provider.LINEAR

    @property
    def display_name(self) -> str:
        return "Linear"

    @property
    def scopes(self) -> List[str]:
        return ["read"]

    @property
    def auth_url(self) -> str:
        return _LINEAR_AUTH_URL

    @property
    def token_url(self) -> str:
        return _LINEAR_TOKEN_URL

    def authorization_params(self) -> Dict[str, str]:
        return {"scope": ",".join(self.scopes), "prompt": "consent"}

    async def fetch_account(self, access_token: str) -> Dict[str, Optional[str]]:
        data = await self._graphql(_LINEAR_GRAPHQL, _VIEWER_QUERY, {}, access_token)
        org = (data.get("viewer") or {}).get("organization") or {}
        return {"account_id": org.get("id"), "account_label": org.get("name")}

    async def revoke_token(self, access_token: str) -> bool:
        try:
            await self._send("POST", _LINEAR_REVOKE_URL, access_token=access_token)
            return True
        except IntegrationError:
            logger.warning("Linear token revocation failed", exc_info=True)
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
            data = await self._graphql(_LINEAR_GRAPHQL, _ISSUE_QUERY, {"id": hint["record_id"]}, access_token)
            issue = data.get("issue")
            return Batch(entities=[self._to_entity(issue)] if issue else [])

        variables: Dict[str, Any] = {"first": config.sync_page_size, "after": cursor}
        if since:
            variables["filter"] = {"updatedAt": {"gte": isoformat(since)}}

        data = await self._graphql(_LINEAR_GRAPHQL, _ISSUES_QUERY, variables, access_token)
        issues = data.get("issues")
        if not isinstance(issues, dict):
            raise MalformedResponse("Linear response missing 'issues'", excerpt=str(data))
        page_info = issues.get("pageInfo") or {}
        entities = [self._to_entity(node) for node in issues.get("nodes") or []]
        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        return Batch(entities=entities, next_cursor=next_cursor)

    def _to_entity(self, issue: Dict[str, Any], action: Optional[str] = None) -> NormalizedEntity:
        issue_id = require(issue, "id", self.display_name)
        payload = dict(issue)
        if action:
            payload["webhook_action"] = action
        return NormalizedEntity(
            native_id=str(issue_id),
            provider=self.provider,
            kind="issue",
            title=issue.get("title"),
            url=issue.get("url"),
            source_updated_at=parse_timestamp(issue.get("updatedAt") or issue.get("createdAt")),
            payload=payload,
        )

    # ── Webhooks ────────────────────────────────────────────────────────

    def translate_webhook(self, event: Dict[str, Any]) -> WebhookTranslation:
        body = event.get("body") or {}
        if body.get("type") != "Issue":
            return []
        data = body.get("data")
        if not isinstance(data, dict):
            raise MalformedResponse("Linear issue webhook without data", excerpt=str(body))
        return [self._to_entity(data, action=body.get("action"))]

    def webhook_account_id(self, event: Dict[str, Any]) -> Optional[str]:
        body = event.get("body")
        return body.get("organizationId") if isinstance(body, dict) else None

    def verify_signature(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        secret: str,
        now: datetime,
    ) -> bool:
        signature = headers.get("linear-signature", "")
        if not signature:
            return False
        return signatures_match(signature, hmac_sha256_hex(secret, raw_body))
