"""
Tests for the provider adapters — paging, record mapping, error mapping and
webhook translation.
"""

import hashlib
import hmac
from datetime import datetime, timezone

import httpx
import pytest

from connectors.errors import AuthRejected, MalformedResponse, RateLimited, SignatureInvalid, TransientNetworkError
from connectors.fireflies import FirefliesConnector
from connectors.google_drive import GoogleDriveConnector, channel_token
from connectors.linear import LinearConnector
from connectors.registry import ConnectorRegistry, parse_provider
from connectors.schemas import Provider, RescanRequest
from connectors.slack import SlackConnector
from tests.helpers import FakeHTTP

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
FF_API = "https://api.fireflies.ai/graphql"
LINEAR_API = "https://api.linear.app/graphql"
SLACK_API = "https://slack.com/api"
DRIVE_API = "https://www.googleapis.com/drive/v3"


@pytest.fixture
def http():
    return FakeHTTP()


def _transcript(n):
    return {"id": f"t{n}", "title": f"Standup {n}", "date": 1772366400000, "transcript_url": f"https://app.fireflies.ai/view/t{n}"}


def _issue(n):
    return {"id": f"i{n}", "title": f"Issue {n}", "url": f"https://linear.app/acme/issue/ACM-{n}", "updatedAt": "2026-03-01T10:00:00.000Z"}


class TestRegistry:
    def test_all_providers_registered(self):
        registry = ConnectorRegistry()
        assert {p["provider"] for p in registry.list_providers()} == {p.value for p in Provider}

    def test_lookup_by_string(self):
        registry = ConnectorRegistry()
        assert isinstance(registry.get("slack"), SlackConnector)
        assert registry.get("dropbox") is None
        assert parse_provider("dropbox") is None

    def test_only_fireflies_accepts_api_keys(self):
        keyed = [p["provider"] for p in ConnectorRegistry().list_providers() if p["supports_api_key"]]
        assert keyed == ["fireflies"]


class TestHttpErrorMapping:
    @pytest.mark.asyncio
    async def test_unauthorized(self, http):
        http.add("POST", LINEAR_API, httpx.Response(401))
        with pytest.raises(AuthRejected):
            await LinearConnector(http.transport).fetch_batch("tok")

    @pytest.mark.asyncio
    async def test_rate_limited_uses_retry_after(self, http):
        http.add("POST", LINEAR_API, httpx.Response(429, headers={"Retry-After": "30"}))
        with pytest.raises(RateLimited) as info:
            await LinearConnector(http.transport).fetch_batch("tok")
        assert info.value.retry_after == 30

    @pytest.mark.asyncio
    async def test_rate_limited_defaults_to_sixty(self, http):
        http.add("POST", LINEAR_API, httpx.Response(429))
        with pytest.raises(RateLimited) as info:
            await LinearConnector(http.transport).fetch_batch("tok")
        assert info.value.retry_after == 60

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, http):
        http.add("POST", LINEAR_API, httpx.Response(502))
        with pytest.raises(TransientNetworkError):
            await LinearConnector(http.transport).fetch_batch("tok")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, http):
        http.add("POST", LINEAR_API, httpx.ReadTimeout("slow"))
        with pytest.raises(TransientNetworkError):
            await LinearConnector(http.transport).fetch_batch("tok")

    @pytest.mark.asyncio
    async def test_non_json_is_malformed(self, http):
        http.add("POST", LINEAR_API, httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(MalformedResponse) as info:
            await LinearConnector(http.transport).fetch_batch("tok")
        assert "maintenance" in info.value.excerpt

    @pytest.mark.asyncio
    async def test_graphql_auth_error(self, http):
        http.add("POST", LINEAR_API, httpx.Response(200, json={"errors": [{"message": "Authentication required, not authenticated"}]}))
        with pytest.raises(AuthRejected):
            await LinearConnector(http.transport).fetch_batch("tok")

    @pytest.mark.asyncio
    async def test_graphql_other_error_is_malformed(self, http):
        http.add("POST", LINEAR_API, httpx.Response(200, json={"errors": [{"message": "Field 'foo' does not exist"}]}))
        with pytest.raises(MalformedResponse):
            await LinearConnector(http.transport).fetch_batch("tok")


class TestFireflies:
    @pytest.mark.asyncio
    async def test_full_page_continues(self, http):
        http.add("POST", FF_API, httpx.Response(200, json={"data": {"transcripts": [_transcript(1), _transcript(2)]}}))

        batch = await FirefliesConnector(http.transport).fetch_batch("key", "4")

        assert [e.native_id for e in batch.entities] == ["t1", "t2"]
        assert batch.next_cursor == "6"
        assert batch.entities[0].kind == "meeting"
        assert batch.entities[0].source_updated_at == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        sent = http.requests[0]
        assert sent.headers["Authorization"] == "Bearer key"
        assert b'"skip": 4' in sent.content or b'"skip":4' in sent.content

    @pytest.mark.asyncio
    async def test_short_page_ends_sweep(self, http):
        http.add("POST", FF_API, httpx.Response(200, json={"data": {"transcripts": [_transcript(1)]}}))
        batch = await FirefliesConnector(http.transport).fetch_batch("key", since=NOW)
        assert batch.next_cursor is None
        assert b"fromDate" in http.requests[0].content

    @pytest.mark.asyncio
    async def test_hint_fetches_single_transcript(self, http):
        http.add("POST", FF_API, httpx.Response(200, json={"data": {"transcript": _transcript(9)}}))
        batch = await FirefliesConnector(http.transport).fetch_batch("key", hint={"record_id": "t9"})
        assert [e.native_id for e in batch.entities] == ["t9"]

    def test_transcript_ready_is_rescan(self):
        event = {"body": {"meetingId": "m-1", "eventType": "Transcription completed"}, "headers": {}}
        translation = FirefliesConnector().translate_webhook(event)
        assert isinstance(translation, RescanRequest)
        assert translation.as_hint() == {"record_id": "m-1"}

    def test_transcript_id_shape_is_rescan(self):
        event = {"body": {"event_type": "transcript_ready", "transcript_id": "t-1"}, "headers": {}}
        translation = FirefliesConnector().translate_webhook(event)
        assert isinstance(translation, RescanRequest)
        assert translation.as_hint() == {"record_id": "t-1"}

    def test_bare_id_fallback(self):
        event = {"body": {"event_type": "transcript_ready", "id": "t-2"}, "headers": {}}
        assert FirefliesConnector().translate_webhook(event).record_id == "t-2"

    def test_other_events_are_ignored(self):
        event = {"body": {"meetingId": "m-1", "eventType": "Meeting started"}, "headers": {}}
        assert FirefliesConnector().translate_webhook(event) == []

    def test_signature(self):
        body = b'{"meetingId":"m-1"}'
        good = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        connector = FirefliesConnector()
        assert connector.verify_signature(body, {"x-hub-signature": good}, "s3cret", NOW)
        assert not connector.verify_signature(body + b" ", {"x-hub-signature": good}, "s3cret", NOW)

    def test_authenticate_push_raises_on_bad_signature(self, settings, monkeypatch):
        body = b'{"meetingId":"m-1"}'
        connector = FirefliesConnector()
        signed = {"x-hub-signature": "sha256=" + hmac.new(b"ff-hook", body, hashlib.sha256).hexdigest()}

        connector.authenticate_push(body, signed, NOW)
        with pytest.raises(SignatureInvalid, match="invalid"):
            connector.authenticate_push(body, {"x-hub-signature": "sha256=nope"}, NOW)
        monkeypatch.setattr(settings, "fireflies_webhook_secret", "")
        with pytest.raises(SignatureInvalid, match="no fireflies signing secret"):
            connector.authenticate_push(body, signed, NOW)


class TestLinear:
    @pytest.mark.asyncio
    async def test_cursor_follows_page_info(self, http):
        http.add("POST", LINEAR_API, httpx.Response(200, json={"data": {"issues": {
            "pageInfo": {"hasNextPage": True, "endCursor": "abc"},
            "nodes": [_issue(1), _issue(2)],
        }}}))

        batch = await LinearConnector(http.transport).fetch_batch("tok", since=NOW)

        assert batch.next_cursor == "abc"
        assert [e.title for e in batch.entities] == ["Issue 1", "Issue 2"]
        assert b"updatedAt" in http.requests[0].content

    @pytest.mark.asyncio
    async def test_last_page(self, http):
        http.add("POST", LINEAR_API, httpx.Response(200, json={"data": {"issues": {
            "pageInfo": {"hasNextPage": False, "endCursor": "zzz"},
            "nodes": [],
        }}}))
        batch = await LinearConnector(http.transport).fetch_batch("tok", "abc")
        assert batch.entities == []
        assert batch.next_cursor is None

    @pytest.mark.asyncio
    async def test_node_without_id_is_malformed(self, http):
        http.add("POST", LINEAR_API, httpx.Response(200, json={"data": {"issues": {
            "pageInfo": {"hasNextPage": False},
            "nodes": [{"title": "no id"}],
        }}}))
        with pytest.raises(MalformedResponse):
            await LinearConnector(http.transport).fetch_batch("tok")

    def test_issue_webhook_is_inline(self):
        event = {"body": {"type": "Issue", "action": "update", "organizationId": "org-1", "data": _issue(3)}, "headers": {}}
        connector = LinearConnector()
        [item] = connector.translate_webhook(event)
        assert item.native_id == "i3"
        assert item.payload["webhook_action"] == "update"
        assert connector.webhook_account_id(event) == "org-1"

    def test_comment_webhook_is_ignored(self):
        assert LinearConnector().translate_webhook({"body": {"type": "Comment", "data": {}}, "headers": {}}) == []


class TestSlack:
    @pytest.mark.asyncio
    async def test_sweep_walks_member_channels(self, http):
        http.add("GET", f"{SLACK_API}/conversations.list", httpx.Response(200, json={
            "ok": True,
            "channels": [
                {"id": "C1", "name": "general", "is_member": True},
                {"id": "C2", "name": "random", "is_member": False},
                {"id": "C3", "name": "eng", "is_member": True},
            ],
        }))
        http.add(
            "GET",
            f"{SLACK_API}/conversations.history",
            httpx.Response(200, json={
                "ok": True,
                "messages": [
                    {"ts": "1772366400.000100", "user": "U1", "text": "hello"},
                    {"ts": "1772366400.000200", "bot_id": "B1", "text": "beep"},
                    {"ts": "1772366400.000300", "subtype": "channel_join", "text": "joined"},
                ],
                "response_metadata": {"next_cursor": "h2"},
            }),
            httpx.Response(200, json={"ok": True, "messages": [], "response_metadata": {"next_cursor": ""}}),
        )
        connector = SlackConnector(http.transport)

        first = await connector.fetch_batch("xoxb")
        second = await connector.fetch_batch("xoxb", first.next_cursor)

        assert [e.native_id for e in first.entities] == ["C1:1772366400.000100"]
        assert first.next_cursor == "C1:h2"
        assert second.next_cursor == "C3:"
        history = http.calls(f"{SLACK_API}/conversations.history")
        assert history[1].url.params["cursor"] == "h2"

    @pytest.mark.asyncio
    async def test_ok_false_auth_error(self, http):
        http.add("GET", f"{SLACK_API}/conversations.list", httpx.Response(200, json={"ok": False, "error": "token_revoked"}))
        with pytest.raises(AuthRejected):
            await SlackConnector(http.transport).fetch_batch("xoxb")

    @pytest.mark.asyncio
    async def test_ok_false_ratelimited(self, http):
        http.add("GET", f"{SLACK_API}/conversations.list", httpx.Response(200, json={"ok": False, "error": "ratelimited"}))
        with pytest.raises(RateLimited):
            await SlackConnector(http.transport).fetch_batch("xoxb")

    def test_token_response_carries_team(self):
        tokens = SlackConnector().parse_token_response({
            "ok": True,
            "access_token": "xoxb-1",
            "scope": "channels:history,channels:read",
            "bot_user_id": "UBOT",
            "team": {"id": "T1", "name": "Acme"},
        })
        assert tokens.account_id == "T1"
        assert tokens.scopes == ["channels:history", "channels:read"]
        assert tokens.provider_meta["bot_user_id"] == "UBOT"

    def test_bot_messages_are_ignored(self):
        event = {"body": {"type": "event_callback", "team_id": "T1", "event": {
            "type": "message", "channel": "C1", "bot_id": "B1", "text": "beep", "ts": "1.0",
        }}, "headers": {}}
        assert SlackConnector().translate_webhook(event) == []

    def test_signature_window(self):
        body = b"payload"
        ts = str(int(NOW.timestamp()))
        sig = "v0=" + hmac.new(b"signing", f"v0:{ts}:".encode() + body, hashlib.sha256).hexdigest()
        headers = {"x-slack-signature": sig, "x-slack-request-timestamp": ts}
        connector = SlackConnector()

        assert connector.verify_signature(body, headers, "signing", NOW)
        assert not connector.verify_signature(body, headers, "signing", datetime(2026, 3, 1, 12, 6, tzinfo=timezone.utc))


class TestGoogleDrive:
    @pytest.mark.asyncio
    async def test_files_list_paging(self, http):
        http.add("GET", f"{DRIVE_API}/files", httpx.Response(200, json={
            "nextPageToken": "p2",
            "files": [{"id": "f1", "name": "Roadmap", "modifiedTime": "2026-03-01T09:00:00Z", "webViewLink": "https://docs.google.com/f1"}],
        }))

        batch = await GoogleDriveConnector(http.transport).fetch_batch("ya29", since=NOW)

        assert batch.next_cursor == "p2"
        assert batch.entities[0].kind == "document"
        assert batch.entities[0].url == "https://docs.google.com/f1"
        assert "modifiedTime > '2026-03-01T12:00:00'" in http.requests[0].url.params["q"]

    @pytest.mark.asyncio
    async def test_docs_are_exported_as_text(self, http):
        http.add("GET", f"{DRIVE_API}/files/doc-1/export", httpx.Response(200, text="Q3 plan\n\nShip the sync engine.\n"))
        http.add("GET", f"{DRIVE_API}/files", httpx.Response(200, json={"files": [
            {"id": "doc-1", "name": "Q3 plan", "mimeType": "application/vnd.google-apps.document"},
            {"id": "sheet-1", "name": "Budget", "mimeType": "application/vnd.google-apps.spreadsheet"},
            {"id": "deck-1", "name": "Kickoff", "mimeType": "application/vnd.google-apps.presentation"},
        ]}))

        batch = await GoogleDriveConnector(http.transport).fetch_batch("ya29")

        doc, sheet, deck = batch.entities
        assert doc.kind == "document"
        assert doc.payload["content"] == "Q3 plan\n\nShip the sync engine."
        assert sheet.kind == "spreadsheet"
        assert deck.kind == "presentation"
        assert "content" not in sheet.payload
        [export] = http.calls(f"{DRIVE_API}/files/doc-1/export")
        assert export.url.params["mimeType"] == "text/plain"
        assert export.headers["Authorization"] == "Bearer ya29"

    @pytest.mark.asyncio
    async def test_refused_export_keeps_metadata(self, http):
        http.add("GET", f"{DRIVE_API}/files/doc-1/export", httpx.Response(403, json={"error": "exportSizeLimitExceeded"}))
        http.add("GET", f"{DRIVE_API}/files/doc-1", httpx.Response(200, json={
            "id": "doc-1", "name": "Huge", "mimeType": "application/vnd.google-apps.document",
        }))

        batch = await GoogleDriveConnector(http.transport).fetch_batch("ya29", hint={"record_id": "doc-1"})

        [doc] = batch.entities
        assert doc.title == "Huge"
        assert "content" not in doc.payload

    @pytest.mark.asyncio
    async def test_export_outage_is_retried(self, http):
        http.add("GET", f"{DRIVE_API}/files/doc-1/export", httpx.Response(503))
        http.add("GET", f"{DRIVE_API}/files", httpx.Response(200, json={"files": [
            {"id": "doc-1", "name": "Q3 plan", "mimeType": "application/vnd.google-apps.document"},
        ]}))
        with pytest.raises(TransientNetworkError):
            await GoogleDriveConnector(http.transport).fetch_batch("ya29")

    @pytest.mark.asyncio
    async def test_missing_file_hint_is_empty(self, http):
        http.add("GET", f"{DRIVE_API}/files/gone", httpx.Response(404))
        batch = await GoogleDriveConnector(http.transport).fetch_batch("ya29", hint={"record_id": "gone"})
        assert batch.entities == []

    def test_sync_handshake_is_ignored(self):
        event = {"body": None, "headers": {"x-goog-resource-state": "sync"}}
        assert GoogleDriveConnector().translate_webhook(event) == []

    def test_change_push_is_rescan(self):
        event = {"body": None, "headers": {
            "x-goog-resource-state": "update",
            "x-goog-resource-uri": "https://www.googleapis.com/drive/v3/files/f42?alt=json",
        }}
        translation = GoogleDriveConnector().translate_webhook(event)
        assert translation.record_id == "f42"

    @pytest.mark.asyncio
    async def test_register_webhook_opens_watch_channel(self, http):
        http.add("GET", f"{DRIVE_API}/changes/startPageToken", httpx.Response(200, json={"startPageToken": "77"}))
        http.add("POST", f"{DRIVE_API}/changes/watch", httpx.Response(200, json={"resourceId": "res-1", "expiration": "1772970000000"}))

        class _Integration:
            integration_id = "abc"

        meta = await GoogleDriveConnector(http.transport).register_webhook("ya29", _Integration())

        assert meta == {"channel_id": "drive-abc", "resource_id": "res-1", "expiration": "1772970000000", "start_page_token": "77"}
        watch = http.calls(f"{DRIVE_API}/changes/watch")[0]
        assert watch.url.params["pageToken"] == "77"
        assert b"https://sync.example.com/webhooks/google" in watch.content
        assert channel_token("google-hook", "drive-abc").encode() in watch.content
