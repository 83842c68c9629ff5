"""Tests for the Gmail REST adapter using an in-process transport."""

from __future__ import annotations

import base64
from datetime import UTC, datetime

import httpx
import pytest

from inbox_ledger.core.config import GmailSettings
from inbox_ledger.core.errors import (
    AuthExpired,
    CursorExpired,
    MessageNotFound,
    RateLimited,
    TransientError,
)
from inbox_ledger.core.models import Mailbox, TimeWindow
from inbox_ledger.transport import GmailClient

MAILBOX = Mailbox(
    id="mb-1",
    provider="gmail",
    account="owner@example.com",
    business_id=None,
    created_at=datetime(2025, 1, 1, tzinfo=UTC),
)


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _client(handler) -> GmailClient:
    return GmailClient(
        GmailSettings(base_url="https://gmail.test/gmail/v1", query="has:attachment"),
        token_provider=lambda: "token-1",
        transport=httpx.MockTransport(handler),
    )


def test_list_message_ids_pages_through_results() -> None:
    seen_queries: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer token-1"
        assert request.url.path == "/gmail/v1/users/me/messages"
        seen_queries.append(request.url.params["q"])
        if request.url.params.get("pageToken") == "next":
            return httpx.Response(200, json={"messages": [{"id": "c"}]})
        return httpx.Response(
            200, json={"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "next"}
        )

    window = TimeWindow(
        start=datetime(2025, 1, 1, tzinfo=UTC), end=datetime(2025, 1, 31, tzinfo=UTC)
    )
    with _client(handler) as client:
        ids = list(client.list_message_ids(MAILBOX, window))

    assert ids == ["a", "b", "c"]
    assert seen_queries[0] == "after:1735689600 before:1738281600 (has:attachment)"


def test_fetch_message_parses_parts_and_attachments() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/attachments/att-9"):
            return httpx.Response(200, json={"data": _b64(b"%PDF-1.7 data"), "size": 13})
        assert request.url.params["format"] == "full"
        return httpx.Response(
            200,
            json={
                "id": "m1",
                "internalDate": "1741083300000",
                "payload": {
                    "mimeType": "multipart/mixed",
                    "headers": [
                        {"name": "Subject", "value": "Receipt #12"},
                        {"name": "From", "value": "Shop <orders@shop.example>"},
                    ],
                    "parts": [
                        {
                            "mimeType": "text/plain",
                            "filename": "",
                            "body": {"data": _b64(b"Paid $12.50")},
                        },
                        {
                            "mimeType": "application/pdf",
                            "filename": "receipt.pdf",
                            "body": {"attachmentId": "att-9", "size": 13},
                        },
                    ],
                },
            },
        )

    with _client(handler) as client:
        message = client.fetch_message(MAILBOX, "m1")
        payload = client.fetch_attachment(MAILBOX, message.attachments[0])

    assert message.subject == "Receipt #12"
    assert message.sender == "orders@shop.example"
    assert message.sender_name == "Shop"
    assert message.body_text == "Paid $12.50"
    assert message.sent_at == datetime(2025, 3, 4, 10, 15, tzinfo=UTC)
    assert message.attachments[0].filename == "receipt.pdf"
    assert message.attachments[0].size == 13
    assert payload == b"%PDF-1.7 data"


def test_changes_since_collects_added_messages_once() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["startHistoryId"] == "100"
        return httpx.Response(
            200,
            json={
                "history": [
                    {"messagesAdded": [{"message": {"id": "x"}}]},
                    {"messagesAdded": [{"message": {"id": "y"}}, {"message": {"id": "x"}}]},
                ],
                "historyId": "140",
            },
        )

    with _client(handler) as client:
        changes = client.changes_since(MAILBOX, "100")

    assert changes.message_ids == ("x", "y")
    assert changes.new_cursor == "140"
    assert client.cursor_supersedes("140", "100") is True


def test_current_cursor_uses_profile_history_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/users/me/profile")
        return httpx.Response(200, json={"historyId": 512})

    with _client(handler) as client:
        assert client.current_cursor(MAILBOX) == "512"


@pytest.mark.parametrize(
    ("response", "error"),
    [
        (httpx.Response(401), AuthExpired),
        (httpx.Response(429, headers={"Retry-After": "7"}), RateLimited),
        (
            httpx.Response(
                403, json={"error": {"errors": [{"reason": "userRateLimitExceeded"}]}}
            ),
            RateLimited,
        ),
        (httpx.Response(404), MessageNotFound),
        (httpx.Response(503), TransientError),
    ],
)
def test_status_codes_map_to_error_taxonomy(response: httpx.Response, error: type) -> None:
    with _client(lambda request: response) as client:
        with pytest.raises(error):
            client.fetch_message(MAILBOX, "m1")


def test_rate_limit_carries_retry_after() -> None:
    with _client(lambda request: httpx.Response(429, headers={"Retry-After": "7"})) as client:
        with pytest.raises(RateLimited) as excinfo:
            client.current_cursor(MAILBOX)
    assert excinfo.value.retry_after == 7.0


def test_expired_history_raises_cursor_expired() -> None:
    with _client(lambda request: httpx.Response(404)) as client:
        with pytest.raises(CursorExpired):
            client.changes_since(MAILBOX, "1")


def test_network_errors_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    with _client(handler) as client:
        with pytest.raises(TransientError):
            client.current_cursor(MAILBOX)
