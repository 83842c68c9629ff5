"""Tests for the IMAP transport adapter."""

# pylint: disable=protected-access

from __future__ import annotations

import imaplib
from datetime import UTC, datetime
from email.message import EmailMessage
from unittest.mock import MagicMock

import pytest

from inbox_ledger.core.config import ImapSettings
from inbox_ledger.core.errors import AuthExpired, CursorExpired, TransientError
from inbox_ledger.core.models import Mailbox, TimeWindow
from inbox_ledger.transport import ImapClient

MAILBOX = Mailbox(
    id="mb-1",
    provider="imap",
    account="user@example.com",
    business_id=None,
    created_at=datetime(2025, 1, 1, tzinfo=UTC),
)


def _client(connection: MagicMock, **kwargs) -> ImapClient:
    settings = ImapSettings(
        host="imap.test",
        port=993,
        username="user",
        app_password="password",
        mailbox="INBOX",
        use_ssl=False,
    )
    client = ImapClient(settings, **kwargs)
    client._connection = connection  # type: ignore[attr-defined]
    client._uid_validity = 7  # type: ignore[attr-defined]
    return client


def _rfc822() -> bytes:
    message = EmailMessage()
    message["Subject"] = "Invoice 55"
    message["From"] = "Vendor <billing@vendor.example>"
    message.set_content("Total $40.00")
    message.add_attachment(
        b"invoice text", maintype="text", subtype="plain", filename="invoice.txt"
    )
    return message.as_bytes()


def test_list_message_ids_filters_by_internaldate() -> None:
    connection = MagicMock()

    def uid(command, *args):
        if command == "SEARCH":
            return "OK", [b"101 102 103"]
        if command == "FETCH":
            assert args == ("101,102,103", "(UID INTERNALDATE)")
            return "OK", [
                b'1 (UID 101 INTERNALDATE "31-Jan-2025 23:59:59 +0000")',
                b'2 (UID 102 INTERNALDATE "01-Feb-2025 00:00:00 +0000")',
                b'3 (INTERNALDATE "01-Mar-2025 09:00:00 +0200" UID 103)',
            ]
        raise AssertionError("Unexpected IMAP command")

    connection.uid.side_effect = uid
    client = _client(connection)
    window = TimeWindow(
        start=datetime(2025, 2, 1, tzinfo=UTC), end=datetime(2025, 3, 1, 7, 30, tzinfo=UTC)
    )

    ids = list(client.list_message_ids(MAILBOX, window))

    assert ids == ["7:102", "7:103"]
    connection.uid.assert_any_call("SEARCH", None, "SINCE", "01-Feb-2025", "BEFORE", "02-Mar-2025")


def test_fetch_message_and_attachment_parse_rfc822() -> None:
    connection = MagicMock()
    connection.uid.return_value = ("OK", [(b"1 (RFC822 {100}", _rfc822()), b")"])
    client = _client(connection)

    message = client.fetch_message(MAILBOX, "7:55")
    assert message.subject == "Invoice 55"
    assert message.sender_name == "Vendor"
    assert [ref.filename for ref in message.attachments] == ["invoice.txt"]

    payload = client.fetch_attachment(MAILBOX, message.attachments[0])
    assert payload == b"invoice text"
    connection.uid.assert_any_call("FETCH", "55", "(RFC822)")


def test_changes_since_returns_new_uids_and_cursor() -> None:
    connection = MagicMock()
    connection.uid.return_value = ("OK", [b"41 42"])
    client = _client(connection)

    changes = client.changes_since(MAILBOX, "7:40")

    assert changes.message_ids == ("7:41", "7:42")
    assert changes.new_cursor == "7:42"
    connection.uid.assert_called_once_with("SEARCH", None, "41:*")


def test_changes_since_ignores_star_match_below_cursor() -> None:
    connection = MagicMock()
    connection.uid.return_value = ("OK", [b"40"])
    client = _client(connection)

    changes = client.changes_since(MAILBOX, "7:40")

    assert changes.message_ids == ()
    assert changes.new_cursor == "7:40"


def test_changes_since_expires_cursor_on_uidvalidity_change() -> None:
    client = _client(MagicMock())

    with pytest.raises(CursorExpired):
        client.changes_since(MAILBOX, "6:40")


def test_current_cursor_reads_folder_status() -> None:
    connection = MagicMock()
    connection.status.return_value = ("OK", [b'"INBOX" (UIDNEXT 88 UIDVALIDITY 7)'])
    client = _client(connection)

    assert client.current_cursor(MAILBOX) == "7:87"
    assert client.cursor_supersedes("7:87", "7:40") is True
    assert client.cursor_supersedes("7:10", "7:40") is False
    assert client.cursor_supersedes("8:1", "7:40") is True


def test_auth_failure_invokes_callback_and_raises_auth_expired() -> None:
    connection = MagicMock()
    connection.uid.side_effect = imaplib.IMAP4.error(
        "[AUTHENTICATIONFAILED] Invalid credentials"
    )
    refreshed: list[bool] = []
    client = _client(connection, on_auth_expired=lambda: refreshed.append(True))

    with pytest.raises(AuthExpired):
        client.fetch_message(MAILBOX, "7:1")
    assert refreshed == [True]


def test_dropped_connection_is_transient() -> None:
    connection = MagicMock()
    connection.uid.side_effect = imaplib.IMAP4.abort("socket closed")
    client = _client(connection)

    with pytest.raises(TransientError):
        client.changes_since(MAILBOX, "7:1")
    assert client._connection is None  # type: ignore[attr-defined]
