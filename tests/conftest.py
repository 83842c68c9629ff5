"""Shared fixtures: an in-memory mail source, fake clocks and a temporary store."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from inbox_ledger.core.config import StorageSettings
from inbox_ledger.core.errors import CursorExpired, MessageNotFound
from inbox_ledger.core.models import (
    AttachmentRef,
    ChangeSet,
    Mailbox,
    MailMessage,
    TimeWindow,
)
from inbox_ledger.storage import SqliteStore

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)


class FakeClock:
    """Wall clock that only moves when a test says so."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class FakeMonotonic:
    """Monotonic clock for time budgets; ``value`` is set directly by tests."""

    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


@dataclass(slots=True)
class _StoredMessage:
    message: MailMessage
    received_at: datetime
    payloads: dict[str, bytes]


class FakeMailSource:
    """Mail source kept in memory, with scripted failures.

    The change stream is the list of added message ids; a cursor is the
    number of stream entries already consumed.
    """

    provider = "fake"

    def __init__(self) -> None:
        self._messages: dict[str, _StoredMessage] = {}
        self._stream: list[str] = []
        self.history_start = 0
        self.discovery_failures: dict[datetime, list[Exception]] = {}
        self.discovery_error: Exception | None = None
        self.list_calls: list[TimeWindow] = []
        self.fetch_calls: list[str] = []
        self.on_fetch: Callable[[str], None] | None = None

    # Test helpers -----------------------------------------------------------
    def add(
        self,
        message: MailMessage,
        received_at: datetime,
        payloads: dict[str, bytes] | None = None,
    ) -> str:
        self._messages[message.message_id] = _StoredMessage(
            message, received_at, dict(payloads or {})
        )
        self._stream.append(message.message_id)
        return message.message_id

    def touch(self, message_id: str) -> None:
        """Report an existing message in the change stream again."""
        self._stream.append(message_id)

    def remove(self, message_id: str) -> None:
        self._messages.pop(message_id, None)

    def fail_discovery(self, window_start: datetime, *errors: Exception) -> None:
        self.discovery_failures.setdefault(window_start, []).extend(errors)

    # MailSource API -----------------------------------------------------------
    def list_message_ids(self, mailbox: Mailbox, window: TimeWindow) -> Iterator[str]:
        self.list_calls.append(window)
        if self.discovery_error is not None:
            raise self.discovery_error
        pending = self.discovery_failures.get(window.start)
        if pending:
            raise pending.pop(0)
        return iter(
            sorted(
                message_id
                for message_id, stored in self._messages.items()
                if window.contains(stored.received_at)
            )
        )

    def fetch_message(self, mailbox: Mailbox, message_id: str) -> MailMessage:
        self.fetch_calls.append(message_id)
        if self.on_fetch is not None:
            self.on_fetch(message_id)
        stored = self._messages.get(message_id)
        if stored is None:
            raise MessageNotFound(message_id)
        return stored.message

    def fetch_attachment(self, mailbox: Mailbox, ref: AttachmentRef) -> bytes:
        stored = self._messages.get(ref.message_id)
        if stored is None or ref.attachment_id not in stored.payloads:
            raise MessageNotFound(f"{ref.message_id}/{ref.attachment_id}")
        return stored.payloads[ref.attachment_id]

    def current_cursor(self, mailbox: Mailbox) -> str:
        return str(len(self._stream))

    def changes_since(self, mailbox: Mailbox, cursor: str) -> ChangeSet:
        position = int(cursor)
        if position < self.history_start:
            raise CursorExpired(f"cursor {cursor} predates history")
        return ChangeSet(
            message_ids=tuple(self._stream[position:]),
            new_cursor=str(max(len(self._stream), position)),
        )

    def cursor_supersedes(self, candidate: str, current: str) -> bool:
        return int(candidate) >= int(current)


def invoice_message(
    message_id: str,
    *,
    vendor: str = "Acme Hosting",
    amount: str = "120.00",
    issued: str = "2025-03-05",
    sent_at: datetime = NOW,
) -> tuple[MailMessage, dict[str, bytes]]:
    """A message with a text invoice attachment the rules can resolve."""
    payload = f"Invoice from {vendor}\nTotal ₪{amount}\nIssued {issued}\n".encode()
    message = MailMessage(
        message_id=message_id,
        subject=f"Invoice {message_id}",
        sender="billing@acme.example",
        sender_name=vendor,
        sent_at=sent_at,
        body_text="Your invoice is attached.",
        body_html=None,
        attachments=(
            AttachmentRef(
                message_id=message_id,
                attachment_id="att-1",
                filename="invoice.txt",
                content_type="text/plain",
                size=len(payload),
            ),
        ),
    )
    return message, {"att-1": payload}


def receipt_body_message(message_id: str, *, sent_at: datetime = NOW) -> MailMessage:
    """A receipt with no amount in it, which only the model stage can resolve."""
    return MailMessage(
        message_id=message_id,
        subject="Your receipt from Corner Cafe",
        sender="noreply@cornercafe.example",
        sender_name="Corner Cafe",
        sent_at=sent_at,
        body_text="Thanks for your visit. The receipt is below.",
        body_html=None,
        attachments=(),
    )


def chatter_message(message_id: str, *, sent_at: datetime = NOW) -> MailMessage:
    return MailMessage(
        message_id=message_id,
        subject="Lunch tomorrow?",
        sender="friend@example.com",
        sender_name="Friend",
        sent_at=sent_at,
        body_text="Are you free at noon?",
        body_html=None,
        attachments=(),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def source() -> FakeMailSource:
    return FakeMailSource()


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> Iterator[SqliteStore]:
    with SqliteStore(StorageSettings(db_path=tmp_path / "ledger.db"), clock=clock) as opened:
        yield opened


@pytest.fixture
def mailbox(store: SqliteStore) -> Mailbox:
    return store.add_mailbox("fake", "owner@example.com", business_id="biz-1")
