"""Tests for the SQLite-backed store."""

from __future__ import annotations

import sqlite3
from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from conftest import NOW, FakeClock
from inbox_ledger.core.config import StorageSettings
from inbox_ledger.core.models import (
    CandidateDocument,
    ExtractedFields,
    ExtractionResult,
    Mailbox,
    TimeWindow,
)
from inbox_ledger.scanning import partition_range
from inbox_ledger.storage import DuplicateActiveJob, SqliteStore, StorageError

RANGE = TimeWindow(start=NOW - timedelta(days=90), end=NOW)


def _candidate(mailbox: Mailbox, message_id: str = "m-1") -> CandidateDocument:
    return CandidateDocument(
        mailbox_id=mailbox.id,
        message_id=message_id,
        attachment_id="part-0",
        filename="invoice.pdf",
        content_type="application/pdf",
        size=10_000,
        subject="Invoice",
        sender="billing@acme.example",
        sender_name="Acme",
        sent_at=NOW,
        text="Total ₪10",
        stage="regex",
    )


def _result(source: str = "regex", confidence: float = 0.85, **field_overrides) -> ExtractionResult:
    fields = ExtractedFields(
        vendor="Acme",
        amount=Decimal("10.00"),
        currency="ILS",
        issued_on=date(2025, 6, 1),
        category=None,
        document_type="invoice",
    )
    return ExtractionResult(
        fields=replace(fields, **field_overrides),
        source=source,  # type: ignore[arg-type]
        confidence=confidence,
        raw_text="Total ₪10",
    )


def test_schema_is_created_with_wal(tmp_path: Path) -> None:
    db_path = tmp_path / "ledger.db"
    SqliteStore(StorageSettings(db_path=db_path)).close()

    with sqlite3.connect(db_path) as conn:
        tables = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    assert {"mailboxes", "scan_jobs", "scan_chunks", "documents", "sync_cursors"} <= tables
    assert mode == "wal"


def test_add_mailbox_is_idempotent(store: SqliteStore, mailbox: Mailbox) -> None:
    again = store.add_mailbox("fake", "owner@example.com")

    assert again.id == mailbox.id
    assert again.business_id == "biz-1"
    assert [item.id for item in store.list_mailboxes()] == [mailbox.id]


def test_only_one_active_job_per_mailbox(store: SqliteStore, mailbox: Mailbox) -> None:
    job = store.create_job(mailbox.id, RANGE, partition_range(RANGE, 30))

    assert job.status == "pending"
    assert job.chunks_total == 3
    with pytest.raises(DuplicateActiveJob):
        store.create_job(mailbox.id, RANGE, partition_range(RANGE, 30))

    assert store.transition_job(job.id, ("pending",), "cancelled")
    assert store.get_job(job.id).finished_at is not None  # type: ignore[union-attr]
    store.create_job(mailbox.id, RANGE, partition_range(RANGE, 30))


def test_claims_newest_first_with_distinct_tokens(store: SqliteStore, mailbox: Mailbox) -> None:
    job = store.create_job(mailbox.id, RANGE, partition_range(RANGE, 30))

    first = store.claim_chunks(job.id, 2, lease_seconds=60)
    second = store.claim_chunks(job.id, 2, lease_seconds=60)

    assert [chunk.window.end for chunk in first] == [NOW, NOW - timedelta(days=30)]
    assert first[0].claim_token != first[1].claim_token
    assert all(chunk.status == "claimed" and chunk.attempts == 1 for chunk in first)
    assert len(second) == 1
    assert store.claim_chunks(job.id, 2, lease_seconds=60) == []
    assert store.live_claims(job.id) == 3


def test_stale_token_cannot_complete(
    store: SqliteStore, mailbox: Mailbox, clock: FakeClock
) -> None:
    job = store.create_job(mailbox.id, RANGE, [RANGE])
    (stale,) = store.claim_chunks(job.id, 1, lease_seconds=60)

    clock.advance(seconds=61)
    (fresh,) = store.claim_chunks(job.id, 1, lease_seconds=60)

    assert fresh.attempts == 2
    assert store.complete_chunk(stale) is False
    assert store.complete_chunk(fresh) is True
    assert store.chunk_counts(job.id)["done"] == 1


def test_fail_requeues_until_attempts_run_out(store: SqliteStore, mailbox: Mailbox) -> None:
    job = store.create_job(mailbox.id, RANGE, [RANGE])

    for expected in ("queued", "queued", "failed"):
        (chunk,) = store.claim_chunks(job.id, 1, lease_seconds=60)
        assert store.fail_chunk(chunk, "boom", max_attempts=3, retry_delay_seconds=0) == expected

    assert store.failed_windows(job.id) == [RANGE]
    assert store.requeue_failed_chunks(job.id) == 1
    (chunk,) = store.claim_chunks(job.id, 1, lease_seconds=60)
    assert chunk.attempts == 1


def test_release_gives_back_attempt_and_honours_delay(
    store: SqliteStore, mailbox: Mailbox, clock: FakeClock
) -> None:
    job = store.create_job(mailbox.id, RANGE, [RANGE])
    (chunk,) = store.claim_chunks(job.id, 1, lease_seconds=60)

    assert store.release_chunk(chunk, delay_seconds=30, error="rate limited")
    assert store.claim_chunks(job.id, 1, lease_seconds=60) == []

    clock.advance(seconds=30)
    (again,) = store.claim_chunks(job.id, 1, lease_seconds=60)
    assert again.attempts == 1
    assert again.last_error == "rate limited"


def test_scan_ledger_tracks_messages_and_candidates(store: SqliteStore, mailbox: Mailbox) -> None:
    job = store.create_job(mailbox.id, RANGE, [RANGE])
    (chunk,) = store.claim_chunks(job.id, 1, lease_seconds=60)

    assert store.record_discovered(chunk.id, ["m-2", "m-1"]) == 2
    assert store.record_discovered(chunk.id, ["m-1"]) == 0
    assert store.pending_messages(chunk.id) == ["m-1", "m-2"]

    store.mark_message(chunk.id, "m-1", "extracted")
    candidate = _candidate(mailbox)
    store.record_candidate(chunk.id, candidate, state="needs_ai")
    assert store.pending_messages(chunk.id) == ["m-2"]
    assert store.pending_ai_candidates(chunk.id) == [("m-1", "part-0")]
    assert store.defer_candidate(chunk.id, "m-1", "part-0", "timeout") == 1
    assert store.defer_candidate(chunk.id, "m-1", "part-0", "timeout") == 2

    upsert = store.upsert_document(candidate, _result())
    store.record_candidate(
        chunk.id, candidate, state="resolved", dedup_key=upsert.document.dedup_key
    )
    assert store.pending_ai_candidates(chunk.id) == []
    assert store.documents_found(job.id) == 1


def test_upsert_outcomes(store: SqliteStore, mailbox: Mailbox) -> None:
    candidate = _candidate(mailbox)

    inserted = store.upsert_document(candidate, _result())
    unchanged = store.upsert_document(candidate, _result())
    upgraded = store.upsert_document(candidate, _result(source="ai", confidence=0.8))
    downgraded = store.upsert_document(candidate, _result(vendor="Other"))

    assert inserted.outcome == "inserted"
    assert inserted.document.amount == Decimal("10.00")
    assert unchanged.outcome == "unchanged"
    assert upgraded.outcome == "upgraded"
    assert upgraded.document.version == 2
    assert upgraded.document.source == "ai"
    assert downgraded.outcome == "unchanged"
    assert len(store.list_documents(mailbox.id)) == 1


def test_message_identity_survives_provider_rekeying(store: SqliteStore, mailbox: Mailbox) -> None:
    before = replace(_candidate(mailbox, "7:10"), dedup_id="inv-10@acme.example")
    after = replace(_candidate(mailbox, "8:2"), dedup_id="inv-10@acme.example")

    inserted = store.upsert_document(before, _result())
    again = store.upsert_document(after, _result())

    assert inserted.outcome == "inserted"
    assert again.outcome == "unchanged"
    assert again.document.id == inserted.document.id
    assert len(store.list_documents(mailbox.id)) == 1


def test_edit_locks_document_and_remembers_vendor_category(
    store: SqliteStore, mailbox: Mailbox
) -> None:
    candidate = _candidate(mailbox)
    document = store.upsert_document(candidate, _result()).document

    edited = store.edit_document(document.id, amount="12.50", category="software")

    assert edited.status == "edited"
    assert edited.source == "manual"
    assert edited.amount == Decimal("12.50")
    assert store.get_vendor_category(mailbox.id, "  ACME ") == "software"
    later = store.upsert_document(candidate, _result(source="ai", confidence=0.99))
    assert later.outcome == "unchanged"
    assert later.document.amount == Decimal("12.50")

    with pytest.raises(ValueError):
        store.edit_document(document.id, colour="red")
    with pytest.raises(StorageError):
        store.edit_document("missing", vendor="x")


def test_deleted_documents_are_not_resurrected(store: SqliteStore, mailbox: Mailbox) -> None:
    candidate = _candidate(mailbox)
    document = store.upsert_document(candidate, _result()).document

    assert store.delete_document(document.id) is True
    assert store.delete_document(document.id) is False
    assert store.upsert_document(candidate, _result(source="ai")).outcome == "unchanged"
    assert store.list_documents(mailbox.id) == []
    assert len(store.list_documents(mailbox.id, include_deleted=True)) == 1


def test_cursor_compare_and_set(store: SqliteStore, mailbox: Mailbox) -> None:
    assert store.get_cursor(mailbox.id) is None
    assert store.compare_and_set_cursor(mailbox.id, "10", expected_version=None)
    assert not store.compare_and_set_cursor(mailbox.id, "11", expected_version=None)

    cursor = store.get_cursor(mailbox.id)
    assert cursor is not None and (cursor.value, cursor.version) == ("10", 1)
    assert store.compare_and_set_cursor(mailbox.id, "12", expected_version=1)
    assert not store.compare_and_set_cursor(mailbox.id, "13", expected_version=1)
    assert store.get_cursor(mailbox.id).value == "12"  # type: ignore[union-attr]
