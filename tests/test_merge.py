"""Tests for dedup keys and the upgrade rules."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal

from inbox_ledger.core.models import ExtractedDocument, ExtractedFields, ExtractionResult
from inbox_ledger.extraction import dedup_key, merge_result

STAMP = datetime(2025, 3, 1, tzinfo=UTC)

FULL = ExtractedFields(
    vendor="Acme",
    amount=Decimal("10.00"),
    currency="ILS",
    issued_on=date(2025, 2, 1),
    category="software",
    document_type="invoice",
)


def _document(**overrides) -> ExtractedDocument:
    values = {
        "id": "doc-1",
        "mailbox_id": "mb-1",
        "dedup_key": dedup_key("mb-1", "m-1", "part-0"),
        "message_id": "m-1",
        "attachment_id": "part-0",
        "vendor": FULL.vendor,
        "amount": FULL.amount,
        "currency": FULL.currency,
        "issued_on": FULL.issued_on,
        "category": FULL.category,
        "document_type": FULL.document_type,
        "confidence": 0.85,
        "source": "regex",
        "status": "active",
        "raw_text": "Total ₪10.00",
        "version": 1,
        "created_at": STAMP,
        "updated_at": STAMP,
    }
    values.update(overrides)
    return ExtractedDocument(**values)


def test_dedup_key_is_stable_and_distinguishes_attachments() -> None:
    assert dedup_key("mb-1", "m-1", None) == dedup_key("mb-1", "m-1", None)
    assert dedup_key("mb-1", "m-1", None) != dedup_key("mb-1", "m-1", "part-0")
    assert dedup_key("mb-1", "m-1", "part-0") != dedup_key("mb-2", "m-1", "part-0")


def test_new_incomplete_result_is_inserted_for_review() -> None:
    partial = replace(FULL, amount=None)

    decision = merge_result(None, ExtractionResult(fields=partial, source="ai", confidence=0.6))

    assert decision is not None
    assert decision.outcome == "inserted"
    assert decision.status == "needs_review"


def test_ai_result_upgrades_regex_record() -> None:
    better = replace(FULL, category=None, amount=Decimal("11.70"))

    decision = merge_result(
        _document(), ExtractionResult(fields=better, source="ai", confidence=0.7)
    )

    assert decision is not None
    assert decision.outcome == "upgraded"
    assert decision.source == "ai"
    assert decision.fields.amount == Decimal("11.70")
    assert decision.fields.category == "software"
    assert decision.raw_text == "Total ₪10.00"


def test_regex_result_never_replaces_ai_record() -> None:
    existing = _document(source="ai", confidence=0.9)
    other = replace(FULL, vendor="Somebody Else")

    assert merge_result(existing, ExtractionResult(fields=other, source="regex", confidence=0.99)) is None


def test_lower_rank_fills_gaps_only() -> None:
    existing = _document(source="ai", category=None)

    decision = merge_result(
        existing, ExtractionResult(fields=FULL, source="regex", confidence=0.85)
    )

    assert decision is not None
    assert decision.source == "ai"
    assert decision.fields.category == "software"
    assert decision.confidence == 0.85


def test_equal_rank_needs_more_confidence_or_missing_fields() -> None:
    existing = _document()

    same = ExtractionResult(fields=FULL, source="regex", confidence=0.85)
    assert merge_result(existing, same) is None

    sharper = ExtractionResult(fields=FULL, source="regex", confidence=0.95)
    decision = merge_result(existing, sharper)
    assert decision is not None and decision.confidence == 0.95


def test_review_record_is_upgraded_by_any_resolved_result() -> None:
    existing = _document(
        status="needs_review",
        source="ai",
        confidence=0.0,
        vendor=None,
        amount=None,
        issued_on=None,
    )

    decision = merge_result(
        existing, ExtractionResult(fields=FULL, source="regex", confidence=0.85)
    )

    assert decision is not None
    assert decision.status == "active"
    assert decision.source == "regex"


def test_locked_and_review_results_never_overwrite() -> None:
    result = ExtractionResult(fields=FULL, source="ai", confidence=0.99)
    assert merge_result(_document(status="edited", source="manual"), result) is None
    assert merge_result(_document(status="deleted"), result) is None

    review = ExtractionResult(fields=None, source="ai", confidence=0.0, status="needs_review")
    assert merge_result(_document(), review) is None
