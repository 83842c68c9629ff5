"""Dedup keys and the upgrade rules applied when a document is seen again."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, replace
from dataclasses import fields as dataclass_fields

from ..core.models import (
    CandidateDocument,
    DocumentStatus,
    ExtractedDocument,
    ExtractedFields,
    ExtractionResult,
    ExtractionSource,
    MailMessage,
    UpsertOutcome,
)

SOURCE_RANK: dict[str, int] = {"needs_review": 0, "regex": 1, "ai": 2, "manual": 3}
LOCKED_STATUSES: tuple[DocumentStatus, ...] = ("edited", "deleted")
_REQUIRED = ("vendor", "amount", "issued_on")


def dedup_key(mailbox_id: str, message_id: str, attachment_id: str | None) -> str:
    """Identity of a document, shared by deep scans and incremental sync."""
    material = "\x1f".join((mailbox_id, message_id, attachment_id or ""))
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def document_key(
    mailbox_id: str, message: MailMessage | CandidateDocument, attachment_id: str | None
) -> str:
    """Dedup key preferring the message's provider-independent identity."""
    return dedup_key(mailbox_id, message.dedup_id or message.message_id, attachment_id)


def result_rank(result: ExtractionResult) -> int:
    if result.status == "needs_review":
        return SOURCE_RANK["needs_review"]
    return SOURCE_RANK[result.source]


def document_rank(document: ExtractedDocument) -> int:
    if document.status == "needs_review":
        return SOURCE_RANK["needs_review"]
    return SOURCE_RANK[document.source]


@dataclass(frozen=True, slots=True)
class MergeDecision:
    """What the store should write for a result; ``None`` fields mean empty."""

    outcome: UpsertOutcome
    fields: ExtractedFields
    source: ExtractionSource
    confidence: float
    status: DocumentStatus
    raw_text: str | None


_EMPTY = ExtractedFields(vendor=None, amount=None, currency=None, issued_on=None, category=None)


def merge_result(
    existing: ExtractedDocument | None, result: ExtractionResult
) -> MergeDecision | None:
    """Decide how ``result`` changes ``existing``; ``None`` means unchanged.

    Higher-ranked sources replace lower ones. An equal rank wins when it
    fills a missing required field or is more confident. A lower rank may only
    fill gaps. User-edited and deleted records are never touched, and a
    ``needs_review`` result never overwrites a stored record.
    """
    incoming = result.fields or _EMPTY
    if existing is None:
        status: DocumentStatus = result.status
        if status == "active" and not incoming.is_complete:
            status = "needs_review"
        return MergeDecision(
            outcome="inserted",
            fields=incoming,
            source=result.source,
            confidence=result.confidence,
            status=status,
            raw_text=result.raw_text,
        )

    if existing.status in LOCKED_STATUSES or result.status == "needs_review":
        return None

    current = existing.fields
    new_rank = result_rank(result)
    old_rank = document_rank(existing)
    wins = new_rank > old_rank or (
        new_rank == old_rank
        and (
            _fills_required(current, incoming)
            or result.confidence > existing.confidence
        )
    )
    if wins:
        merged = fill_missing(incoming, current)
        if (
            merged == current
            and result.source == existing.source
            and result.confidence <= existing.confidence
        ):
            return None
        return MergeDecision(
            outcome="upgraded",
            fields=merged,
            source=result.source,
            confidence=result.confidence,
            status="active" if merged.is_complete else "needs_review",
            raw_text=result.raw_text or existing.raw_text,
        )

    merged = fill_missing(current, incoming)
    if merged == current:
        return None
    return MergeDecision(
        outcome="upgraded",
        fields=merged,
        source=existing.source,
        confidence=existing.confidence,
        status="active" if merged.is_complete else existing.status,
        raw_text=existing.raw_text or result.raw_text,
    )


def fill_missing(primary: ExtractedFields, secondary: ExtractedFields) -> ExtractedFields:
    """Return ``primary`` with its empty fields taken from ``secondary``."""
    updates = {
        item.name: getattr(secondary, item.name)
        for item in dataclass_fields(primary)
        if getattr(primary, item.name) in (None, "")
        and getattr(secondary, item.name) not in (None, "")
    }
    return replace(primary, **updates) if updates else primary


def _fills_required(current: ExtractedFields, incoming: ExtractedFields) -> bool:
    return any(
        getattr(current, name) in (None, "") and getattr(incoming, name) not in (None, "")
        for name in _REQUIRED
    )


__all__ = [
    "LOCKED_STATUSES",
    "MergeDecision",
    "SOURCE_RANK",
    "dedup_key",
    "document_key",
    "fill_missing",
    "merge_result",
]
