"""Core domain models used across the application."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Literal

JobStatus = Literal["pending", "running", "paused", "completed", "failed", "cancelled"]
ChunkStage = Literal["discovery", "regex", "ai"]
ChunkStatus = Literal["queued", "claimed", "done", "failed", "cancelled"]
ExtractionSource = Literal["regex", "ai", "manual"]
DocumentStatus = Literal["active", "needs_review", "edited", "deleted"]
UpsertOutcome = Literal["inserted", "upgraded", "unchanged"]

ACTIVE_JOB_STATUSES: tuple[JobStatus, ...] = ("pending", "running", "paused")
TERMINAL_JOB_STATUSES: tuple[JobStatus, ...] = ("completed", "cancelled")
CHUNK_STAGES: tuple[ChunkStage, ...] = ("discovery", "regex", "ai")


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """Half-open interval ``[start, end)`` of mailbox history."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass(slots=True)
class Mailbox:
    """A connected inbox owned by a business."""

    id: str
    provider: str
    account: str
    business_id: str | None
    created_at: datetime


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class ScanJob:
    """One deep-scan run over a mailbox's history."""

    id: str
    mailbox_id: str
    range_start: datetime
    range_end: datetime
    status: JobStatus
    pause_requested: bool
    chunks_total: int
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None
    # Change cursor captured when the scan started; seeds incremental sync.
    start_cursor: str | None = None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class WorkChunk:
    """Claimable unit of a scan job covering one time window."""

    id: str
    job_id: str
    window: TimeWindow
    stage: ChunkStage
    status: ChunkStatus
    attempts: int
    claim_token: str | None
    claimed_at: datetime | None
    lease_expires_at: datetime | None
    available_at: datetime | None
    last_error: str | None


@dataclass(frozen=True, slots=True)
class AttachmentRef:
    """Pointer to an attachment that can be downloaded on demand."""

    message_id: str
    attachment_id: str
    filename: str | None
    content_type: str | None
    size: int | None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class MailMessage:
    """Normalised message as returned by a mail source."""

    message_id: str
    subject: str | None
    sender: str | None
    sender_name: str | None
    sent_at: datetime | None
    body_text: str | None
    body_html: str | None
    attachments: tuple[AttachmentRef, ...]
    # Provider-independent identity (the Message-ID header) where the provider
    # id is not stable, as with IMAP UIDs across a UIDVALIDITY change.
    dedup_id: str | None = None


@dataclass(frozen=True, slots=True)
class ChangeSet:
    """Messages changed since a cursor plus the cursor that covers them."""

    message_ids: tuple[str, ...]
    new_cursor: str


# pylint: disable=too-many-instance-attributes
@dataclass(frozen=True, slots=True)
class CandidateDocument:
    """An email or attachment that may hold a financial document."""

    mailbox_id: str
    message_id: str
    attachment_id: str | None
    filename: str | None
    content_type: str | None
    size: int | None
    subject: str | None
    sender: str | None
    sender_name: str | None
    sent_at: datetime | None
    text: str
    stage: ChunkStage
    dedup_id: str | None = None


@dataclass(frozen=True, slots=True)
class ExtractedFields:
    """Structured values pulled out of a candidate."""

    vendor: str | None
    amount: Decimal | None
    currency: str | None
    issued_on: date | None
    category: str | None
    document_type: str | None = None

    @property
    def is_complete(self) -> bool:
        """Whether every required field (vendor, amount, date) is present."""
        return (
            bool(self.vendor) and self.amount is not None and self.issued_on is not None
        )


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    """Outcome of a stage that resolved a candidate."""

    fields: ExtractedFields | None
    source: ExtractionSource
    confidence: float
    status: DocumentStatus = "active"
    raw_text: str | None = None


@dataclass(frozen=True, slots=True)
class NeedsNextStage:
    """Marker returned when a stage could not confidently resolve a candidate."""

    reason: str


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class ExtractedDocument:
    """Persisted document record."""

    id: str
    mailbox_id: str
    dedup_key: str
    message_id: str
    attachment_id: str | None
    vendor: str | None
    amount: Decimal | None
    currency: str | None
    issued_on: date | None
    category: str | None
    document_type: str | None
    confidence: float
    source: ExtractionSource
    status: DocumentStatus
    raw_text: str | None
    version: int
    created_at: datetime
    updated_at: datetime

    @property
    def fields(self) -> ExtractedFields:
        return ExtractedFields(
            vendor=self.vendor,
            amount=self.amount,
            currency=self.currency,
            issued_on=self.issued_on,
            category=self.category,
            document_type=self.document_type,
        )


@dataclass(frozen=True, slots=True)
class UpsertResult:
    """Stored document together with what the upsert did to it."""

    document: ExtractedDocument
    outcome: UpsertOutcome


@dataclass(frozen=True, slots=True)
class SyncCursor:
    """Position of a mailbox in the provider's change stream."""

    mailbox_id: str
    value: str
    version: int
    updated_at: datetime


@dataclass(frozen=True, slots=True)
class ScanStatusReport:
    """Progress summary for the dashboard."""

    job_id: str
    mailbox_id: str
    status: JobStatus
    pause_requested: bool
    chunks_total: int
    chunks_done: int
    chunks_failed: int
    chunks_in_progress: int
    documents_found: int
    failed_windows: tuple[TimeWindow, ...]
    last_error: str | None


@dataclass(frozen=True, slots=True)
class AdvanceReport:
    """Outcome summary for one deep-scan tick."""

    job_id: str
    status: JobStatus
    chunks_claimed: int
    chunks_completed: int
    stopped_reason: str


@dataclass(frozen=True, slots=True)
class SyncReport:
    """Outcome summary for one incremental sync tick."""

    mailbox_id: str
    changes: int
    inserted: int
    upgraded: int
    unchanged: int
    skipped: int
    cursor_advanced: bool
    used_fallback: bool
    cursor: str | None


__all__ = [
    "ACTIVE_JOB_STATUSES",
    "CHUNK_STAGES",
    "TERMINAL_JOB_STATUSES",
    "AdvanceReport",
    "AttachmentRef",
    "CandidateDocument",
    "ChangeSet",
    "ChunkStage",
    "ChunkStatus",
    "DocumentStatus",
    "ExtractedDocument",
    "ExtractedFields",
    "ExtractionResult",
    "ExtractionSource",
    "JobStatus",
    "MailMessage",
    "Mailbox",
    "NeedsNextStage",
    "ScanJob",
    "ScanStatusReport",
    "SyncCursor",
    "SyncReport",
    "TimeWindow",
    "UpsertOutcome",
    "UpsertResult",
    "WorkChunk",
]
