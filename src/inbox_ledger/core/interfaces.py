"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Protocol

from .models import (
    AttachmentRef,
    CandidateDocument,
    ChangeSet,
    ChunkStage,
    ChunkStatus,
    ExtractedDocument,
    ExtractionResult,
    JobStatus,
    Mailbox,
    MailMessage,
    ScanJob,
    SyncCursor,
    TimeWindow,
    UpsertResult,
    WorkChunk,
)


class MailSource(Protocol):
    """Abstraction over a mailbox provider such as IMAP or Gmail."""

    provider: str

    def list_message_ids(self, mailbox: Mailbox, window: TimeWindow) -> Iterator[str]:
        """Lazily yield identities of messages received inside ``window``."""
        raise NotImplementedError

    def fetch_message(self, mailbox: Mailbox, message_id: str) -> MailMessage:
        """Return headers, body and attachment refs for a message."""
        raise NotImplementedError

    def fetch_attachment(self, mailbox: Mailbox, ref: AttachmentRef) -> bytes:
        """Download attachment bytes."""
        raise NotImplementedError

    def current_cursor(self, mailbox: Mailbox) -> str:
        """Return the provider's current change-stream position."""
        raise NotImplementedError

    def changes_since(self, mailbox: Mailbox, cursor: str) -> ChangeSet:
        """Return messages added after ``cursor`` and the cursor covering them."""
        raise NotImplementedError

    def cursor_supersedes(self, candidate: str, current: str) -> bool:
        """Whether ``candidate`` is at or beyond ``current`` in the change stream."""
        raise NotImplementedError


class WorkQueue(Protocol):
    """Durable queue of scan chunks with lease-based claims."""

    def claim_chunks(
        self, job_id: str, limit: int, *, lease_seconds: int
    ) -> list[WorkChunk]:
        """Atomically claim up to ``limit`` available chunks of a job."""
        raise NotImplementedError

    def advance_stage(self, chunk: WorkChunk, stage: ChunkStage) -> bool:
        """Record that ``chunk`` finished its current stage and moved to ``stage``."""
        raise NotImplementedError

    def complete_chunk(self, chunk: WorkChunk) -> bool:
        """Mark a claimed chunk done."""
        raise NotImplementedError

    def fail_chunk(
        self,
        chunk: WorkChunk,
        error: str,
        *,
        max_attempts: int,
        retry_delay_seconds: float,
    ) -> ChunkStatus | None:
        """Requeue a chunk for retry, or fail it once attempts are exhausted."""
        raise NotImplementedError

    def release_chunk(
        self,
        chunk: WorkChunk,
        *,
        delay_seconds: float = 0.0,
        error: str | None = None,
    ) -> bool:
        """Return a claimed chunk to the queue without spending an attempt."""
        raise NotImplementedError


class DocumentRepository(Protocol):
    """Dedup-aware persistence for extracted documents."""

    def upsert_document(
        self, candidate: CandidateDocument, result: ExtractionResult
    ) -> UpsertResult:
        """Insert, upgrade or leave unchanged the record for ``candidate``."""
        raise NotImplementedError

    def get_document(self, mailbox_id: str, dedup_key: str) -> ExtractedDocument | None:
        """Return the stored document for a dedup key."""
        raise NotImplementedError

    def get_vendor_category(self, mailbox_id: str, vendor: str) -> str | None:
        """Return a user-corrected category for ``vendor`` if one exists."""
        raise NotImplementedError


class CursorStore(Protocol):
    """Per-mailbox change cursor with compare-and-set writes."""

    def get_cursor(self, mailbox_id: str) -> SyncCursor | None:
        raise NotImplementedError

    def compare_and_set_cursor(
        self, mailbox_id: str, value: str, *, expected_version: int | None
    ) -> bool:
        """Store ``value`` only if the cursor is still at ``expected_version``."""
        raise NotImplementedError


class SyncRepository(DocumentRepository, CursorStore, Protocol):
    """Everything incremental sync needs from the store."""

    def get_mailbox(self, mailbox_id: str) -> Mailbox | None:
        raise NotImplementedError


class ScanRepository(WorkQueue, DocumentRepository, CursorStore, Protocol):
    """Job records and per-chunk scan ledger."""

    def get_mailbox(self, mailbox_id: str) -> Mailbox | None:
        raise NotImplementedError

    def create_job(
        self, mailbox_id: str, scan_range: TimeWindow, windows: Sequence[TimeWindow]
    ) -> ScanJob:
        """Insert a pending job and its queued chunks in one transaction."""
        raise NotImplementedError

    def get_job(self, job_id: str) -> ScanJob | None:
        raise NotImplementedError

    def list_active_jobs(self, mailbox_id: str | None = None) -> list[ScanJob]:
        raise NotImplementedError

    def transition_job(
        self,
        job_id: str,
        from_statuses: Sequence[JobStatus],
        to_status: JobStatus,
        *,
        last_error: str | None = None,
    ) -> bool:
        """Move a job to ``to_status`` if it is currently in ``from_statuses``."""
        raise NotImplementedError

    def set_pause_requested(self, job_id: str, requested: bool) -> bool:
        raise NotImplementedError

    def set_job_start_cursor(self, job_id: str, cursor: str) -> bool:
        raise NotImplementedError

    def chunk_counts(self, job_id: str) -> dict[ChunkStatus, int]:
        raise NotImplementedError

    def live_claims(self, job_id: str) -> int:
        """Number of chunks claimed under an unexpired lease."""
        raise NotImplementedError

    def failed_windows(self, job_id: str) -> list[TimeWindow]:
        raise NotImplementedError

    def documents_found(self, job_id: str) -> int:
        raise NotImplementedError

    def cancel_queued_chunks(self, job_id: str) -> int:
        raise NotImplementedError

    def requeue_failed_chunks(self, job_id: str) -> int:
        raise NotImplementedError

    def record_discovered(self, chunk_id: str, message_ids: Sequence[str]) -> int:
        """Remember messages found in a chunk's window; duplicates are ignored."""
        raise NotImplementedError

    def pending_messages(self, chunk_id: str) -> list[str]:
        raise NotImplementedError

    def mark_message(self, chunk_id: str, message_id: str, state: str) -> None:
        raise NotImplementedError

    def record_candidate(
        self,
        chunk_id: str,
        candidate: CandidateDocument,
        *,
        state: str,
        dedup_key: str | None = None,
    ) -> None:
        raise NotImplementedError

    def pending_ai_candidates(self, chunk_id: str) -> list[tuple[str, str | None]]:
        """Return ``(message_id, attachment_id)`` pairs awaiting the AI stage."""
        raise NotImplementedError

    def defer_candidate(
        self, chunk_id: str, message_id: str, attachment_id: str | None, error: str
    ) -> int:
        """Count a deferred AI attempt and return the total so far."""
        raise NotImplementedError

    def skip_candidate(
        self, chunk_id: str, message_id: str, attachment_id: str | None
    ) -> None:
        """Drop a candidate whose message or attachment no longer exists."""
        raise NotImplementedError


__all__ = [
    "CursorStore",
    "DocumentRepository",
    "MailSource",
    "ScanRepository",
    "SyncRepository",
    "WorkQueue",
]
