"""SQLite-backed store for scan jobs, the chunk queue, documents and cursors."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from types import TracebackType
from typing import Any, cast

from ..core.config import StorageSettings
from ..core.datetime_utils import (
    parse_date,
    parse_datetime,
    serialize_date,
    serialize_datetime,
    utc_now,
)
from ..core.interfaces import ScanRepository, SyncRepository
from ..core.models import (
    TERMINAL_JOB_STATUSES,
    CandidateDocument,
    ChunkStage,
    ChunkStatus,
    DocumentStatus,
    ExtractedDocument,
    ExtractionResult,
    ExtractionSource,
    JobStatus,
    Mailbox,
    ScanJob,
    SyncCursor,
    TimeWindow,
    UpsertResult,
    WorkChunk,
)
from ..extraction.merge import document_key, merge_result

LOGGER = logging.getLogger(__name__)

_CAS_RETRIES = 5
_FINISHED_STATUSES: tuple[JobStatus, ...] = (*TERMINAL_JOB_STATUSES, "failed")


class StorageError(RuntimeError):
    """Raised when the store cannot complete an operation."""


class DuplicateActiveJob(StorageError):
    """Raised when a mailbox already has a pending, running or paused job."""


class SqliteStore(ScanRepository, SyncRepository):
    """Persist scan state and extracted documents using SQLite.

    Every state change is a single conditional statement so concurrent
    workers (separate connections, separate processes) coordinate only
    through the database.
    """

    def __init__(
        self,
        settings: StorageSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialise the store and apply migrations."""
        self._settings = settings
        self._clock = clock
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(
            db_path,
            timeout=30.0,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._configure_connection()
        self._apply_migrations()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteStore:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()

    # Mailboxes ---------------------------------------------------------------
    def add_mailbox(
        self, provider: str, account: str, *, business_id: str | None = None
    ) -> Mailbox:
        """Register a mailbox, returning the existing record on a repeat call."""
        now = serialize_datetime(self._clock())
        with self._connection:
            self._connection.execute(
                """
                INSERT INTO mailboxes (id, provider, account, business_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(provider, account) DO UPDATE SET
                    business_id=COALESCE(excluded.business_id, mailboxes.business_id)
                """,
                (str(uuid.uuid4()), provider, account, business_id, now),
            )
        row = self._connection.execute(
            "SELECT * FROM mailboxes WHERE provider = ? AND account = ?",
            (provider, account),
        ).fetchone()
        return _row_to_mailbox(row)

    def get_mailbox(self, mailbox_id: str) -> Mailbox | None:
        """Return the mailbox with ``mailbox_id``, if registered."""
        row = self._connection.execute(
            "SELECT * FROM mailboxes WHERE id = ?", (mailbox_id,)
        ).fetchone()
        return _row_to_mailbox(row) if row else None

    def list_mailboxes(self) -> list[Mailbox]:
        """Return every registered mailbox, oldest first."""
        rows = self._connection.execute(
            "SELECT * FROM mailboxes ORDER BY created_at"
        ).fetchall()
        return [_row_to_mailbox(row) for row in rows]

    # Jobs --------------------------------------------------------------------
    def create_job(
        self, mailbox_id: str, scan_range: TimeWindow, windows: Sequence[TimeWindow]
    ) -> ScanJob:
        """Insert a pending job and its queued chunks in one transaction."""
        job_id = str(uuid.uuid4())
        now = serialize_datetime(self._clock())
        try:
            with self._connection:
                self._connection.execute(
                    """
                    INSERT INTO scan_jobs (
                        id, mailbox_id, range_start, range_end, status,
                        pause_requested, chunks_total, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, 'pending', 0, ?, ?, ?)
                    """,
                    (
                        job_id,
                        mailbox_id,
                        serialize_datetime(scan_range.start),
                        serialize_datetime(scan_range.end),
                        len(windows),
                        now,
                        now,
                    ),
                )
                self._connection.executemany(
                    """
                    INSERT INTO scan_chunks (
                        id, job_id, window_start, window_end, stage, status, updated_at
                    ) VALUES (?, ?, ?, ?, 'discovery', 'queued', ?)
                    """,
                    [
                        (
                            str(uuid.uuid4()),
                            job_id,
                            serialize_datetime(window.start),
                            serialize_datetime(window.end),
                            now,
                        )
                        for window in windows
                    ],
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateActiveJob(
                f"Mailbox {mailbox_id} already has an active scan job"
            ) from exc
        LOGGER.info(
            "Created scan job %s for mailbox %s with %s chunks",
            job_id,
            mailbox_id,
            len(windows),
        )
        job = self.get_job(job_id)
        assert job is not None
        return job

    def get_job(self, job_id: str) -> ScanJob | None:
        """Return the scan job with ``job_id``, if any."""
        row = self._connection.execute(
            "SELECT * FROM scan_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return _row_to_job(row) if row else None

    def list_jobs(self, mailbox_id: str) -> list[ScanJob]:
        """Return every job of ``mailbox_id``, newest first."""
        rows = self._connection.execute(
            "SELECT * FROM scan_jobs WHERE mailbox_id = ? ORDER BY created_at DESC",
            (mailbox_id,),
        ).fetchall()
        return [_row_to_job(row) for row in rows]

    def list_active_jobs(self, mailbox_id: str | None = None) -> list[ScanJob]:
        """Return pending, running and paused jobs, optionally for one mailbox."""
        query = "SELECT * FROM scan_jobs WHERE status IN ('pending', 'running', 'paused')"
        params: tuple[Any, ...] = ()
        if mailbox_id is not None:
            query += " AND mailbox_id = ?"
            params = (mailbox_id,)
        rows = self._connection.execute(query + " ORDER BY created_at", params).fetchall()
        return [_row_to_job(row) for row in rows]

    def transition_job(
        self,
        job_id: str,
        from_statuses: Sequence[JobStatus],
        to_status: JobStatus,
        *,
        last_error: str | None = None,
    ) -> bool:
        """Move a job to ``to_status`` if it is currently in ``from_statuses``."""
        if not from_statuses:
            return False
        now = serialize_datetime(self._clock())
        finished_at = now if to_status in _FINISHED_STATUSES else None
        placeholders = ", ".join("?" for _ in from_statuses)
        with self._connection:
            cursor = self._connection.execute(
                f"""
                UPDATE scan_jobs
                SET status = ?,
                    last_error = COALESCE(?, last_error),
                    finished_at = ?,
                    updated_at = ?
                WHERE id = ? AND status IN ({placeholders})
                """,
                (to_status, last_error, finished_at, now, job_id, *from_statuses),
            )
        changed = cursor.rowcount == 1
        if changed:
            LOGGER.info("Scan job %s -> %s", job_id, to_status)
        return changed

    def set_pause_requested(self, job_id: str, requested: bool) -> bool:
        """Set or clear the pause flag; ``False`` if the job does not exist."""
        now = serialize_datetime(self._clock())
        with self._connection:
            cursor = self._connection.execute(
                "UPDATE scan_jobs SET pause_requested = ?, updated_at = ? WHERE id = ?",
                (int(requested), now, job_id),
            )
        return cursor.rowcount == 1

    def set_job_start_cursor(self, job_id: str, cursor: str) -> bool:
        """Remember the mailbox's change cursor as of the scan start (first write wins)."""
        now = serialize_datetime(self._clock())
        with self._connection:
            updated = self._connection.execute(
                """
                UPDATE scan_jobs SET start_cursor = ?, updated_at = ?
                WHERE id = ? AND start_cursor IS NULL
                """,
                (cursor, now, job_id),
            )
        return updated.rowcount == 1

    # Work queue --------------------------------------------------------------
    def claim_chunks(
        self, job_id: str, limit: int, *, lease_seconds: int
    ) -> list[WorkChunk]:
        """Atomically claim up to ``limit`` chunks, newest windows first.

        Queued chunks whose ``available_at`` has passed and claimed chunks whose
        lease expired are both eligible. Each claimed row gets its own token.
        """
        now = self._clock()
        stamp = serialize_datetime(now)
        lease = serialize_datetime(now + timedelta(seconds=lease_seconds))
        with self._connection:
            rows = self._connection.execute(
                """
                UPDATE scan_chunks
                SET status = 'claimed',
                    claim_token = lower(hex(randomblob(16))),
                    claimed_at = ?,
                    lease_expires_at = ?,
                    attempts = attempts + 1,
                    updated_at = ?
                WHERE id IN (
                    SELECT id FROM scan_chunks
                    WHERE job_id = ?
                      AND (
                        (status = 'queued'
                         AND (available_at IS NULL OR available_at <= ?))
                        OR (status = 'claimed' AND lease_expires_at <= ?)
                      )
                    ORDER BY window_start DESC
                    LIMIT ?
                )
                RETURNING *
                """,
                (stamp, lease, stamp, job_id, stamp, stamp, limit),
            ).fetchall()
        chunks = [_row_to_chunk(row) for row in rows]
        chunks.sort(key=lambda chunk: chunk.window.start, reverse=True)
        if chunks:
            LOGGER.debug("Claimed %s chunks for job %s", len(chunks), job_id)
        return chunks

    def advance_stage(self, chunk: WorkChunk, stage: ChunkStage) -> bool:
        """Move a claimed chunk to ``stage``; ``False`` if the claim was lost."""
        now = serialize_datetime(self._clock())
        with self._connection:
            cursor = self._connection.execute(
                """
                UPDATE scan_chunks SET stage = ?, updated_at = ?
                WHERE id = ? AND claim_token = ? AND status = 'claimed'
                """,
                (stage, now, chunk.id, chunk.claim_token),
            )
        if cursor.rowcount == 1:
            chunk.stage = stage
            return True
        LOGGER.warning("Lost claim on chunk %s while advancing to %s", chunk.id, stage)
        return False

    def complete_chunk(self, chunk: WorkChunk) -> bool:
        """Mark a claimed chunk done; ``False`` if the claim was lost."""
        now = serialize_datetime(self._clock())
        with self._connection:
            cursor = self._connection.execute(
                """
                UPDATE scan_chunks
                SET status = 'done', claim_token = NULL, lease_expires_at = NULL,
                    last_error = NULL, updated_at = ?
                WHERE id = ? AND claim_token = ? AND status = 'claimed'
                """,
                (now, chunk.id, chunk.claim_token),
            )
        if cursor.rowcount == 1:
            chunk.status = "done"
            return True
        LOGGER.warning("Lost claim on chunk %s before completion", chunk.id)
        return False

    def fail_chunk(
        self,
        chunk: WorkChunk,
        error: str,
        *,
        max_attempts: int,
        retry_delay_seconds: float,
    ) -> ChunkStatus | None:
        """Requeue a chunk for retry, or fail it once attempts are exhausted."""
        now = self._clock()
        status: ChunkStatus = "failed" if chunk.attempts >= max_attempts else "queued"
        available_at = (
            serialize_datetime(now + timedelta(seconds=retry_delay_seconds))
            if status == "queued"
            else None
        )
        with self._connection:
            cursor = self._connection.execute(
                """
                UPDATE scan_chunks
                SET status = ?, claim_token = NULL, lease_expires_at = NULL,
                    available_at = ?, last_error = ?, updated_at = ?
                WHERE id = ? AND claim_token = ? AND status = 'claimed'
                """,
                (
                    status,
                    available_at,
                    error,
                    serialize_datetime(now),
                    chunk.id,
                    chunk.claim_token,
                ),
            )
        if cursor.rowcount != 1:
            LOGGER.warning("Lost claim on chunk %s while recording failure", chunk.id)
            return None
        chunk.status = status
        chunk.last_error = error
        return status

    def release_chunk(
        self,
        chunk: WorkChunk,
        *,
        delay_seconds: float = 0.0,
        error: str | None = None,
    ) -> bool:
        """Return a claimed chunk to the queue and give back its attempt."""
        now = self._clock()
        with self._connection:
            cursor = self._connection.execute(
                """
                UPDATE scan_chunks
                SET status = 'queued', claim_token = NULL, lease_expires_at = NULL,
                    attempts = MAX(attempts - 1, 0),
                    available_at = ?, last_error = COALESCE(?, last_error),
                    updated_at = ?
                WHERE id = ? AND claim_token = ? AND status = 'claimed'
                """,
                (
                    serialize_datetime(now + timedelta(seconds=delay_seconds)),
                    error,
                    serialize_datetime(now),
                    chunk.id,
                    chunk.claim_token,
                ),
            )
        if cursor.rowcount == 1:
            chunk.status = "queued"
            return True
        return False

    def list_chunks(self, job_id: str) -> list[WorkChunk]:
        """Return every chunk of ``job_id``, newest window first."""
        rows = self._connection.execute(
            "SELECT * FROM scan_chunks WHERE job_id = ? ORDER BY window_start DESC",
            (job_id,),
        ).fetchall()
        return [_row_to_chunk(row) for row in rows]

    def chunk_counts(self, job_id: str) -> dict[ChunkStatus, int]:
        """Count the chunks of ``job_id`` per status."""
        counts: dict[ChunkStatus, int] = {
            "queued": 0,
            "claimed": 0,
            "done": 0,
            "failed": 0,
            "cancelled": 0,
        }
        rows = self._connection.execute(
            "SELECT status, COUNT(*) AS total FROM scan_chunks WHERE job_id = ? GROUP BY status",
            (job_id,),
        ).fetchall()
        for row in rows:
            counts[cast(ChunkStatus, row["status"])] = int(row["total"])
        return counts

    def live_claims(self, job_id: str) -> int:
        """Count chunks whose claim lease has not yet expired."""
        row = self._connection.execute(
            """
            SELECT COUNT(*) FROM scan_chunks
            WHERE job_id = ? AND status = 'claimed' AND lease_expires_at > ?
            """,
            (job_id, serialize_datetime(self._clock())),
        ).fetchone()
        return int(row[0])

    def failed_windows(self, job_id: str) -> list[TimeWindow]:
        """Return the windows of chunks that ran out of attempts."""
        rows = self._connection.execute(
            """
            SELECT window_start, window_end FROM scan_chunks
            WHERE job_id = ? AND status = 'failed'
            ORDER BY window_start
            """,
            (job_id,),
        ).fetchall()
        return [_row_to_window(row) for row in rows]

    def documents_found(self, job_id: str) -> int:
        """Count distinct documents persisted by the job's chunks."""
        row = self._connection.execute(
            """
            SELECT COUNT(DISTINCT c.dedup_key) FROM scan_candidates AS c
            JOIN scan_chunks AS k ON k.id = c.chunk_id
            WHERE k.job_id = ? AND c.dedup_key IS NOT NULL
            """,
            (job_id,),
        ).fetchone()
        return int(row[0])

    def cancel_queued_chunks(self, job_id: str) -> int:
        """Cancel every queued chunk of ``job_id``; returns how many."""
        now = serialize_datetime(self._clock())
        with self._connection:
            cursor = self._connection.execute(
                """
                UPDATE scan_chunks SET status = 'cancelled', updated_at = ?
                WHERE job_id = ? AND status = 'queued'
                """,
                (now, job_id),
            )
        return cursor.rowcount

    def requeue_failed_chunks(self, job_id: str) -> int:
        """Queue failed chunks again with fresh attempts; returns how many."""
        now = serialize_datetime(self._clock())
        with self._connection:
            cursor = self._connection.execute(
                """
                UPDATE scan_chunks
                SET status = 'queued', attempts = 0, available_at = NULL, updated_at = ?
                WHERE job_id = ? AND status = 'failed'
                """,
                (now, job_id),
            )
        return cursor.rowcount

    # Scan ledger -------------------------------------------------------------
    def record_discovered(self, chunk_id: str, message_ids: Sequence[str]) -> int:
        """Remember messages found in a chunk's window; duplicates are ignored."""
        before = self._connection.total_changes
        with self._connection:
            self._connection.executemany(
                "INSERT OR IGNORE INTO scan_messages (chunk_id, message_id) VALUES (?, ?)",
                [(chunk_id, message_id) for message_id in message_ids],
            )
        return self._connection.total_changes - before

    def pending_messages(self, chunk_id: str) -> list[str]:
        """Return discovered messages of a chunk not yet extracted."""
        rows = self._connection.execute(
            """
            SELECT message_id FROM scan_messages
            WHERE chunk_id = ? AND state = 'pending'
            ORDER BY message_id
            """,
            (chunk_id,),
        ).fetchall()
        return [row["message_id"] for row in rows]

    def mark_message(self, chunk_id: str, message_id: str, state: str) -> None:
        """Record the extraction state of one discovered message."""
        with self._connection:
            self._connection.execute(
                "UPDATE scan_messages SET state = ? WHERE chunk_id = ? AND message_id = ?",
                (state, chunk_id, message_id),
            )

    def record_candidate(
        self,
        chunk_id: str,
        candidate: CandidateDocument,
        *,
        state: str,
        dedup_key: str | None = None,
    ) -> None:
        """Record or update the scan-ledger state of one candidate."""
        with self._connection:
            self._connection.execute(
                """
                INSERT INTO scan_candidates (
                    chunk_id, message_id, attachment_key, state, dedup_key
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(chunk_id, message_id, attachment_key) DO UPDATE SET
                    state=excluded.state,
                    dedup_key=COALESCE(excluded.dedup_key, scan_candidates.dedup_key)
                """,
                (
                    chunk_id,
                    candidate.message_id,
                    candidate.attachment_id or "",
                    state,
                    dedup_key,
                ),
            )

    def pending_ai_candidates(self, chunk_id: str) -> list[tuple[str, str | None]]:
        """Return ``(message_id, attachment_id)`` pairs awaiting the model."""
        rows = self._connection.execute(
            """
            SELECT message_id, attachment_key FROM scan_candidates
            WHERE chunk_id = ? AND state = 'needs_ai'
            ORDER BY message_id, attachment_key
            """,
            (chunk_id,),
        ).fetchall()
        return [(row["message_id"], row["attachment_key"] or None) for row in rows]

    def defer_candidate(
        self, chunk_id: str, message_id: str, attachment_id: str | None, error: str
    ) -> int:
        """Count a deferred AI attempt and return the total so far."""
        with self._connection:
            rows = self._connection.execute(
                """
                UPDATE scan_candidates
                SET ai_attempts = ai_attempts + 1, error = ?
                WHERE chunk_id = ? AND message_id = ? AND attachment_key = ?
                RETURNING ai_attempts
                """,
                (error, chunk_id, message_id, attachment_id or ""),
            ).fetchall()
        return int(rows[0]["ai_attempts"]) if rows else 0

    def skip_candidate(
        self, chunk_id: str, message_id: str, attachment_id: str | None
    ) -> None:
        """Mark a candidate skipped, for example when its attachment vanished."""
        with self._connection:
            self._connection.execute(
                """
                UPDATE scan_candidates SET state = 'skipped'
                WHERE chunk_id = ? AND message_id = ? AND attachment_key = ?
                """,
                (chunk_id, message_id, attachment_id or ""),
            )

    # Documents ---------------------------------------------------------------
    def upsert_document(
        self, candidate: CandidateDocument, result: ExtractionResult
    ) -> UpsertResult:
        """Insert, upgrade or leave unchanged the record for ``candidate``.

        Writes are compare-and-set on ``version``; a lost race re-reads the row
        and re-applies the merge rules.
        """
        key = document_key(candidate.mailbox_id, candidate, candidate.attachment_id)
        for _ in range(_CAS_RETRIES):
            existing = self.get_document(candidate.mailbox_id, key)
            decision = merge_result(existing, result)
            if decision is None:
                assert existing is not None
                return UpsertResult(document=existing, outcome="unchanged")

            now = serialize_datetime(self._clock())
            values = (
                decision.fields.vendor,
                _serialize_amount(decision.fields.amount),
                decision.fields.currency,
                serialize_date(decision.fields.issued_on),
                decision.fields.category,
                decision.fields.document_type,
                decision.confidence,
                decision.source,
                decision.status,
                decision.raw_text,
            )
            with self._connection:
                if existing is None:
                    rows = self._connection.execute(
                        """
                        INSERT INTO documents (
                            id, mailbox_id, dedup_key, message_id, attachment_id,
                            vendor, amount, currency, issued_on, category,
                            document_type, confidence, source, status, raw_text,
                            version, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                        ON CONFLICT(mailbox_id, dedup_key) DO NOTHING
                        RETURNING *
                        """,
                        (
                            str(uuid.uuid4()),
                            candidate.mailbox_id,
                            key,
                            candidate.message_id,
                            candidate.attachment_id,
                            *values,
                            now,
                            now,
                        ),
                    ).fetchall()
                else:
                    rows = self._connection.execute(
                        """
                        UPDATE documents
                        SET vendor = ?, amount = ?, currency = ?, issued_on = ?,
                            category = ?, document_type = ?, confidence = ?,
                            source = ?, status = ?, raw_text = ?,
                            version = version + 1, updated_at = ?
                        WHERE id = ? AND version = ?
                        RETURNING *
                        """,
                        (*values, now, existing.id, existing.version),
                    ).fetchall()
            if rows:
                document = _row_to_document(rows[0])
                LOGGER.debug(
                    "Document %s %s (source=%s)",
                    document.id,
                    decision.outcome,
                    document.source,
                )
                return UpsertResult(document=document, outcome=decision.outcome)
            LOGGER.debug("Concurrent write on document %s; retrying", key)
        raise StorageError(f"Gave up writing document {key} after concurrent updates")

    def get_document(self, mailbox_id: str, dedup_key: str) -> ExtractedDocument | None:
        """Return the document stored under ``dedup_key``, if any."""
        row = self._connection.execute(
            "SELECT * FROM documents WHERE mailbox_id = ? AND dedup_key = ?",
            (mailbox_id, dedup_key),
        ).fetchone()
        return _row_to_document(row) if row else None

    def get_document_by_id(self, document_id: str) -> ExtractedDocument | None:
        """Return the document with ``document_id``, if any."""
        row = self._connection.execute(
            "SELECT * FROM documents WHERE id = ?", (document_id,)
        ).fetchone()
        return _row_to_document(row) if row else None

    def list_documents(
        self, mailbox_id: str, *, include_deleted: bool = False, limit: int | None = None
    ) -> list[ExtractedDocument]:
        """Return the documents of ``mailbox_id``, most recently issued first."""
        query = "SELECT * FROM documents WHERE mailbox_id = ?"
        if not include_deleted:
            query += " AND status != 'deleted'"
        query += " ORDER BY issued_on DESC, created_at DESC"
        params: tuple[Any, ...] = (mailbox_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (mailbox_id, limit)
        rows = self._connection.execute(query, params).fetchall()
        return [_row_to_document(row) for row in rows]

    def edit_document(self, document_id: str, **changes: Any) -> ExtractedDocument:
        """Apply user corrections; the record is then locked against automation.

        A corrected category is also remembered for the document's vendor.
        """
        allowed = {"vendor", "amount", "currency", "issued_on", "category", "document_type"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unsupported document fields: {sorted(unknown)}")

        existing = self.get_document_by_id(document_id)
        if existing is None:
            raise StorageError(f"Document {document_id} not found")

        assignments = {name: value for name, value in changes.items() if value is not None}
        if "amount" in assignments:
            assignments["amount"] = _serialize_amount(Decimal(str(assignments["amount"])))
        if "issued_on" in assignments:
            assignments["issued_on"] = serialize_date(assignments["issued_on"])
        columns = "".join(f"{name} = ?, " for name in assignments)
        now = serialize_datetime(self._clock())
        with self._connection:
            rows = self._connection.execute(
                f"""
                UPDATE documents
                SET {columns}status = 'edited', source = 'manual', confidence = 1.0,
                    version = version + 1, updated_at = ?
                WHERE id = ? AND version = ?
                RETURNING *
                """,
                (*assignments.values(), now, document_id, existing.version),
            ).fetchall()
        if not rows:
            raise StorageError(f"Document {document_id} changed concurrently")
        document = _row_to_document(rows[0])
        if changes.get("category") and document.vendor:
            self.record_vendor_category(
                document.mailbox_id, document.vendor, changes["category"]
            )
        return document

    def delete_document(self, document_id: str) -> bool:
        """Soft-delete a document so later scans never resurrect it."""
        now = serialize_datetime(self._clock())
        with self._connection:
            cursor = self._connection.execute(
                """
                UPDATE documents
                SET status = 'deleted', version = version + 1, updated_at = ?
                WHERE id = ? AND status != 'deleted'
                """,
                (now, document_id),
            )
        return cursor.rowcount == 1

    def record_vendor_category(self, mailbox_id: str, vendor: str, category: str) -> None:
        """Remember the category the user chose for ``vendor``."""
        now = serialize_datetime(self._clock())
        with self._connection:
            self._connection.execute(
                """
                INSERT INTO vendor_categories (mailbox_id, vendor_key, category, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(mailbox_id, vendor_key) DO UPDATE SET
                    category=excluded.category,
                    updated_at=excluded.updated_at
                """,
                (mailbox_id, _vendor_key(vendor), category, now),
            )

    def get_vendor_category(self, mailbox_id: str, vendor: str) -> str | None:
        """Return the remembered category for ``vendor``, if any."""
        row = self._connection.execute(
            "SELECT category FROM vendor_categories WHERE mailbox_id = ? AND vendor_key = ?",
            (mailbox_id, _vendor_key(vendor)),
        ).fetchone()
        return row["category"] if row else None

    # Cursors -----------------------------------------------------------------
    def get_cursor(self, mailbox_id: str) -> SyncCursor | None:
        """Retrieve the stored change cursor for ``mailbox_id``."""
        row = self._connection.execute(
            "SELECT * FROM sync_cursors WHERE mailbox_id = ?", (mailbox_id,)
        ).fetchone()
        if row is None:
            return None
        updated_at = parse_datetime(row["updated_at"])
        assert updated_at is not None
        return SyncCursor(
            mailbox_id=row["mailbox_id"],
            value=row["value"],
            version=int(row["version"]),
            updated_at=updated_at,
        )

    def compare_and_set_cursor(
        self, mailbox_id: str, value: str, *, expected_version: int | None
    ) -> bool:
        """Store ``value`` only if the cursor is still at ``expected_version``."""
        now = serialize_datetime(self._clock())
        with self._connection:
            if expected_version is None:
                cursor = self._connection.execute(
                    """
                    INSERT INTO sync_cursors (mailbox_id, value, version, updated_at)
                    VALUES (?, ?, 1, ?)
                    ON CONFLICT(mailbox_id) DO NOTHING
                    """,
                    (mailbox_id, value, now),
                )
            else:
                cursor = self._connection.execute(
                    """
                    UPDATE sync_cursors
                    SET value = ?, version = version + 1, updated_at = ?
                    WHERE mailbox_id = ? AND version = ?
                    """,
                    (value, now, mailbox_id, expected_version),
                )
        stored = cursor.rowcount == 1
        LOGGER.debug(
            "Cursor CAS mailbox=%s expected=%s stored=%s", mailbox_id, expected_version, stored
        )
        return stored

    # Internal helpers ---------------------------------------------------------
    def _configure_connection(self) -> None:
        with self._connection:
            self._connection.execute("PRAGMA foreign_keys = ON")
        self._connection.execute("PRAGMA journal_mode = WAL")
        self._connection.execute("PRAGMA synchronous = NORMAL")

    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        migrations = sorted(schema_dir.glob("*.sql"))
        for migration in migrations:
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            with self._connection:
                self._connection.executescript(script)


def _vendor_key(vendor: str) -> str:
    return " ".join(vendor.lower().split())


def _serialize_amount(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _row_to_window(row: sqlite3.Row) -> TimeWindow:
    start = parse_datetime(row["window_start"])
    end = parse_datetime(row["window_end"])
    assert start is not None and end is not None
    return TimeWindow(start=start, end=end)


def _row_to_mailbox(row: sqlite3.Row) -> Mailbox:
    created_at = parse_datetime(row["created_at"])
    assert created_at is not None
    return Mailbox(
        id=row["id"],
        provider=row["provider"],
        account=row["account"],
        business_id=row["business_id"],
        created_at=created_at,
    )


def _row_to_job(row: sqlite3.Row) -> ScanJob:
    range_start = parse_datetime(row["range_start"])
    range_end = parse_datetime(row["range_end"])
    created_at = parse_datetime(row["created_at"])
    updated_at = parse_datetime(row["updated_at"])
    assert range_start and range_end and created_at and updated_at
    return ScanJob(
        id=row["id"],
        mailbox_id=row["mailbox_id"],
        range_start=range_start,
        range_end=range_end,
        status=cast(JobStatus, row["status"]),
        pause_requested=bool(row["pause_requested"]),
        chunks_total=int(row["chunks_total"]),
        last_error=row["last_error"],
        created_at=created_at,
        updated_at=updated_at,
        finished_at=parse_datetime(row["finished_at"]),
        start_cursor=row["start_cursor"],
    )


def _row_to_chunk(row: sqlite3.Row) -> WorkChunk:
    return WorkChunk(
        id=row["id"],
        job_id=row["job_id"],
        window=_row_to_window(row),
        stage=cast(ChunkStage, row["stage"]),
        status=cast(ChunkStatus, row["status"]),
        attempts=int(row["attempts"]),
        claim_token=row["claim_token"],
        claimed_at=parse_datetime(row["claimed_at"]),
        lease_expires_at=parse_datetime(row["lease_expires_at"]),
        available_at=parse_datetime(row["available_at"]),
        last_error=row["last_error"],
    )


def _row_to_document(row: sqlite3.Row) -> ExtractedDocument:
    created_at = parse_datetime(row["created_at"])
    updated_at = parse_datetime(row["updated_at"])
    assert created_at is not None and updated_at is not None
    return ExtractedDocument(
        id=row["id"],
        mailbox_id=row["mailbox_id"],
        dedup_key=row["dedup_key"],
        message_id=row["message_id"],
        attachment_id=row["attachment_id"],
        vendor=row["vendor"],
        amount=Decimal(row["amount"]) if row["amount"] is not None else None,
        currency=row["currency"],
        issued_on=parse_date(row["issued_on"]),
        category=row["category"],
        document_type=row["document_type"],
        confidence=float(row["confidence"]),
        source=cast(ExtractionSource, row["source"]),
        status=cast(DocumentStatus, row["status"]),
        raw_text=row["raw_text"],
        version=int(row["version"]),
        created_at=created_at,
        updated_at=updated_at,
    )


__all__ = ["DuplicateActiveJob", "SqliteStore", "StorageError"]
