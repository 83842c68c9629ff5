"""Deep-scan job lifecycle: start, advance, pause, resume, cancel and retry."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime

from ..core.config import ScanSettings
from ..core.datetime_utils import utc_now
from ..core.errors import MailSourceError
from ..core.interfaces import ScanRepository
from ..core.models import (
    ACTIVE_JOB_STATUSES,
    AdvanceReport,
    Mailbox,
    ScanJob,
    ScanStatusReport,
    TimeWindow,
    WorkChunk,
)
from ..storage.sqlite import DuplicateActiveJob
from ..transport.retry import Deadline
from .partition import partition_range, scan_range
from .processor import ChunkProcessor

LOGGER = logging.getLogger(__name__)

# Stop claiming new chunks once less than this much budget is left.
_CLAIM_MARGIN_SECONDS = 2.0


class ScanJobError(RuntimeError):
    """Raised when a job operation is not valid in the job's current state."""


class JobNotFound(ScanJobError):
    """Raised when a job or mailbox id does not exist."""


class ScanJobService:
    """Drive chunked deep scans through the shared work queue.

    The service keeps no job state in memory: every decision is re-read from
    the store, so any number of ticks may run ``advance`` for the same job
    concurrently.
    """

    def __init__(
        self,
        store: ScanRepository,
        processor: ChunkProcessor,
        settings: ScanSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._processor = processor
        self._settings = settings
        self._clock = clock
        self._monotonic = monotonic

    # Control surface -------------------------------------------------------
    def start_scan(self, mailbox_id: str, range_years: int | None = None) -> ScanJob:
        """Create and start a scan, or return the mailbox's active job."""
        mailbox = self._store.get_mailbox(mailbox_id)
        if mailbox is None:
            raise JobNotFound(f"Mailbox {mailbox_id} does not exist")
        active = self._store.list_active_jobs(mailbox_id)
        if active:
            LOGGER.info("Mailbox %s already has active job %s", mailbox_id, active[0].id)
            return active[0]

        window = scan_range(self._clock(), range_years or self._settings.range_years)
        windows = partition_range(window, self._settings.window_days)
        try:
            job = self._store.create_job(mailbox_id, window, windows)
        except DuplicateActiveJob:
            return self._store.list_active_jobs(mailbox_id)[0]
        self._store.transition_job(job.id, ("pending",), "running")
        self._capture_start_cursor(job.id, mailbox, None)
        return self._require_job(job.id)

    def pause(self, job_id: str) -> ScanJob:
        """Request a pause; the job parks once no chunk holds a live claim."""
        job = self._require_job(job_id)
        if job.status not in ACTIVE_JOB_STATUSES:
            raise ScanJobError(f"Cannot pause job {job_id} in status {job.status}")
        self._store.set_pause_requested(job_id, True)
        self._settle_pause(job_id)
        return self._require_job(job_id)

    def resume(self, job_id: str) -> ScanJob:
        job = self._require_job(job_id)
        if job.status not in ACTIVE_JOB_STATUSES:
            raise ScanJobError(f"Cannot resume job {job_id} in status {job.status}")
        self._store.set_pause_requested(job_id, False)
        self._store.transition_job(job_id, ("paused",), "running")
        return self._require_job(job_id)

    def cancel(self, job_id: str) -> ScanJob:
        """Cancel a job; in-flight chunks finish or expire on their own."""
        job = self._require_job(job_id)
        if not self._store.transition_job(job_id, ACTIVE_JOB_STATUSES, "cancelled"):
            raise ScanJobError(f"Cannot cancel job {job_id} in status {job.status}")
        cancelled = self._store.cancel_queued_chunks(job_id)
        LOGGER.info("Cancelled job %s (%s queued chunks dropped)", job_id, cancelled)
        return self._require_job(job_id)

    def retry_failed(self, job_id: str) -> ScanJob:
        """Re-enqueue the failed chunks of a failed job and run it again."""
        job = self._require_job(job_id)
        if job.status != "failed":
            raise ScanJobError(f"Only failed jobs can be retried (job is {job.status})")
        requeued = self._store.requeue_failed_chunks(job_id)
        self._store.transition_job(job_id, ("failed",), "running")
        LOGGER.info("Job %s re-enqueued %s failed chunks", job_id, requeued)
        return self._require_job(job_id)

    def get_status(self, job_id: str) -> ScanStatusReport:
        job = self._require_job(job_id)
        counts = self._store.chunk_counts(job_id)
        return ScanStatusReport(
            job_id=job.id,
            mailbox_id=job.mailbox_id,
            status=job.status,
            pause_requested=job.pause_requested,
            chunks_total=job.chunks_total,
            chunks_done=counts["done"],
            chunks_failed=counts["failed"],
            chunks_in_progress=counts["claimed"],
            documents_found=self._store.documents_found(job_id),
            failed_windows=tuple(self._store.failed_windows(job_id)),
            last_error=job.last_error,
        )

    # Scheduler entry points -------------------------------------------------
    def advance_mailbox(self, mailbox_id: str) -> list[AdvanceReport]:
        """Advance every active job of ``mailbox_id``."""
        return [self.advance(job.id) for job in self._store.list_active_jobs(mailbox_id)]

    def advance(self, job_id: str) -> AdvanceReport:
        """Claim and process chunks until the job is idle or the budget is spent."""
        job = self._require_job(job_id)
        if job.status != "running":
            return AdvanceReport(job.id, job.status, 0, 0, "not_running")
        mailbox = self._store.get_mailbox(job.mailbox_id)
        if mailbox is None:
            raise JobNotFound(f"Mailbox {job.mailbox_id} does not exist")

        deadline = Deadline(self._settings.time_budget_seconds, clock=self._monotonic)
        if job.start_cursor is None:
            self._capture_start_cursor(job.id, mailbox, deadline)
        claimed = completed = 0
        stopped = "budget"
        while True:
            current = self._require_job(job_id)
            if current.status != "running":
                stopped = current.status
                break
            if current.pause_requested:
                self._settle_pause(job_id)
                stopped = "paused"
                break
            if deadline.expired(_CLAIM_MARGIN_SECONDS):
                break

            chunks = self._store.claim_chunks(
                job_id,
                self._settings.chunks_per_claim,
                lease_seconds=self._settings.lease_seconds,
            )
            if not chunks:
                self._finish_if_drained(job_id)
                stopped = "idle"
                break
            claimed += len(chunks)
            completed_batch, stop_reason = self._process_batch(mailbox, chunks, deadline)
            completed += completed_batch
            if stop_reason is not None:
                stopped = stop_reason
                break

        final = self._require_job(job_id)
        if final.pause_requested:
            self._settle_pause(job_id)
            final = self._require_job(job_id)
        LOGGER.info(
            "Advanced job %s: claimed=%s completed=%s stopped=%s",
            job_id,
            claimed,
            completed,
            stopped,
        )
        return AdvanceReport(final.id, final.status, claimed, completed, stopped)

    # Internal helpers ---------------------------------------------------------
    def _process_batch(
        self, mailbox: Mailbox, chunks: list[WorkChunk], deadline: Deadline
    ) -> tuple[int, str | None]:
        completed = 0
        for index, chunk in enumerate(chunks):
            if chunk.attempts > self._settings.max_attempts:
                # Reclaimed after its lease expired too many times.
                self._store.fail_chunk(
                    chunk,
                    chunk.last_error or "lease expired without progress",
                    max_attempts=self._settings.max_attempts,
                    retry_delay_seconds=self._settings.retry_delay_seconds,
                )
                continue
            outcome = self._processor.process(mailbox, chunk, deadline)
            if outcome == "completed":
                completed += 1
            elif outcome in ("auth_expired", "interrupted"):
                for remaining in chunks[index + 1 :]:
                    self._store.release_chunk(remaining)
                return completed, "auth_expired" if outcome == "auth_expired" else "budget"
        return completed, None

    def _finish_if_drained(self, job_id: str) -> None:
        """Close the job once no queued or claimed chunk remains."""
        counts = self._store.chunk_counts(job_id)
        if counts["queued"] or counts["claimed"]:
            return
        if counts["done"] == 0 and counts["failed"] > 0:
            windows = self._store.failed_windows(job_id)
            summary = _summarise_windows(windows)
            self._store.transition_job(
                job_id, ("running",), "failed", last_error=f"All chunks failed: {summary}"
            )
            return
        last_error = None
        if counts["failed"]:
            last_error = (
                f"{counts['failed']} windows unresolved: "
                f"{_summarise_windows(self._store.failed_windows(job_id))}"
            )
        if self._store.transition_job(
            job_id, ("running",), "completed", last_error=last_error
        ):
            self._seed_sync_cursor(self._require_job(job_id))

    def _capture_start_cursor(
        self, job_id: str, mailbox: Mailbox, deadline: Deadline | None
    ) -> None:
        try:
            cursor = self._processor.current_cursor(mailbox, deadline)
        except MailSourceError as exc:
            LOGGER.warning("Could not read the change cursor for job %s: %s", job_id, exc)
            return
        if cursor is not None:
            self._store.set_job_start_cursor(job_id, cursor)

    def _seed_sync_cursor(self, job: ScanJob) -> None:
        """Hand incremental sync the cursor from the scan start, unless it has one."""
        if job.start_cursor is None or self._store.get_cursor(job.mailbox_id) is not None:
            return
        if self._store.compare_and_set_cursor(
            job.mailbox_id, job.start_cursor, expected_version=None
        ):
            LOGGER.info(
                "Seeded sync cursor for mailbox %s from job %s", job.mailbox_id, job.id
            )

    def _settle_pause(self, job_id: str) -> None:
        if self._store.live_claims(job_id) == 0:
            self._store.transition_job(job_id, ("pending", "running"), "paused")

    def _require_job(self, job_id: str) -> ScanJob:
        job = self._store.get_job(job_id)
        if job is None:
            raise JobNotFound(f"Scan job {job_id} does not exist")
        return job


def _summarise_windows(windows: list[TimeWindow], limit: int = 5) -> str:
    parts = [f"{window.start.date()}..{window.end.date()}" for window in windows[:limit]]
    if len(windows) > limit:
        parts.append(f"+{len(windows) - limit} more")
    return ", ".join(parts)


__all__ = ["JobNotFound", "ScanJobError", "ScanJobService"]
