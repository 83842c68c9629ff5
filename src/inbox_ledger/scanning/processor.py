"""Run one claimed chunk through discovery, rules and the model stage."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Literal

from ..core.config import ExtractionSettings, ScanSettings
from ..core.errors import (
    AuthExpired,
    MailSourceError,
    MessageNotFound,
    RateLimited,
)
from ..core.interfaces import MailSource, ScanRepository
from ..core.models import AttachmentRef, ExtractionResult, Mailbox, MailMessage, WorkChunk
from ..extraction.candidates import PreparedCandidate, prepare_candidates
from ..extraction.llm import LLMError
from ..extraction.pipeline import ExtractionPipeline
from ..transport.retry import Deadline, RetryPolicy

LOGGER = logging.getLogger(__name__)

ChunkOutcome = Literal[
    "completed", "interrupted", "released", "failed", "lost", "auth_expired"
]
_StageProgress = Literal["finished", "interrupted", "deferred"]

# Seconds kept in reserve so persisted progress is not cut off mid-write.
_STEP_MARGIN_SECONDS = 1.0


class ChunkProcessor:
    """Advance a single chunk as far as the time budget allows.

    Every step is recorded in the scan ledger before moving on, so a chunk that
    is released, re-claimed or reprocessed after a crash resumes where it left
    off and never duplicates documents.
    """

    def __init__(
        self,
        store: ScanRepository,
        source: MailSource,
        pipeline: ExtractionPipeline,
        *,
        scan_settings: ScanSettings,
        extraction_settings: ExtractionSettings,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._source = source
        self._pipeline = pipeline
        self._scan = scan_settings
        self._extraction = extraction_settings
        self._retry = retry or RetryPolicy()

    def process(
        self, mailbox: Mailbox, chunk: WorkChunk, deadline: Deadline
    ) -> ChunkOutcome:
        """Process ``chunk`` and settle its claim; returns what happened."""
        try:
            if chunk.stage == "discovery":
                self._discover(mailbox, chunk, deadline)
                if not self._store.advance_stage(chunk, "regex"):
                    return "lost"

            if chunk.stage == "regex":
                if self._run_rules(mailbox, chunk, deadline) == "interrupted":
                    return self._interrupt(chunk)
                if not self._store.advance_stage(chunk, "ai"):
                    return "lost"

            progress = self._run_ai(mailbox, chunk, deadline)
            if progress == "interrupted":
                return self._interrupt(chunk)
            if progress == "deferred":
                waiting = len(self._store.pending_ai_candidates(chunk.id))
                return self._fail(chunk, f"{waiting} candidates awaiting model retry")
        except AuthExpired as exc:
            LOGGER.warning("Credentials expired while processing chunk %s", chunk.id)
            self._store.release_chunk(chunk, error=str(exc))
            return "auth_expired"
        except RateLimited as exc:
            delay = exc.retry_after if exc.retry_after is not None else self._retry.max_delay
            LOGGER.info("Chunk %s rate limited; releasing for %.1fs", chunk.id, delay)
            self._store.release_chunk(chunk, delay_seconds=delay, error=str(exc))
            return "released"
        except MailSourceError as exc:
            return self._fail(chunk, f"{type(exc).__name__}: {exc}")

        if not self._store.complete_chunk(chunk):
            return "lost"
        LOGGER.info(
            "Chunk %s (%s - %s) completed",
            chunk.id,
            chunk.window.start.date(),
            chunk.window.end.date(),
        )
        return "completed"

    def current_cursor(self, mailbox: Mailbox, deadline: Deadline | None = None) -> str | None:
        """The source's change cursor right now, or ``None`` without a source."""
        if self._source is None:
            return None
        return self._retry.call(
            lambda: self._source.current_cursor(mailbox),
            description=f"current cursor for mailbox {mailbox.id}",
            deadline=deadline,
        )

    # Stages ------------------------------------------------------------------
    def _discover(self, mailbox: Mailbox, chunk: WorkChunk, deadline: Deadline) -> None:
        message_ids = self._retry.call(
            lambda: list(self._source.list_message_ids(mailbox, chunk.window)),
            description=f"discovery of chunk {chunk.id}",
            deadline=deadline,
        )
        added = self._store.record_discovered(chunk.id, message_ids)
        LOGGER.debug(
            "Chunk %s discovered %s messages (%s new)", chunk.id, len(message_ids), added
        )

    def _run_rules(
        self, mailbox: Mailbox, chunk: WorkChunk, deadline: Deadline
    ) -> _StageProgress:
        for message_id in self._store.pending_messages(chunk.id):
            if deadline.expired(_STEP_MARGIN_SECONDS):
                return "interrupted"
            try:
                state = self._rules_for_message(mailbox, chunk, message_id, deadline)
            except MailSourceError:
                raise
            except Exception:  # pylint: disable=broad-except
                LOGGER.error(
                    "Rule extraction failed for message %s in chunk %s",
                    message_id,
                    chunk.id,
                    exc_info=True,
                )
                state = "error"
            self._store.mark_message(chunk.id, message_id, state)
        return "finished"

    def _rules_for_message(
        self, mailbox: Mailbox, chunk: WorkChunk, message_id: str, deadline: Deadline
    ) -> str:
        """Extract one message with the rules; returns its ledger state."""
        message = self._fetch_message(mailbox, message_id, deadline)
        if message is None:
            return "skipped"
        prepared = prepare_candidates(
            mailbox.id,
            message,
            self._attachment_loader(mailbox, deadline),
            settings=self._extraction,
            stage="regex",
        )
        if not prepared:
            return "skipped"
        for item in prepared:
            outcome = self._pipeline.run_rules(item)
            if isinstance(outcome, ExtractionResult):
                self._persist(chunk, item, outcome)
            else:
                self._store.record_candidate(chunk.id, item.candidate, state="needs_ai")
        return "extracted"

    def _run_ai(
        self, mailbox: Mailbox, chunk: WorkChunk, deadline: Deadline
    ) -> _StageProgress:
        grouped: dict[str, set[str | None]] = defaultdict(set)
        for message_id, attachment_id in self._store.pending_ai_candidates(chunk.id):
            grouped[message_id].add(attachment_id)

        deferred = False
        for message_id, attachment_ids in grouped.items():
            if deadline.expired(_STEP_MARGIN_SECONDS):
                return "interrupted"
            message = self._fetch_message(mailbox, message_id, deadline)
            if message is None:
                for attachment_id in attachment_ids:
                    self._store.skip_candidate(chunk.id, message_id, attachment_id)
                continue
            prepared = prepare_candidates(
                mailbox.id,
                message,
                self._attachment_loader(mailbox, deadline),
                settings=self._extraction,
                stage="ai",
                only=attachment_ids,
            )
            for missing in attachment_ids - {item.candidate.attachment_id for item in prepared}:
                self._store.skip_candidate(chunk.id, message_id, missing)
            for item in prepared:
                if deadline.expired(_STEP_MARGIN_SECONDS):
                    return "interrupted"
                try:
                    if not self._extract_with_model(chunk, item):
                        deferred = True
                except MailSourceError:
                    raise
                except Exception:  # pylint: disable=broad-except
                    LOGGER.error(
                        "Model extraction failed for %s/%s in chunk %s",
                        message_id,
                        item.candidate.attachment_id,
                        chunk.id,
                        exc_info=True,
                    )
                    self._store.record_candidate(chunk.id, item.candidate, state="error")
        return "deferred" if deferred else "finished"

    def _extract_with_model(self, chunk: WorkChunk, item: PreparedCandidate) -> bool:
        """Run the model on one candidate; ``False`` when it was deferred."""
        candidate = item.candidate
        try:
            result = self._pipeline.run_ai(item)
        except LLMError as exc:
            attempts = self._store.defer_candidate(
                chunk.id, candidate.message_id, candidate.attachment_id, str(exc)
            )
            # No deferral on the chunk's last attempt: the candidate goes to review.
            last_chunk_attempt = chunk.attempts >= self._scan.max_attempts
            if attempts < self._extraction.max_ai_attempts and not last_chunk_attempt:
                LOGGER.info(
                    "Deferred model extraction for %s (attempt %s): %s",
                    candidate.message_id,
                    attempts,
                    exc,
                )
                return False
            LOGGER.warning(
                "Model extraction for %s gave up after %s attempts; marking for review",
                candidate.message_id,
                attempts,
            )
            result = self._pipeline.review_result(item)
        self._persist(chunk, item, result)
        return True

    # Helpers -----------------------------------------------------------------
    def _persist(
        self, chunk: WorkChunk, item: PreparedCandidate, result: ExtractionResult
    ) -> None:
        upsert = self._store.upsert_document(item.candidate, result)
        self._store.record_candidate(
            chunk.id,
            item.candidate,
            state="resolved",
            dedup_key=upsert.document.dedup_key,
        )

    def _fetch_message(
        self, mailbox: Mailbox, message_id: str, deadline: Deadline
    ) -> MailMessage | None:
        try:
            return self._retry.call(
                lambda: self._source.fetch_message(mailbox, message_id),
                description=f"fetch of message {message_id}",
                deadline=deadline,
            )
        except MessageNotFound:
            LOGGER.info("Message %s no longer exists; skipping", message_id)
            return None

    def _attachment_loader(self, mailbox: Mailbox, deadline: Deadline):
        def load(ref: AttachmentRef) -> bytes:
            return self._retry.call(
                lambda: self._source.fetch_attachment(mailbox, ref),
                description=f"download of attachment {ref.attachment_id}",
                deadline=deadline,
            )

        return load

    def _interrupt(self, chunk: WorkChunk) -> ChunkOutcome:
        LOGGER.info("Time budget reached inside chunk %s; releasing", chunk.id)
        self._store.release_chunk(chunk)
        return "interrupted"

    def _fail(self, chunk: WorkChunk, error: str) -> ChunkOutcome:
        status = self._store.fail_chunk(
            chunk,
            error,
            max_attempts=self._scan.max_attempts,
            retry_delay_seconds=self._scan.retry_delay_seconds,
        )
        if status is None:
            return "lost"
        LOGGER.warning(
            "Chunk %s attempt %s/%s failed (%s): %s",
            chunk.id,
            chunk.attempts,
            self._scan.max_attempts,
            status,
            error,
        )
        return "failed"


__all__ = ["ChunkOutcome", "ChunkProcessor"]
