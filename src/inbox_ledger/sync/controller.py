"""Incremental sync driven by the provider's change cursor."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from ..core.config import ExtractionSettings, SyncSettings
from ..core.datetime_utils import utc_now
from ..core.errors import CursorExpired, MessageNotFound
from ..core.interfaces import MailSource, SyncRepository
from ..core.models import (
    AttachmentRef,
    ExtractedDocument,
    ExtractionResult,
    Mailbox,
    MailMessage,
    NeedsNextStage,
    SyncCursor,
    SyncReport,
    TimeWindow,
)
from ..extraction.candidates import PreparedCandidate, candidate_ids, prepare_candidates
from ..extraction.llm import LLMError
from ..extraction.merge import LOCKED_STATUSES, SOURCE_RANK, document_key, document_rank
from ..extraction.pipeline import ExtractionPipeline
from ..transport.retry import Deadline, RetryPolicy

LOGGER = logging.getLogger(__name__)

_STEP_MARGIN_SECONDS = 1.0


class SyncError(RuntimeError):
    """Raised when a sync cannot start."""


class IncrementalSyncController:
    """Pull new messages since the stored cursor and persist their documents.

    The cursor only moves after every change it covers has been persisted, and
    only forward. An interrupted tick leaves the cursor untouched, so the next
    tick replays the same changes. Candidates that already have a resolved or
    locked record are skipped on replay, so each tick gets further than the
    last one instead of paying for the same extractions again.
    """

    def __init__(
        self,
        store: SyncRepository,
        source: MailSource,
        pipeline: ExtractionPipeline,
        *,
        settings: SyncSettings,
        extraction_settings: ExtractionSettings,
        retry: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._source = source
        self._pipeline = pipeline
        self._settings = settings
        self._extraction = extraction_settings
        self._retry = retry or RetryPolicy()
        self._clock = clock
        self._monotonic = monotonic

    def advance_sync(self, mailbox_id: str) -> SyncReport:
        mailbox = self._store.get_mailbox(mailbox_id)
        if mailbox is None:
            raise SyncError(f"Mailbox {mailbox_id} does not exist")
        deadline = Deadline(self._settings.time_budget_seconds, clock=self._monotonic)

        stored = self._store.get_cursor(mailbox_id)
        used_fallback = stored is None
        if stored is None:
            LOGGER.info("No cursor for mailbox %s; re-discovering recent mail", mailbox_id)
            message_ids, new_cursor = self._rediscover(mailbox, deadline)
        else:
            try:
                changes = self._retry.call(
                    lambda: self._source.changes_since(mailbox, stored.value),
                    description=f"changes for mailbox {mailbox_id}",
                    deadline=deadline,
                )
                message_ids, new_cursor = list(changes.message_ids), changes.new_cursor
            except CursorExpired as exc:
                LOGGER.warning(
                    "Cursor for mailbox %s expired (%s); re-discovering recent mail",
                    mailbox_id,
                    exc,
                )
                used_fallback = True
                message_ids, new_cursor = self._rediscover(mailbox, deadline)

        counts = {"inserted": 0, "upgraded": 0, "unchanged": 0}
        skipped = 0
        complete = True
        for message_id in message_ids:
            if deadline.expired(_STEP_MARGIN_SECONDS):
                LOGGER.info(
                    "Time budget reached for mailbox %s; cursor left unchanged", mailbox_id
                )
                complete = False
                break
            try:
                message = self._retry.call(
                    lambda: self._source.fetch_message(mailbox, message_id),
                    description=f"fetch of message {message_id}",
                    deadline=deadline,
                )
            except MessageNotFound:
                skipped += 1
                continue
            existing = self._stored_documents(mailbox.id, message)
            if not existing:
                skipped += 1
                continue
            settled = [
                attachment_id
                for attachment_id, document in existing.items()
                if document is not None and _is_settled(document)
            ]
            counts["unchanged"] += len(settled)
            pending = [attachment_id for attachment_id in existing if attachment_id not in settled]
            if not pending:
                continue
            prepared = prepare_candidates(
                mailbox.id,
                message,
                self._attachment_loader(mailbox, deadline),
                settings=self._extraction,
                only=pending,
            )
            if not prepared and not settled:
                skipped += 1
                continue
            for item in prepared:
                # Records already held for review only get the rules again.
                result = self._extract(
                    item, use_model=existing[item.candidate.attachment_id] is None
                )
                if result is None:
                    counts["unchanged"] += 1
                    continue
                upsert = self._store.upsert_document(item.candidate, result)
                counts[upsert.outcome] += 1

        cursor_advanced = complete and self._commit_cursor(mailbox_id, stored, new_cursor)
        report = SyncReport(
            mailbox_id=mailbox_id,
            changes=len(message_ids),
            inserted=counts["inserted"],
            upgraded=counts["upgraded"],
            unchanged=counts["unchanged"],
            skipped=skipped,
            cursor_advanced=cursor_advanced,
            used_fallback=used_fallback,
            cursor=new_cursor if cursor_advanced else (stored.value if stored else None),
        )
        LOGGER.info(
            "Sync mailbox=%s changes=%s inserted=%s upgraded=%s unchanged=%s advanced=%s",
            mailbox_id,
            report.changes,
            report.inserted,
            report.upgraded,
            report.unchanged,
            report.cursor_advanced,
        )
        return report

    def _rediscover(self, mailbox: Mailbox, deadline: Deadline) -> tuple[list[str], str]:
        """Capture a fresh cursor, then list the fallback window.

        Taking the cursor first means anything arriving during the listing is
        picked up again by the next tick instead of being skipped.
        """
        fresh = self._retry.call(
            lambda: self._source.current_cursor(mailbox),
            description=f"current cursor for mailbox {mailbox.id}",
            deadline=deadline,
        )
        now = self._clock()
        window = TimeWindow(
            start=now - timedelta(days=self._settings.fallback_days), end=now
        )
        message_ids = self._retry.call(
            lambda: list(self._source.list_message_ids(mailbox, window)),
            description=f"fallback discovery for mailbox {mailbox.id}",
            deadline=deadline,
        )
        return message_ids, fresh

    def _stored_documents(
        self, mailbox_id: str, message: MailMessage
    ) -> dict[str | None, ExtractedDocument | None]:
        """Map each candidate id of ``message`` to its stored record, if any."""
        return {
            attachment_id: self._store.get_document(
                mailbox_id, document_key(mailbox_id, message, attachment_id)
            )
            for attachment_id in candidate_ids(message)
        }

    def _extract(
        self, item: PreparedCandidate, *, use_model: bool = True
    ) -> ExtractionResult | None:
        """Run the pipeline; ``None`` means the rules alone could not improve anything."""
        if not use_model:
            outcome = self._pipeline.run_rules(item)
            return None if isinstance(outcome, NeedsNextStage) else outcome
        try:
            return self._pipeline.extract(item)
        except LLMError as exc:
            LOGGER.warning(
                "Model extraction failed for %s (%s); storing for review",
                item.candidate.message_id,
                exc,
            )
            return self._pipeline.review_result(item)

    def _commit_cursor(
        self, mailbox_id: str, stored: SyncCursor | None, new_cursor: str
    ) -> bool:
        if stored is not None:
            if new_cursor == stored.value:
                return False
            if not self._source.cursor_supersedes(new_cursor, stored.value):
                LOGGER.warning(
                    "Refusing to move cursor for %s backwards (%s -> %s)",
                    mailbox_id,
                    stored.value,
                    new_cursor,
                )
                return False
        stored_ok = self._store.compare_and_set_cursor(
            mailbox_id,
            new_cursor,
            expected_version=stored.version if stored else None,
        )
        if not stored_ok:
            LOGGER.info("Cursor for %s moved concurrently; keeping the newer value", mailbox_id)
        return stored_ok

    def _attachment_loader(self, mailbox: Mailbox, deadline: Deadline):
        def load(ref: AttachmentRef) -> bytes:
            return self._retry.call(
                lambda: self._source.fetch_attachment(mailbox, ref),
                description=f"download of attachment {ref.attachment_id}",
                deadline=deadline,
            )

        return load


def _is_settled(document: ExtractedDocument) -> bool:
    """Locked or already resolved records are not worth another extraction."""
    return document.status in LOCKED_STATUSES or document_rank(document) >= SOURCE_RANK["regex"]


__all__ = ["IncrementalSyncController", "SyncError"]
