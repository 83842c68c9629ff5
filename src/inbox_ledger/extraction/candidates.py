"""Turn fetched messages into candidate documents for extraction."""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass

from ..core.config import ExtractionSettings
from ..core.errors import MessageNotFound
from ..core.models import AttachmentRef, CandidateDocument, ChunkStage, MailMessage
from .pdf_text import extract_pdf_text
from .rules import has_signal, is_invoice_filename

LOGGER = logging.getLogger(__name__)

AttachmentLoader = Callable[[AttachmentRef], bytes]

DOCUMENT_EXTENSIONS = (".pdf", ".png", ".jpg", ".jpeg", ".txt")
IMAGE_CONTENT_TYPES = ("image/png", "image/jpeg", "image/jpg")
_BODY_LIMIT = 4000


@dataclass(slots=True)
class PreparedCandidate:
    """A candidate plus the attachment bytes it was built from, if any."""

    candidate: CandidateDocument
    payload: bytes | None = None

    @property
    def is_image(self) -> bool:
        content_type = (self.candidate.content_type or "").lower()
        filename = (self.candidate.filename or "").lower()
        return content_type in IMAGE_CONTENT_TYPES or filename.endswith(
            (".png", ".jpg", ".jpeg")
        )


def is_document_attachment(ref: AttachmentRef) -> bool:
    """Whether an attachment could hold an invoice (PDF, image or plain text)."""
    filename = (ref.filename or "").lower()
    content_type = (ref.content_type or "").lower()
    return (
        filename.endswith(DOCUMENT_EXTENSIONS)
        or content_type == "application/pdf"
        or content_type in IMAGE_CONTENT_TYPES
    )


def is_financial(message: MailMessage) -> bool:
    """A subject signal, or an invoice-like attachment filename."""
    if has_signal(message.subject):
        return True
    return any(
        is_document_attachment(ref) and is_invoice_filename(ref.filename)
        for ref in message.attachments
    )


def candidate_ids(message: MailMessage) -> list[str | None]:
    """Attachment ids ``prepare_candidates`` builds candidates for (``None`` is the body)."""
    if not is_financial(message):
        return []
    documents = [ref.attachment_id for ref in message.attachments if is_document_attachment(ref)]
    return documents or [None]


def prepare_candidates(
    mailbox_id: str,
    message: MailMessage,
    load_attachment: AttachmentLoader,
    *,
    settings: ExtractionSettings,
    stage: ChunkStage = "regex",
    only: Collection[str | None] | None = None,
) -> list[PreparedCandidate]:
    """Build one candidate per document attachment, or one for the body.

    ``only`` restricts the result to the given attachment ids (``None`` meaning
    the body candidate), which is how deferred AI work is rebuilt.
    """
    if not is_financial(message):
        return []

    body = _body_text(message)
    header_text = "\n".join(filter(None, (message.subject, body)))
    documents = [ref for ref in message.attachments if is_document_attachment(ref)]

    prepared: list[PreparedCandidate] = []
    for ref in documents:
        if only is not None and ref.attachment_id not in only:
            continue
        try:
            payload = _load(load_attachment, ref, settings)
        except MessageNotFound:
            LOGGER.info(
                "Attachment %s of message %s no longer exists",
                ref.attachment_id,
                ref.message_id,
            )
            continue
        attachment_text = _attachment_text(ref, payload)
        prepared.append(
            PreparedCandidate(
                candidate=_candidate(
                    mailbox_id,
                    message,
                    ref,
                    text="\n\n".join(filter(None, (header_text, attachment_text))),
                    stage=stage,
                ),
                payload=payload,
            )
        )

    if not documents and (only is None or None in only):
        prepared.append(
            PreparedCandidate(
                candidate=_candidate(mailbox_id, message, None, text=header_text, stage=stage)
            )
        )
    return prepared


def _load(
    load_attachment: AttachmentLoader, ref: AttachmentRef, settings: ExtractionSettings
) -> bytes | None:
    if ref.size is not None and ref.size > settings.max_attachment_bytes:
        LOGGER.debug(
            "Skipping download of %s (%s bytes exceeds limit)", ref.filename, ref.size
        )
        return None
    return load_attachment(ref)


def _attachment_text(ref: AttachmentRef, payload: bytes | None) -> str:
    if not payload:
        return ""
    filename = (ref.filename or "").lower()
    content_type = (ref.content_type or "").lower()
    if filename.endswith(".pdf") or content_type == "application/pdf":
        return extract_pdf_text(payload)
    if filename.endswith(".txt") or content_type.startswith("text/"):
        return payload.decode("utf-8", errors="replace")
    return ""


def _body_text(message: MailMessage) -> str:
    if message.body_text:
        return message.body_text[:_BODY_LIMIT]
    if message.body_html:
        return " ".join(_strip_html(message.body_html).split())[:_BODY_LIMIT]
    return ""


def _strip_html(payload: str) -> str:
    cleaned = []
    skip = False
    for char in payload:
        if char == "<":
            skip = True
            continue
        if char == ">":
            skip = False
            cleaned.append(" ")
            continue
        if not skip:
            cleaned.append(char)
    return "".join(cleaned)


def _candidate(
    mailbox_id: str,
    message: MailMessage,
    ref: AttachmentRef | None,
    *,
    text: str,
    stage: ChunkStage,
) -> CandidateDocument:
    return CandidateDocument(
        mailbox_id=mailbox_id,
        message_id=message.message_id,
        attachment_id=ref.attachment_id if ref else None,
        filename=ref.filename if ref else None,
        content_type=ref.content_type if ref else None,
        size=ref.size if ref else None,
        subject=message.subject,
        sender=message.sender,
        sender_name=message.sender_name,
        sent_at=message.sent_at,
        text=text,
        stage=stage,
        dedup_id=message.dedup_id,
    )


__all__ = [
    "AttachmentLoader",
    "PreparedCandidate",
    "candidate_ids",
    "is_document_attachment",
    "is_financial",
    "prepare_candidates",
]
