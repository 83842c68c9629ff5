"""Utilities for parsing raw RFC822 messages into structured models."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from ..core.datetime_utils import ensure_utc
from ..core.models import AttachmentRef, MailMessage


@dataclass(slots=True)
class ParsedMessage:
    """Normalised message plus the decoded bytes of each attachment."""

    message: MailMessage
    payloads: dict[str, bytes]


class EmailParser:
    """Convert raw email payloads into normalised messages."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse(self, message_id: str, payload: bytes) -> ParsedMessage:
        """Parse raw RFC822 bytes into a :class:`ParsedMessage`."""
        message = self._parser.parsebytes(payload)
        sender_name, sender = _first_address(message.get("From"))
        body_text, body_html = _extract_bodies(message)

        refs: list[AttachmentRef] = []
        payloads: dict[str, bytes] = {}
        for attachment_id, part in _iter_attachments(message):
            data = part.get_payload(decode=True) or b""
            refs.append(
                AttachmentRef(
                    message_id=message_id,
                    attachment_id=attachment_id,
                    filename=part.get_filename(),
                    content_type=part.get_content_type(),
                    size=len(data) if data else None,
                )
            )
            payloads[attachment_id] = data

        return ParsedMessage(
            message=MailMessage(
                message_id=message_id,
                subject=message.get("Subject"),
                sender=sender,
                sender_name=sender_name,
                sent_at=_try_parse_datetime(message.get("Date")),
                body_text=body_text,
                body_html=body_html,
                attachments=tuple(refs),
                dedup_id=_message_identity(message.get("Message-ID")),
            ),
            payloads=payloads,
        )


def _first_address(header_value: str | None) -> tuple[str | None, str | None]:
    if header_value is None:
        return None, None
    for display_name, email_address in getaddresses([header_value]):
        if email_address:
            return display_name.strip() or None, email_address
    return None, None


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        try:
            content_obj = part.get_content()
        except LookupError:
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain_chunks.append(content)
        elif content_type == "text/html":
            html_chunks.append(content)

    text = _collapse_chunks(plain_chunks, "\n\n")
    html = _collapse_chunks(html_chunks, "\n")
    return text, html


def _iter_attachments(message: EmailMessage) -> Iterator[tuple[str, EmailMessage]]:
    """Yield attachments keyed by their position, which is stable per message."""
    for index, part in enumerate(message.iter_attachments()):
        yield f"part-{index}", part


def _message_identity(header_value: str | None) -> str | None:
    if not header_value:
        return None
    identity = str(header_value).strip().strip("<>").strip()
    return identity or None


def _try_parse_datetime(header_value: str | None) -> datetime | None:
    if header_value is None:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(header_value))
    except (TypeError, ValueError):
        return None


__all__ = ["EmailParser", "ParsedMessage"]
