"""Text-layer extraction for PDF attachments."""

from __future__ import annotations

import logging
from io import BytesIO

from pypdf import PdfReader
from pypdf.errors import PdfReadError

LOGGER = logging.getLogger(__name__)


def looks_like_pdf(payload: bytes) -> bool:
    """Check the ``%PDF`` magic, tolerating a BOM and leading whitespace."""
    if not payload:
        return False
    head = payload.lstrip()
    if head.startswith(b"\xef\xbb\xbf"):
        head = head[3:].lstrip()
    return head.startswith(b"%PDF")


def extract_pdf_text(payload: bytes, *, max_pages: int = 10) -> str:
    """Return the concatenated text layer of the first ``max_pages`` pages.

    Scanned PDFs without a text layer yield an empty string; those are left for
    the model to read.
    """
    if not looks_like_pdf(payload):
        return ""
    try:
        reader = PdfReader(BytesIO(payload))
        pages: list[str] = []
        for page in reader.pages[:max_pages]:
            text = (page.extract_text() or "").replace("\u202f", " ").replace("\xa0", " ")
            if text.strip():
                pages.append(text.strip())
    except (PdfReadError, ValueError, KeyError) as exc:
        LOGGER.debug("Unable to read PDF text layer: %s", exc)
        return ""
    return "\n\n".join(pages)


__all__ = ["extract_pdf_text", "looks_like_pdf"]
