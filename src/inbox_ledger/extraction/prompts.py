"""Prompt templates for LLM-driven document extraction."""

from __future__ import annotations

from textwrap import dedent

from ..core.models import CandidateDocument

_SCHEMA = dedent(
    """
    {
      "vendor": string,            # business that issued the document
      "amount": number,            # total charged, greater than zero
      "currency": string,          # ISO 4217 code such as ILS, USD or EUR
      "date": "YYYY-MM-DD",        # issue date of the document
      "category": string|null,     # expense category, e.g. software or utilities
      "document_type": "invoice"|"receipt"|"subscription"|"payment_confirmation"|null,
      "confidence": number         # between 0 and 1
    }
    """
).strip()

_EXTRACTION_TEMPLATE = dedent(
    """
    You extract financial documents (invoices, receipts) from business email.
    The text may be in English or Hebrew. Respond strictly with JSON using this schema:
    {schema}

    Do not include any additional keys or prose outside the JSON object.
    Use the total amount including tax. Prefer the date printed on the document.
    {image_line}
    Subject: {subject}
    From: {sender}
    Received: {received}
    Attachment: {attachment}

    Document text:
    {text}
    """
)

_REPAIR_TEMPLATE = dedent(
    """
    Your previous answer did not match the required JSON schema.
    Validation error: {error}

    Previous answer:
    {previous_output}

    Return ONLY corrected JSON matching this schema:
    {schema}
    """
)


def build_extraction_prompt(
    candidate: CandidateDocument, *, text: str, has_image: bool = False
) -> str:
    """Compose a JSON-only extraction prompt for one candidate document."""
    received = candidate.sent_at.date().isoformat() if candidate.sent_at else "(unknown)"
    image_line = (
        "The attached image is the document itself; read the values from it.\n"
        if has_image
        else ""
    )
    return _EXTRACTION_TEMPLATE.format(
        schema=_SCHEMA,
        image_line=image_line,
        subject=candidate.subject or "(no subject)",
        sender=candidate.sender_name or candidate.sender or "(unknown sender)",
        received=received,
        attachment=candidate.filename or "(message body)",
        text=text or "(no text layer)",
    ).strip()


def build_repair_prompt(previous_output: str, error: str) -> str:
    """Ask the model to fix output that failed schema validation."""
    return _REPAIR_TEMPLATE.format(
        schema=_SCHEMA, error=error, previous_output=previous_output
    ).strip()


__all__ = ["build_extraction_prompt", "build_repair_prompt"]
