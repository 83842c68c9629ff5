"""Deterministic pattern rules: the first, cheap extraction stage."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation

from ..core.models import (
    CandidateDocument,
    ExtractedFields,
    ExtractionResult,
    NeedsNextStage,
)

RAW_TEXT_LIMIT = 2000

SIGNAL_RE = re.compile(
    r"invoice|חשבונית|receipt|קבלה|payment|תשלום|billing|הזמנה|order|confirmation",
    re.IGNORECASE,
)
INVOICE_FILENAME_RE = re.compile(r"invoice|חשבונית|receipt|קבלה|bill|חשבון", re.IGNORECASE)

_NUMBER = r"(\d[\d,]*(?:\.\d+)?)"

# Ordered: explicit currency markers before the generic "total" fallbacks.
_AMOUNT_PATTERNS: tuple[tuple[re.Pattern[str], str | None], ...] = (
    (re.compile(r"(?:₪|ILS|NIS)\s*" + _NUMBER), "ILS"),
    (re.compile(_NUMBER + r"\s*(?:₪|ILS|NIS)"), "ILS"),
    (re.compile(r"\$\s*" + _NUMBER), "USD"),
    (re.compile(_NUMBER + r"\s*USD", re.IGNORECASE), "USD"),
    (re.compile(r"€\s*" + _NUMBER), "EUR"),
    (re.compile(_NUMBER + r"\s*EUR", re.IGNORECASE), "EUR"),
    (re.compile(r"סה\"כ[:\s]*" + _NUMBER), None),
    (re.compile(r"total[:\s]*" + _NUMBER, re.IGNORECASE), None),
)
_MAX_AMOUNT = Decimal("1000000")

_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_DAY_FIRST_DATE_RE = re.compile(r"\b(\d{1,2})[/.](\d{1,2})[/.](\d{4})\b")

_DOCUMENT_TYPES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"receipt|קבלה", re.IGNORECASE), "receipt"),
    (re.compile(r"subscription|מנוי", re.IGNORECASE), "subscription"),
    (re.compile(r"confirmation|אישור", re.IGNORECASE), "payment_confirmation"),
)


@dataclass(frozen=True)
class _CategoryRule:
    key: str
    keywords: tuple[str, ...] = ()


DEFAULT_CATEGORY_RULES: tuple[_CategoryRule, ...] = (
    _CategoryRule(
        key="software",
        keywords=(
            "subscription",
            "saas",
            "license",
            "github",
            "google workspace",
            "microsoft",
            "adobe",
            "slack",
            "zoom",
            "aws",
            "hosting",
            "מנוי",
        ),
    ),
    _CategoryRule(
        key="telecom",
        keywords=("mobile", "internet", "cellular", "partner", "cellcom", "bezeq", "סלולר"),
    ),
    _CategoryRule(
        key="utilities",
        keywords=("electricity", "water", "gas bill", "arnona", "חשמל", "מים", "ארנונה"),
    ),
    _CategoryRule(
        key="travel",
        keywords=(
            "flight",
            "hotel",
            "booking",
            "airline",
            "itinerary",
            "boarding",
            "טיסה",
            "מלון",
        ),
    ),
    _CategoryRule(
        key="transport",
        keywords=("uber", "gett", "taxi", "parking", "fuel", "דלק", "חניה", "מונית"),
    ),
    _CategoryRule(
        key="food",
        keywords=("restaurant", "wolt", "10bis", "cibus", "cafe", "מסעדה"),
    ),
    _CategoryRule(
        key="office",
        keywords=("office", "stationery", "printer", "furniture", "ציוד משרדי"),
    ),
    _CategoryRule(
        key="professional_services",
        keywords=("consulting", "accountant", "legal", "lawyer", "רואה חשבון", "עורך דין"),
    ),
    _CategoryRule(
        key="marketing",
        keywords=("advertising", "campaign", "facebook ads", "google ads", "פרסום"),
    ),
    _CategoryRule(
        key="insurance",
        keywords=("insurance", "policy premium", "ביטוח"),
    ),
)


def has_signal(text: str | None) -> bool:
    """Whether ``text`` carries an invoice, receipt, billing or payment keyword."""
    return bool(text) and SIGNAL_RE.search(text or "") is not None


def is_invoice_filename(filename: str | None) -> bool:
    return bool(filename) and INVOICE_FILENAME_RE.search(filename or "") is not None


def extract_amount(text: str) -> tuple[Decimal, str | None] | None:
    """Return the first plausible amount and its currency (``None`` if implied)."""
    for pattern, currency in _AMOUNT_PATTERNS:
        for match in pattern.finditer(text):
            raw = match.group(1).replace(",", "")
            try:
                value = Decimal(raw)
            except InvalidOperation:
                continue
            if Decimal("0") < value < _MAX_AMOUNT:
                return value, currency
    return None


def extract_date(text: str) -> date | None:
    """Return the first valid calendar date written in ``text``."""
    candidates: list[tuple[int, date]] = []
    for match in _ISO_DATE_RE.finditer(text):
        parsed = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if parsed is not None:
            candidates.append((match.start(), parsed))
            break
    for match in _DAY_FIRST_DATE_RE.finditer(text):
        parsed = _safe_date(int(match.group(3)), int(match.group(2)), int(match.group(1)))
        if parsed is not None:
            candidates.append((match.start(), parsed))
            break
    if not candidates:
        return None
    return min(candidates, key=lambda item: item[0])[1]


def detect_document_type(subject: str | None) -> str:
    for pattern, document_type in _DOCUMENT_TYPES:
        if subject and pattern.search(subject):
            return document_type
    return "invoice"


def guess_vendor(candidate: CandidateDocument) -> str | None:
    """Use the sender display name, falling back to the address local part."""
    if candidate.sender_name:
        return candidate.sender_name.strip()
    if candidate.sender:
        local = candidate.sender.split("@", 1)[0]
        cleaned = re.sub(r"[._-]+", " ", local).strip()
        return cleaned or None
    return None


def categorize(
    text: str, rules: Sequence[_CategoryRule] = DEFAULT_CATEGORY_RULES
) -> str | None:
    """Return the first category whose keywords appear in ``text``."""
    haystack = text.lower()
    for rule in rules:
        if _contains_keyword(rule.keywords, haystack):
            return rule.key
    return None


def deterministic_stage(
    candidate: CandidateDocument,
    *,
    min_confidence: float = 0.75,
    default_currency: str = "ILS",
) -> ExtractionResult | NeedsNextStage:
    """Extract vendor, amount and date with pattern rules.

    Resolves only when every required field matched and the confidence score
    reaches ``min_confidence``; anything else is handed to the next stage.
    """
    text = candidate.text or ""
    vendor = guess_vendor(candidate)
    amount_match = extract_amount(text)
    issued_on = extract_date(text)
    date_from_header = False
    if issued_on is None and candidate.sent_at is not None:
        issued_on = candidate.sent_at.date()
        date_from_header = True

    if vendor is None:
        return NeedsNextStage(reason="no vendor")
    if amount_match is None:
        return NeedsNextStage(reason="no amount")
    if issued_on is None:
        return NeedsNextStage(reason="no date")

    amount, currency = amount_match
    confidence = _score(candidate)
    if currency is None:
        confidence -= 0.05
    if date_from_header:
        confidence -= 0.05
    confidence = round(confidence, 2)
    if confidence < min_confidence:
        return NeedsNextStage(reason=f"confidence {confidence:.2f} below threshold")

    fields = ExtractedFields(
        vendor=vendor,
        amount=amount,
        currency=currency or default_currency,
        issued_on=issued_on,
        category=categorize(" ".join(filter(None, (vendor, candidate.subject, text)))),
        document_type=detect_document_type(candidate.subject),
    )
    return ExtractionResult(
        fields=fields,
        source="regex",
        confidence=confidence,
        raw_text=text[:RAW_TEXT_LIMIT] or None,
    )


def _score(candidate: CandidateDocument) -> float:
    signal = has_signal(candidate.subject)
    if signal and candidate.attachment_id is not None:
        return 0.85
    if signal:
        return 0.65
    return 0.45


def _safe_date(year: int, month: int, day: int) -> date | None:
    if year < 2000:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _contains_keyword(keywords: Iterable[str], haystack: str) -> bool:
    for keyword in keywords:
        if keyword in haystack:
            return True
    return False


__all__ = [
    "DEFAULT_CATEGORY_RULES",
    "RAW_TEXT_LIMIT",
    "categorize",
    "detect_document_type",
    "deterministic_stage",
    "extract_amount",
    "extract_date",
    "guess_vendor",
    "has_signal",
    "is_invoice_filename",
]
