"""Model-backed extraction stage with schema validation and one repair retry."""

from __future__ import annotations

import json
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.config import ExtractionSettings
from ..core.models import ExtractedFields, ExtractionResult
from .candidates import PreparedCandidate
from .llm import LLMClient
from .prompts import build_extraction_prompt, build_repair_prompt
from .rules import RAW_TEXT_LIMIT

LOGGER = logging.getLogger(__name__)

_CURRENCY_ALIASES = {"₪": "ILS", "NIS": "ILS", "$": "USD", "€": "EUR"}


class SchemaInvalid(ValueError):
    """Model output could not be parsed into the extraction schema."""


class ExtractionSchema(BaseModel):
    """Structured fields the model must return."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    vendor: str = Field(min_length=1, description="Issuing business")
    amount: Decimal = Field(gt=0, description="Total charged")
    currency: str = Field(pattern=r"^[A-Z]{3}$", description="ISO 4217 code")
    issued_on: date = Field(alias="date", description="Document issue date")
    category: str | None = Field(default=None, description="Expense category")
    document_type: (
        Literal["invoice", "receipt", "subscription", "payment_confirmation"] | None
    ) = None
    confidence: float = Field(default=0.8, ge=0, le=1)

    @field_validator("vendor", mode="before")
    @classmethod
    def _strip_vendor(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("currency", mode="before")
    @classmethod
    def _normalise_currency(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        cleaned = value.strip()
        return _CURRENCY_ALIASES.get(cleaned.upper(), cleaned.upper())

    @field_validator("category", "document_type", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            cleaned = value.strip().lower()
            return cleaned or None
        return value

    def to_fields(self) -> ExtractedFields:
        return ExtractedFields(
            vendor=self.vendor,
            amount=self.amount,
            currency=self.currency,
            issued_on=self.issued_on,
            category=self.category,
            document_type=self.document_type,
        )


def parse_extraction(raw: str) -> ExtractionSchema:
    """Validate raw model output, raising :class:`SchemaInvalid` on any mismatch."""
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end < start:
        raise SchemaInvalid("output did not contain a JSON object")
    try:
        payload = json.loads(raw[start : end + 1])
    except json.JSONDecodeError as exc:
        raise SchemaInvalid(f"output was not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise SchemaInvalid("output JSON was not an object")
    try:
        return ExtractionSchema.model_validate(payload)
    except ValidationError as exc:
        raise SchemaInvalid(_summarise(exc)) from exc


class AiExtractionStage:
    """Second extraction stage; only sees candidates the rules could not resolve.

    Timeouts and provider failures propagate as :class:`~.llm.LLMError` so the
    caller can defer the candidate. Output that fails validation twice yields a
    ``needs_review`` result rather than an error.
    """

    def __init__(self, client: LLMClient, settings: ExtractionSettings) -> None:
        self._client = client
        self._settings = settings

    def extract(self, prepared: PreparedCandidate) -> ExtractionResult:
        candidate = prepared.candidate
        images: list[bytes] = []
        if prepared.is_image and self._within_size(prepared.payload):
            assert prepared.payload is not None
            images.append(prepared.payload)

        prompt = build_extraction_prompt(
            candidate, text=candidate.text, has_image=bool(images)
        )
        raw = self._client.generate(prompt, images=images)
        try:
            parsed = parse_extraction(raw)
        except SchemaInvalid as exc:
            LOGGER.info(
                "Model output for %s failed validation (%s); requesting repair",
                candidate.message_id,
                exc,
            )
            repaired = self._client.generate(build_repair_prompt(raw, str(exc)))
            try:
                parsed = parse_extraction(repaired)
            except SchemaInvalid as repair_exc:
                LOGGER.warning(
                    "Repair for %s still invalid (%s); marking for review",
                    candidate.message_id,
                    repair_exc,
                )
                return ExtractionResult(
                    fields=None,
                    source="ai",
                    confidence=0.0,
                    status="needs_review",
                    raw_text=candidate.text[:RAW_TEXT_LIMIT] or None,
                )

        return ExtractionResult(
            fields=parsed.to_fields(),
            source="ai",
            confidence=parsed.confidence,
            raw_text=candidate.text[:RAW_TEXT_LIMIT] or None,
        )

    def _within_size(self, payload: bytes | None) -> bool:
        if payload is None:
            return False
        size = len(payload)
        return (
            self._settings.min_attachment_bytes
            <= size
            <= self._settings.max_attachment_bytes
        )


def _summarise(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


__all__ = ["AiExtractionStage", "ExtractionSchema", "SchemaInvalid", "parse_extraction"]
