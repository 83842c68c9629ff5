"""Compose the extraction stages and apply per-mailbox vendor categories."""

from __future__ import annotations

import logging
from dataclasses import replace

from ..core.config import ExtractionSettings
from ..core.interfaces import DocumentRepository
from ..core.models import ExtractionResult, NeedsNextStage
from .ai import AiExtractionStage
from .candidates import PreparedCandidate
from .rules import RAW_TEXT_LIMIT, deterministic_stage

LOGGER = logging.getLogger(__name__)


class ExtractionPipeline:
    """Run rules first and the model only for what the rules left unresolved.

    Stages never call each other; this class is the only place they are
    chained. Without an AI stage, unresolved candidates become
    ``needs_review`` records.
    """

    def __init__(
        self,
        settings: ExtractionSettings,
        *,
        ai_stage: AiExtractionStage | None = None,
        repository: DocumentRepository | None = None,
    ) -> None:
        self._settings = settings
        self._ai_stage = ai_stage
        self._repository = repository

    @property
    def has_ai(self) -> bool:
        return self._ai_stage is not None

    def run_rules(self, prepared: PreparedCandidate) -> ExtractionResult | NeedsNextStage:
        outcome = deterministic_stage(
            prepared.candidate,
            min_confidence=self._settings.min_confidence,
            default_currency=self._settings.default_currency,
        )
        if isinstance(outcome, NeedsNextStage):
            LOGGER.debug(
                "Rules deferred %s/%s: %s",
                prepared.candidate.message_id,
                prepared.candidate.attachment_id,
                outcome.reason,
            )
            return outcome
        return self._with_vendor_category(prepared, outcome)

    def run_ai(self, prepared: PreparedCandidate) -> ExtractionResult:
        """Run the model stage; LLM failures propagate to the caller."""
        if self._ai_stage is None:
            return self.review_result(prepared)
        return self._with_vendor_category(prepared, self._ai_stage.extract(prepared))

    def extract(self, prepared: PreparedCandidate) -> ExtractionResult:
        """Full pipeline for a single candidate."""
        outcome = self.run_rules(prepared)
        if isinstance(outcome, ExtractionResult):
            return outcome
        return self.run_ai(prepared)

    def review_result(self, prepared: PreparedCandidate) -> ExtractionResult:
        """Placeholder result for a candidate no stage could resolve."""
        text = prepared.candidate.text
        return ExtractionResult(
            fields=None,
            source="ai",
            confidence=0.0,
            status="needs_review",
            raw_text=text[:RAW_TEXT_LIMIT] or None,
        )

    def _with_vendor_category(
        self, prepared: PreparedCandidate, result: ExtractionResult
    ) -> ExtractionResult:
        if self._repository is None or result.fields is None or not result.fields.vendor:
            return result
        category = self._repository.get_vendor_category(
            prepared.candidate.mailbox_id, result.fields.vendor
        )
        if category is None or category == result.fields.category:
            return result
        return replace(result, fields=replace(result.fields, category=category))


__all__ = ["ExtractionPipeline"]
