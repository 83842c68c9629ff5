"""Two-stage document extraction: pattern rules, then a vision/text model."""

from .ai import AiExtractionStage, ExtractionSchema, SchemaInvalid
from .candidates import PreparedCandidate, is_financial, prepare_candidates
from .llm import LLMClient, LLMError, LLMTimeout, OllamaClient
from .merge import dedup_key, merge_result
from .pipeline import ExtractionPipeline
from .rules import deterministic_stage

__all__ = [
    "AiExtractionStage",
    "ExtractionPipeline",
    "ExtractionSchema",
    "LLMClient",
    "LLMError",
    "LLMTimeout",
    "OllamaClient",
    "PreparedCandidate",
    "SchemaInvalid",
    "dedup_key",
    "deterministic_stage",
    "is_financial",
    "merge_result",
    "prepare_candidates",
]
