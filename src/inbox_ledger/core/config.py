"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field


class ImapSettings(BaseModel):
    """Settings controlling IMAP connectivity."""

    host: str = Field(default="imap.gmail.com", description="IMAP hostname")
    port: int = Field(default=993, description="IMAP port, typically 993 for SSL")
    username: str | None = Field(default=None, description="Account username")
    app_password: str | None = Field(default=None, description="Gmail app password")
    mailbox: str = Field(default="INBOX", description="Folder scanned for documents")
    use_ssl: bool = Field(default=True, description="Whether to enforce SSL")


class GmailSettings(BaseModel):
    """Settings for the Gmail REST adapter."""

    base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1",
        description="Gmail API root",
    )
    access_token: str | None = Field(
        default=None, description="Bearer token supplied by the OAuth collaborator"
    )
    timeout_seconds: float = Field(default=20.0, gt=0, description="HTTP timeout")
    query: str = Field(
        default=(
            "has:attachment OR subject:(invoice OR receipt OR payment OR billing "
            "OR חשבונית OR קבלה OR תשלום OR הזמנה)"
        ),
        description="Search expression narrowing discovery to likely documents",
    )


class LlmSettings(BaseModel):
    """Settings for the extraction model provider."""

    base_url: str = Field(
        default="http://localhost:11434", description="Ollama server URL"
    )
    model: str = Field(default="llama3.2-vision", description="Model identifier")
    timeout_seconds: int = Field(
        default=30, description="Request timeout for LLM calls"
    )
    temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Sampling temperature for LLM completions",
    )
    max_output_tokens: int | None = Field(
        default=512,
        ge=32,
        description="Maximum tokens to request from the provider",
    )
    enabled: bool = Field(
        default=True, description="Run the AI stage for unresolved candidates"
    )


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./inbox_ledger.db"), description="SQLite database path"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class ScanSettings(BaseModel):
    """Settings for the chunked deep scan."""

    range_years: int = Field(default=3, ge=1, description="History covered by a scan")
    window_days: int = Field(default=30, ge=1, description="Days per work chunk")
    max_attempts: int = Field(
        default=3, ge=1, description="Claims allowed before a chunk is failed"
    )
    lease_seconds: int = Field(
        default=300, ge=1, description="Claim lease before a chunk can be reclaimed"
    )
    chunks_per_claim: int = Field(
        default=1, ge=1, description="Chunks claimed in one atomic step"
    )
    time_budget_seconds: float = Field(
        default=22.0, gt=0, description="Work budget for one scheduler tick"
    )
    retry_delay_seconds: float = Field(
        default=30.0, ge=0, description="Base delay before a failed chunk is retried"
    )


class SyncSettings(BaseModel):
    """Settings for incremental sync."""

    fallback_days: int = Field(
        default=14, ge=1, description="Window re-discovered when the cursor expires"
    )
    time_budget_seconds: float = Field(
        default=22.0, gt=0, description="Work budget for one sync tick"
    )


class RetrySettings(BaseModel):
    """Backoff applied to adapter calls."""

    max_attempts: int = Field(default=4, ge=1, description="Calls per operation")
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)


class ExtractionSettings(BaseModel):
    """Thresholds for the extraction pipeline."""

    min_confidence: float = Field(
        default=0.75,
        ge=0.0,
        le=1.0,
        description="Deterministic results below this go to the AI stage",
    )
    min_attachment_bytes: int = Field(
        default=5_000, ge=0, description="Smaller attachments are logos/signatures"
    )
    max_attachment_bytes: int = Field(
        default=2_000_000, ge=1, description="Larger attachments are skipped"
    )
    max_ai_attempts: int = Field(
        default=2, ge=1, description="Deferrals before a candidate needs review"
    )
    default_currency: str = Field(default="ILS", min_length=3, max_length=3)


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    imap: ImapSettings = Field(default_factory=ImapSettings)
    gmail: GmailSettings = Field(default_factory=GmailSettings)
    llm: LlmSettings = Field(default_factory=LlmSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    scan: ScanSettings = Field(default_factory=ScanSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)


ENV_PREFIX = "INBOX_LEDGER_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _coerce(value: Any) -> Any:
    if isinstance(value, str) and value == "":
        return None
    if isinstance(value, str):
        lowercase_value = value.lower()
        if lowercase_value == "true":
            return True
        if lowercase_value == "false":
            return False
    return value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        _merge_into_tree(collected, path, _coerce(value))

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment=include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "ExtractionSettings",
    "GmailSettings",
    "ImapSettings",
    "LlmSettings",
    "LoggingSettings",
    "RetrySettings",
    "ScanSettings",
    "StorageSettings",
    "SyncSettings",
    "load_app_settings",
]
