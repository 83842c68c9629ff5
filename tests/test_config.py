"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from inbox_ledger.core.config import load_app_settings


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    """Ensure each test sees a fresh settings instance."""

    load_app_settings.cache_clear()


def test_defaults_loaded_without_env_file() -> None:
    """Default values should be returned when no overrides are present."""

    settings = load_app_settings(include_environment=False)
    assert settings.imap.host == "imap.gmail.com"
    assert settings.storage.db_path == Path("./inbox_ledger.db")
    assert settings.scan.range_years == 3
    assert settings.scan.window_days == 30
    assert settings.scan.max_attempts == 3
    assert settings.sync.fallback_days == 14
    assert settings.extraction.min_confidence == 0.75
    assert settings.extraction.default_currency == "ILS"


def test_env_file_overrides(tmp_path: Path) -> None:
    """Values defined in an env file should override defaults."""

    env_file = tmp_path / "test.env"
    env_file.write_text(
        "INBOX_LEDGER_IMAP__HOST=imap.example.com\n"
        "INBOX_LEDGER_SCAN__WINDOW_DAYS=7\n"
        "INBOX_LEDGER_LLM__ENABLED=false\n"
        "UNRELATED_KEY=ignored\n",
        encoding="utf-8",
    )

    settings = load_app_settings(env_file=env_file, include_environment=False)
    assert settings.imap.host == "imap.example.com"
    assert settings.scan.window_days == 7
    assert settings.llm.enabled is False


def test_environment_wins_over_env_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / "test.env"
    env_file.write_text("INBOX_LEDGER_SYNC__FALLBACK_DAYS=10\n", encoding="utf-8")
    monkeypatch.setenv("INBOX_LEDGER_SYNC__FALLBACK_DAYS", "21")

    settings = load_app_settings(env_file=env_file)
    assert settings.sync.fallback_days == 21


def test_invalid_values_are_rejected(tmp_path: Path) -> None:
    env_file = tmp_path / "test.env"
    env_file.write_text("INBOX_LEDGER_SCAN__WINDOW_DAYS=0\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_app_settings(env_file=env_file, include_environment=False)
