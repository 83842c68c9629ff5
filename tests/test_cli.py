"""Tests for the command-line surface."""

from __future__ import annotations

from pathlib import Path

import pytest

from inbox_ledger.cli import build_parser, execute
from inbox_ledger.core.config import AppSettings, LlmSettings, StorageSettings
from inbox_ledger.storage import SqliteStore


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return AppSettings(
        storage=StorageSettings(db_path=tmp_path / "ledger.db"),
        llm=LlmSettings(enabled=False),
    )


def _run(settings: AppSettings, *argv: str) -> int:
    return execute(build_parser().parse_args(list(argv)), settings)


def _mailbox_id(settings: AppSettings) -> str:
    with SqliteStore(settings.storage) as store:
        (mailbox,) = store.list_mailboxes()
    return mailbox.id


def test_info_without_mailboxes(settings: AppSettings, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(settings) == 0

    output = capsys.readouterr().out
    assert "No mailboxes registered." in output
    assert "LLM: disabled" in output


def test_scan_lifecycle_commands(
    settings: AppSettings, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _run(settings, "add-mailbox", "imap", "owner@example.com") == 0
    mailbox_id = _mailbox_id(settings)

    assert _run(settings, "start-scan", mailbox_id, "--years", "1") == 0
    with SqliteStore(settings.storage) as store:
        (job,) = store.list_active_jobs(mailbox_id)
    assert job.status == "running"

    assert _run(settings, "pause", job.id) == 0
    assert _run(settings, "status", job.id) == 0
    assert _run(settings, "cancel", job.id) == 0

    output = capsys.readouterr().out
    assert f"Job {job.id} [paused]" in output
    assert "cancelled" in output


def test_invalid_job_transition_exits_with_error(
    settings: AppSettings, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _run(settings, "status", "no-such-job") == 1
    assert "Error:" in capsys.readouterr().out


def test_unknown_mailbox_for_sync(settings: AppSettings, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(settings, "advance-sync", "--mailbox", "missing") == 1
    assert "does not exist" in capsys.readouterr().out
