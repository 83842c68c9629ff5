"""Command-line entry point for Inbox Ledger."""

from __future__ import annotations

import argparse
import logging
from contextlib import ExitStack
from pathlib import Path

from inbox_ledger.core import AppSettings, configure_logging, load_app_settings
from inbox_ledger.core.errors import MailSourceError
from inbox_ledger.core.interfaces import MailSource
from inbox_ledger.core.models import Mailbox, ScanJob
from inbox_ledger.extraction import AiExtractionStage, ExtractionPipeline, OllamaClient
from inbox_ledger.scanning import ChunkProcessor, ScanJobError, ScanJobService
from inbox_ledger.storage import SqliteStore
from inbox_ledger.sync import IncrementalSyncController, SyncError
from inbox_ledger.transport import GmailClient, ImapClient, RetryPolicy

LOGGER = logging.getLogger(__name__)

_JOB_COMMANDS = ("status", "pause", "resume", "cancel", "retry-failed")


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Inbox Ledger document scanner")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("info", help="Show configuration and registered mailboxes.")

    add_mailbox = commands.add_parser("add-mailbox", help="Register a mailbox.")
    add_mailbox.add_argument("provider", choices=["imap", "gmail"])
    add_mailbox.add_argument("account", help="Account address of the mailbox.")
    add_mailbox.add_argument("--business-id", default=None)

    start_scan = commands.add_parser("start-scan", help="Start a deep scan.")
    start_scan.add_argument("mailbox_id")
    start_scan.add_argument(
        "--years",
        type=int,
        default=None,
        help="History to cover (default: scan.range_years).",
    )

    for name, help_text in (
        ("advance-scan", "Advance active deep scans for one tick."),
        ("advance-sync", "Run one incremental sync tick."),
    ):
        tick = commands.add_parser(name, help=help_text)
        tick.add_argument(
            "--mailbox",
            dest="mailbox_id",
            default=None,
            help="Limit the tick to one mailbox (default: every mailbox).",
        )

    for name in _JOB_COMMANDS:
        job_command = commands.add_parser(name, help=f"{name.replace('-', ' ')} a scan job.")
        job_command.add_argument("job_id")
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return the exit code."""
    command = args.command or "info"
    with SqliteStore(settings.storage) as store:
        try:
            if command == "info":
                _show_info(settings, store)
            elif command == "add-mailbox":
                mailbox = store.add_mailbox(
                    args.provider, args.account, business_id=args.business_id
                )
                print(f"Mailbox {mailbox.id} ({mailbox.provider}:{mailbox.account})")
            elif command == "start-scan":
                job = _scan_service(settings, store, None).start_scan(
                    args.mailbox_id, args.years
                )
                _print_job(job)
            elif command == "advance-scan":
                return _advance_scans(settings, store, args.mailbox_id)
            elif command == "advance-sync":
                return _advance_syncs(settings, store, args.mailbox_id)
            else:
                _run_job_command(settings, store, command, args.job_id)
        except (ScanJobError, SyncError) as exc:
            print(f"Error: {exc}")
            return 1
    return 0


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    raise SystemExit(execute(args, settings))


def _show_info(settings: AppSettings, store: SqliteStore) -> None:
    print("Inbox Ledger is ready. Register a mailbox and start a scan to begin.")
    print(f"Database path: {settings.storage.db_path}")
    print(f"LLM: {settings.llm.model if settings.llm.enabled else 'disabled'}")
    mailboxes = store.list_mailboxes()
    if not mailboxes:
        print("No mailboxes registered.")
        return
    for mailbox in mailboxes:
        active = store.list_active_jobs(mailbox.id)
        state = f"active job {active[0].id} ({active[0].status})" if active else "idle"
        print(f"{mailbox.id}  {mailbox.provider:<5}  {mailbox.account}  {state}")


def _run_job_command(
    settings: AppSettings, store: SqliteStore, command: str, job_id: str
) -> None:
    service = _scan_service(settings, store, None)
    if command == "status":
        report = service.get_status(job_id)
        print(
            f"Job {report.job_id} [{report.status}]"
            f"{' (pause requested)' if report.pause_requested else ''}"
        )
        print(
            f"Chunks: {report.chunks_done}/{report.chunks_total} done, "
            f"{report.chunks_failed} failed, {report.chunks_in_progress} in progress"
        )
        print(f"Documents found: {report.documents_found}")
        for window in report.failed_windows:
            print(f"  failed window {window.start.date()} .. {window.end.date()}")
        if report.last_error:
            print(f"Last error: {report.last_error}")
        return
    handlers = {
        "pause": service.pause,
        "resume": service.resume,
        "cancel": service.cancel,
        "retry-failed": service.retry_failed,
    }
    _print_job(handlers[command](job_id))


def _advance_scans(settings: AppSettings, store: SqliteStore, mailbox_id: str | None) -> int:
    exit_code = 0
    for mailbox in _target_mailboxes(store, mailbox_id):
        if not store.list_active_jobs(mailbox.id):
            continue
        try:
            with ExitStack() as stack:
                source = stack.enter_context(_open_source(settings, mailbox))
                service = _scan_service(settings, store, source)
                for report in service.advance_mailbox(mailbox.id):
                    print(
                        f"Job {report.job_id} [{report.status}]: "
                        f"claimed {report.chunks_claimed}, "
                        f"completed {report.chunks_completed}, "
                        f"stopped: {report.stopped_reason}"
                    )
        except Exception:  # pylint: disable=broad-except
            LOGGER.error("Deep scan tick failed for mailbox %s", mailbox.id, exc_info=True)
            print(f"Mailbox {mailbox.id}: scan tick failed")
            exit_code = 1
    return exit_code


def _advance_syncs(settings: AppSettings, store: SqliteStore, mailbox_id: str | None) -> int:
    exit_code = 0
    for mailbox in _target_mailboxes(store, mailbox_id):
        try:
            with ExitStack() as stack:
                source = stack.enter_context(_open_source(settings, mailbox))
                controller = IncrementalSyncController(
                    store,
                    source,
                    _pipeline(settings, store),
                    settings=settings.sync,
                    extraction_settings=settings.extraction,
                    retry=RetryPolicy.from_settings(settings.retry),
                )
                report = controller.advance_sync(mailbox.id)
        except MailSourceError as exc:
            print(f"Mailbox {mailbox.id}: sync failed: {exc}")
            exit_code = 1
            continue
        except Exception:  # pylint: disable=broad-except
            LOGGER.error("Sync tick failed for mailbox %s", mailbox.id, exc_info=True)
            print(f"Mailbox {mailbox.id}: sync tick failed")
            exit_code = 1
            continue
        print(
            f"Mailbox {mailbox.id}: {report.changes} change(s), "
            f"{report.inserted} new, {report.upgraded} upgraded, "
            f"{report.unchanged} unchanged, {report.skipped} skipped; "
            f"cursor {'advanced' if report.cursor_advanced else 'kept'}"
            f"{' (fallback window)' if report.used_fallback else ''}"
        )
    return exit_code


def _target_mailboxes(store: SqliteStore, mailbox_id: str | None) -> list[Mailbox]:
    if mailbox_id is None:
        return store.list_mailboxes()
    mailbox = store.get_mailbox(mailbox_id)
    if mailbox is None:
        raise SyncError(f"Mailbox {mailbox_id} does not exist")
    return [mailbox]


def _open_source(settings: AppSettings, mailbox: Mailbox) -> ImapClient | GmailClient:
    """Return an unopened mail source; entering it connects."""
    if mailbox.provider == "gmail":
        return GmailClient(settings.gmail)
    if mailbox.provider == "imap":
        imap_settings = settings.imap
        if imap_settings.username is None:
            imap_settings = imap_settings.model_copy(update={"username": mailbox.account})
        return ImapClient(imap_settings)
    raise SyncError(f"Unsupported provider {mailbox.provider!r}")


def _pipeline(settings: AppSettings, store: SqliteStore) -> ExtractionPipeline:
    ai_stage = None
    if settings.llm.enabled and settings.llm.base_url and settings.llm.model:
        ai_stage = AiExtractionStage(OllamaClient(settings.llm), settings.extraction)
    return ExtractionPipeline(settings.extraction, ai_stage=ai_stage, repository=store)


def _scan_service(
    settings: AppSettings, store: SqliteStore, source: MailSource | None
) -> ScanJobService:
    """Build the scan service; control commands never touch the mail source."""
    processor = ChunkProcessor(
        store,
        source,  # type: ignore[arg-type]
        _pipeline(settings, store),
        scan_settings=settings.scan,
        extraction_settings=settings.extraction,
        retry=RetryPolicy.from_settings(settings.retry),
    )
    return ScanJobService(store, processor, settings.scan)


def _print_job(job: ScanJob) -> None:
    print(
        f"Job {job.id} for mailbox {job.mailbox_id}: {job.status} "
        f"({job.chunks_total} chunks, {job.range_start.date()} .. {job.range_end.date()})"
    )
    if job.last_error:
        print(f"Last error: {job.last_error}")


if __name__ == "__main__":
    main()
