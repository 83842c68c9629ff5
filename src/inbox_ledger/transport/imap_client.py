"""IMAP transport adapter providing mailbox access."""

from __future__ import annotations

import imaplib
import logging
import re
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime
from types import TracebackType

from ..core.config import ImapSettings
from ..core.datetime_utils import ensure_utc
from ..core.errors import (
    AuthExpired,
    CursorExpired,
    MailSourceError,
    MessageNotFound,
    TransientError,
)
from ..core.interfaces import MailSource
from ..core.models import AttachmentRef, ChangeSet, Mailbox, MailMessage, TimeWindow
from ..ingestion.parser import EmailParser, ParsedMessage

LOGGER = logging.getLogger(__name__)

_INTERNALDATE_RE = re.compile(rb'UID (\d+).*?INTERNALDATE "([^"]+)"|INTERNALDATE "([^"]+)".*?UID (\d+)')
_STATUS_RE = re.compile(rb"(UIDNEXT|UIDVALIDITY) (\d+)")


class ImapError(MailSourceError):
    """Wrap low level IMAP errors with additional context."""


class ImapClient(MailSource):
    """Mail source backed by a single IMAP folder.

    Message identities are ``"<uidvalidity>:<uid>"`` so they stay stable for as
    long as the server keeps the folder's UIDVALIDITY. The change cursor uses the
    same shape, pointing at the highest UID already seen.
    """

    provider = "imap"

    def __init__(
        self,
        settings: ImapSettings,
        *,
        parser: EmailParser | None = None,
        on_auth_expired: Callable[[], None] | None = None,
        fetch_batch_size: int = 100,
    ) -> None:
        """Initialise the client with configuration settings."""
        self._settings = settings
        self._parser = parser or EmailParser()
        self._on_auth_expired = on_auth_expired
        self._fetch_batch_size = fetch_batch_size
        self._connection: imaplib.IMAP4 | imaplib.IMAP4_SSL | None = None
        self._uid_validity: int | None = None
        self.folder = settings.mailbox

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapClient:
        """Connect on entering a context manager scope."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure resources are released on context exit."""
        self.close()

    # Connection ----------------------------------------------------------------
    def connect(self) -> None:
        """Establish IMAP connection and select the configured folder."""
        if self._connection is not None:
            return

        username = self._settings.username
        password = self._settings.app_password
        if username is None or password is None:
            raise ImapError("IMAP credentials are not configured")

        with self._guard("connect"):
            if self._settings.use_ssl:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s via SSL",
                    self._settings.host,
                    self._settings.port,
                )
                connection: imaplib.IMAP4 | imaplib.IMAP4_SSL = imaplib.IMAP4_SSL(
                    self._settings.host, self._settings.port
                )
            else:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s without SSL",
                    self._settings.host,
                    self._settings.port,
                )
                connection = imaplib.IMAP4(self._settings.host, self._settings.port)

            LOGGER.debug("Authenticating as %s", username)
            connection.login(username, password)
            status, _ = connection.select(self.folder, readonly=True)
            if status != "OK":
                raise ImapError(f"Unable to select mailbox '{self.folder}'")
            _, validity = connection.response("UIDVALIDITY")
            self._connection = connection
            if validity and validity[0]:
                self._uid_validity = int(validity[0])

    def close(self) -> None:
        """Terminate the IMAP session cleanly."""
        if self._connection is None:
            return
        try:
            LOGGER.debug("Closing IMAP connection")
            self._connection.close()
        except imaplib.IMAP4.error:  # pragma: no cover - depends on server state
            LOGGER.debug("IMAP close raised; continuing with logout")
        finally:
            try:
                self._connection.logout()
            except imaplib.IMAP4.error:  # pragma: no cover
                LOGGER.debug("IMAP logout raised; suppressing during shutdown")
            self._connection = None

    # MailSource API --------------------------------------------------------------
    def list_message_ids(self, mailbox: Mailbox, window: TimeWindow) -> Iterator[str]:
        """Yield messages whose INTERNALDATE falls inside ``window``.

        SEARCH only has day granularity, so the day-aligned result is narrowed
        with each message's INTERNALDATE to keep adjacent windows disjoint.
        """
        connection = self._require_connection()
        validity = self._require_validity()
        since = _imap_date(window.start)
        before = _imap_date(window.end + timedelta(days=1))
        LOGGER.debug(
            "Searching %s for messages SINCE %s BEFORE %s", mailbox.id, since, before
        )
        with self._guard("search"):
            status, data = connection.uid(  # type: ignore[arg-type]
                "SEARCH", None, "SINCE", since, "BEFORE", before
            )
        if status != "OK":
            raise TransientError("Failed to search for message UIDs")
        raw_ids = data[0].split() if data and data[0] else []

        def generator() -> Iterator[str]:
            for batch in _chunked(raw_ids, self._fetch_batch_size):
                uid_set = b",".join(batch).decode()
                with self._guard("fetch dates"):
                    status_fetch, fetch_data = connection.uid(
                        "FETCH", uid_set, "(UID INTERNALDATE)"
                    )
                if status_fetch != "OK":
                    raise TransientError("Failed to fetch message dates")
                for uid, received in _parse_internaldates(fetch_data):
                    if window.contains(received):
                        yield f"{validity}:{uid}"

        return generator()

    def fetch_message(self, mailbox: Mailbox, message_id: str) -> MailMessage:
        """Fetch and parse a message by identity."""
        return self._fetch_parsed(message_id).message

    def fetch_attachment(self, mailbox: Mailbox, ref: AttachmentRef) -> bytes:
        """Download an attachment by re-reading its parent message."""
        parsed = self._fetch_parsed(ref.message_id)
        try:
            return parsed.payloads[ref.attachment_id]
        except KeyError as exc:
            raise MessageNotFound(
                f"Attachment {ref.attachment_id} missing from {ref.message_id}"
            ) from exc

    def current_cursor(self, mailbox: Mailbox) -> str:
        """Return ``"<uidvalidity>:<uidnext - 1>"`` for the selected folder."""
        connection = self._require_connection()
        with self._guard("status"):
            status, data = connection.status(self.folder, "(UIDNEXT UIDVALIDITY)")
        if status != "OK" or not data or not data[0]:
            raise TransientError("Failed to read folder status")
        values = {key.decode(): int(value) for key, value in _STATUS_RE.findall(data[0])}
        if "UIDNEXT" not in values or "UIDVALIDITY" not in values:
            raise ImapError("Folder status did not include UIDNEXT/UIDVALIDITY")
        self._uid_validity = values["UIDVALIDITY"]
        return f"{values['UIDVALIDITY']}:{values['UIDNEXT'] - 1}"

    def changes_since(self, mailbox: Mailbox, cursor: str) -> ChangeSet:
        """Return UIDs above the cursor; a UIDVALIDITY change expires the cursor."""
        connection = self._require_connection()
        validity, last_uid = _split_cursor(cursor)
        if validity != self._require_validity():
            raise CursorExpired(
                f"UIDVALIDITY changed from {validity} to {self._uid_validity}"
            )
        start_uid = last_uid + 1
        LOGGER.debug("Searching for messages from UID %s", start_uid)
        with self._guard("search"):
            status, data = connection.uid(  # type: ignore[arg-type]
                "SEARCH", None, f"{start_uid}:*"
            )
        if status != "OK":
            raise TransientError("Failed to search for new message UIDs")

        raw_ids = data[0].split() if data and data[0] else []
        # "N:*" always matches the highest UID, even when it is below N.
        uids = sorted(uid for uid in (int(raw) for raw in raw_ids) if uid > last_uid)
        newest = uids[-1] if uids else last_uid
        return ChangeSet(
            message_ids=tuple(f"{validity}:{uid}" for uid in uids),
            new_cursor=f"{validity}:{newest}",
        )

    def cursor_supersedes(self, candidate: str, current: str) -> bool:
        """Compare cursors; a new UIDVALIDITY always starts a fresh stream."""
        candidate_validity, candidate_uid = _split_cursor(candidate)
        current_validity, current_uid = _split_cursor(current)
        if candidate_validity != current_validity:
            return True
        return candidate_uid >= current_uid

    # Internal helpers ---------------------------------------------------------
    def _fetch_parsed(self, message_id: str) -> ParsedMessage:
        connection = self._require_connection()
        validity, uid = _split_cursor(message_id)
        if validity != self._require_validity():
            raise MessageNotFound(f"Message {message_id} belongs to a stale UIDVALIDITY")
        LOGGER.debug("Fetching RFC822 payload for UID %s", uid)
        with self._guard("fetch"):
            status, fetch_data = connection.uid("FETCH", str(uid), "(RFC822)")
        if status != "OK":
            raise TransientError(f"Failed to fetch message UID {uid}")
        payload = _extract_rfc822(fetch_data)
        if payload is None:
            raise MessageNotFound(f"No RFC822 payload returned for UID {uid}")
        return self._parser.parse(message_id, payload)

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Translate imaplib failures into the mail source error taxonomy."""
        try:
            yield
        except imaplib.IMAP4.abort as exc:
            self._connection = None
            raise TransientError(f"IMAP connection dropped during {operation}") from exc
        except imaplib.IMAP4.error as exc:
            if _is_auth_failure(exc):
                if self._on_auth_expired is not None:
                    self._on_auth_expired()
                raise AuthExpired(f"IMAP authentication failed during {operation}") from exc
            raise ImapError(f"IMAP error during {operation}: {exc}") from exc
        except OSError as exc:  # pragma: no cover - network dependent
            self._connection = None
            raise TransientError(f"Network error during {operation}") from exc

    def _require_connection(self) -> imaplib.IMAP4 | imaplib.IMAP4_SSL:
        if self._connection is None:
            raise ImapError("IMAP connection has not been established")
        return self._connection

    def _require_validity(self) -> int:
        if self._uid_validity is None:
            raise ImapError("UIDVALIDITY unknown; folder has not been selected")
        return self._uid_validity


def _is_auth_failure(exc: Exception) -> bool:
    text = str(exc).upper()
    return "AUTHENTICATIONFAILED" in text or "INVALID CREDENTIALS" in text


def _split_cursor(value: str) -> tuple[int, int]:
    validity, _, uid = value.partition(":")
    try:
        return int(validity), int(uid)
    except ValueError as exc:
        raise ImapError(f"Malformed IMAP identity '{value}'") from exc


def _imap_date(moment: datetime) -> str:
    return moment.strftime("%d-%b-%Y")


def _chunked(items: Iterable[bytes], size: int) -> Iterator[list[bytes]]:
    """Yield successive lists of ``size`` elements."""
    bucket: list[bytes] = []
    for item in items:
        bucket.append(item)
        if len(bucket) >= size:
            yield bucket
            bucket = []
    if bucket:
        yield bucket


def _parse_internaldates(
    fetch_data: list[tuple[bytes, bytes] | bytes],
) -> Iterator[tuple[int, datetime]]:
    for entry in fetch_data:
        line = entry[0] if isinstance(entry, tuple) else entry
        if not isinstance(line, bytes):
            continue
        match = _INTERNALDATE_RE.search(line)
        if match is None:
            continue
        uid_raw = match.group(1) or match.group(4)
        date_raw = match.group(2) or match.group(3)
        received = ensure_utc(parsedate_to_datetime(_to_rfc2822(date_raw.decode())))
        assert received is not None
        yield int(uid_raw), received


def _to_rfc2822(internaldate: str) -> str:
    """Turn ``17-Jul-1996 02:44:25 -0700`` into an RFC 2822 date string."""
    day_part, _, rest = internaldate.strip().partition(" ")
    day, month, year = day_part.split("-")
    return f"{int(day):02d} {month} {year} {rest}"


def _extract_rfc822(fetch_data: list[tuple[bytes, bytes] | bytes]) -> bytes | None:
    """Extract RFC822 payload from ``imaplib`` response chunks."""
    for entry in fetch_data:
        if isinstance(entry, tuple) and len(entry) == 2:
            return entry[1]
    return None


__all__ = [
    "ImapClient",
    "ImapError",
]
