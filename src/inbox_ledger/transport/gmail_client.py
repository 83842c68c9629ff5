"""Gmail REST adapter built on httpx."""

from __future__ import annotations

import base64
import logging
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

import httpx

from ..core.config import GmailSettings
from ..core.datetime_utils import ensure_utc
from ..core.errors import (
    AuthExpired,
    CursorExpired,
    MailSourceError,
    MessageNotFound,
    RateLimited,
    TransientError,
)
from ..core.interfaces import MailSource
from ..core.models import AttachmentRef, ChangeSet, Mailbox, MailMessage, TimeWindow

LOGGER = logging.getLogger(__name__)

_PAGE_SIZE = 100


class GmailError(MailSourceError):
    """Raised for Gmail responses outside the retryable taxonomy."""


class GmailClient(MailSource):
    """Mail source backed by the Gmail REST API.

    ``token_provider`` returns the current OAuth access token; refreshing it is
    the caller's concern and is triggered by :class:`AuthExpired`.
    """

    provider = "gmail"

    def __init__(
        self,
        settings: GmailSettings,
        *,
        token_provider: Callable[[], str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._token_provider = token_provider or self._static_token
        self._client = httpx.Client(
            base_url=settings.base_url.rstrip("/") + "/",
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    def __enter__(self) -> GmailClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # MailSource API --------------------------------------------------------------
    def list_message_ids(self, mailbox: Mailbox, window: TimeWindow) -> Iterator[str]:
        """Page through messages matching the financial query inside ``window``."""
        query = (
            f"after:{int(window.start.timestamp())} "
            f"before:{int(window.end.timestamp())}"
        )
        if self._settings.query:
            query = f"{query} ({self._settings.query})"

        def generator() -> Iterator[str]:
            page_token: str | None = None
            while True:
                params: dict[str, Any] = {"q": query, "maxResults": _PAGE_SIZE}
                if page_token:
                    params["pageToken"] = page_token
                data = self._get_json("users/me/messages", params=params)
                for entry in data.get("messages", []):
                    yield str(entry["id"])
                page_token = data.get("nextPageToken")
                if not page_token:
                    return

        return generator()

    def fetch_message(self, mailbox: Mailbox, message_id: str) -> MailMessage:
        data = self._get_json(
            f"users/me/messages/{message_id}", params={"format": "full"}
        )
        return _parse_message(message_id, data)

    def fetch_attachment(self, mailbox: Mailbox, ref: AttachmentRef) -> bytes:
        data = self._get_json(
            f"users/me/messages/{ref.message_id}/attachments/{ref.attachment_id}"
        )
        encoded = data.get("data")
        if not isinstance(encoded, str):
            raise GmailError(f"Attachment {ref.attachment_id} has no data")
        return _decode_base64url(encoded)

    def current_cursor(self, mailbox: Mailbox) -> str:
        data = self._get_json("users/me/profile")
        history_id = data.get("historyId")
        if history_id is None:
            raise GmailError("Profile response missing historyId")
        return str(history_id)

    def changes_since(self, mailbox: Mailbox, cursor: str) -> ChangeSet:
        """Collect messages added since ``cursor`` from the history API."""
        message_ids: list[str] = []
        seen: set[str] = set()
        newest = cursor
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "startHistoryId": cursor,
                "historyTypes": "messageAdded",
                "maxResults": _PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            data = self._get_json("users/me/history", params=params, history=True)
            for record in data.get("history", []):
                for added in record.get("messagesAdded", []):
                    message_id = str(added["message"]["id"])
                    if message_id not in seen:
                        seen.add(message_id)
                        message_ids.append(message_id)
            if data.get("historyId") is not None:
                newest = str(data["historyId"])
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return ChangeSet(message_ids=tuple(message_ids), new_cursor=newest)

    def cursor_supersedes(self, candidate: str, current: str) -> bool:
        return int(candidate) >= int(current)

    # Internal helpers ---------------------------------------------------------
    def _static_token(self) -> str:
        if not self._settings.access_token:
            raise AuthExpired("No Gmail access token configured")
        return self._settings.access_token

    def _get_json(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        history: bool = False,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._token_provider()}"}
        try:
            response = self._client.get(path, params=params, headers=headers)
        except httpx.TransportError as exc:
            raise TransientError(f"Gmail request to {path} failed: {exc}") from exc
        _raise_for_status(response, history=history)
        try:
            return response.json()
        except ValueError as exc:
            raise TransientError(f"Gmail returned invalid JSON for {path}") from exc


def _raise_for_status(response: httpx.Response, *, history: bool) -> None:
    status = response.status_code
    if status < 400:
        return
    LOGGER.debug("Gmail responded %s: %s", status, response.text[:200])
    if status == 401:
        raise AuthExpired("Gmail rejected the access token")
    if status == 429 or (status == 403 and _is_rate_limit(response)):
        raise RateLimited(
            f"Gmail rate limited the request ({status})",
            retry_after=_retry_after(response),
        )
    if status == 404:
        if history:
            raise CursorExpired("Gmail history id is no longer available")
        raise MessageNotFound("Gmail resource not found")
    if status >= 500:
        raise TransientError(f"Gmail server error {status}")
    raise GmailError(f"Gmail request failed with status {status}")


def _is_rate_limit(response: httpx.Response) -> bool:
    try:
        errors = response.json().get("error", {}).get("errors", [])
    except ValueError:
        return False
    return any(
        entry.get("reason") in {"rateLimitExceeded", "userRateLimitExceeded"}
        for entry in errors
    )


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        moment = ensure_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        return None
    if moment is None:
        return None
    return max((moment - datetime.now(UTC)).total_seconds(), 0.0)


def _decode_base64url(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded)


def _parse_message(message_id: str, data: dict[str, Any]) -> MailMessage:
    payload = data.get("payload", {})
    headers = {
        header["name"].lower(): header["value"] for header in payload.get("headers", [])
    }
    sender_name: str | None = None
    sender: str | None = None
    for display_name, address in getaddresses([headers.get("from", "")]):
        if address:
            sender_name, sender = display_name.strip() or None, address
            break

    plain_chunks: list[str] = []
    html_chunks: list[str] = []
    attachments: list[AttachmentRef] = []
    for part in _walk_parts(payload):
        body = part.get("body", {})
        filename = part.get("filename") or None
        mime_type = part.get("mimeType", "")
        if body.get("attachmentId"):
            attachments.append(
                AttachmentRef(
                    message_id=message_id,
                    attachment_id=body["attachmentId"],
                    filename=filename,
                    content_type=mime_type or None,
                    size=body.get("size"),
                )
            )
            continue
        if "data" not in body or filename:
            continue
        text = _decode_base64url(body["data"]).decode("utf-8", errors="replace").strip()
        if mime_type == "text/plain":
            plain_chunks.append(text)
        elif mime_type == "text/html":
            html_chunks.append(text)

    sent_at: datetime | None = None
    if data.get("internalDate"):
        sent_at = datetime.fromtimestamp(int(data["internalDate"]) / 1000, tz=UTC)
    elif headers.get("date"):
        try:
            sent_at = ensure_utc(parsedate_to_datetime(headers["date"]))
        except (TypeError, ValueError):
            sent_at = None

    return MailMessage(
        message_id=message_id,
        subject=headers.get("subject"),
        sender=sender,
        sender_name=sender_name,
        sent_at=sent_at,
        body_text="\n\n".join(chunk for chunk in plain_chunks if chunk) or None,
        body_html="\n".join(chunk for chunk in html_chunks if chunk) or None,
        attachments=tuple(attachments),
    )


def _walk_parts(part: dict[str, Any]) -> Iterator[dict[str, Any]]:
    children = part.get("parts")
    if not children:
        yield part
        return
    for child in children:
        yield from _walk_parts(child)


__all__ = ["GmailClient", "GmailError"]
