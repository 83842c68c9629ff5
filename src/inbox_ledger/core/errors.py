"""Failure taxonomy shared by mail sources and their callers."""

from __future__ import annotations


class MailSourceError(RuntimeError):
    """Base class for errors raised by mail source adapters."""


class AuthExpired(MailSourceError):
    """Credentials were rejected; the credential collaborator must refresh them."""


class RateLimited(MailSourceError):
    """The provider asked us to slow down.

    ``retry_after`` is the provider's delay hint in seconds, when it sent one.
    """

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class MessageNotFound(MailSourceError):
    """A message or attachment vanished between discovery and fetch."""


class TransientError(MailSourceError):
    """Network failure or provider 5xx; safe to retry."""


class CursorExpired(MailSourceError):
    """The stored change cursor is older than the provider's history window."""


__all__ = [
    "AuthExpired",
    "CursorExpired",
    "MailSourceError",
    "MessageNotFound",
    "RateLimited",
    "TransientError",
]
