"""Transport adapters for external mailbox providers."""

from .gmail_client import GmailClient, GmailError
from .imap_client import ImapClient, ImapError
from .retry import Deadline, RetryPolicy

__all__ = [
    "Deadline",
    "GmailClient",
    "GmailError",
    "ImapClient",
    "ImapError",
    "RetryPolicy",
]
