"""Persistence layer for scan state, documents and sync cursors."""

from .sqlite import DuplicateActiveJob, SqliteStore, StorageError

__all__ = ["DuplicateActiveJob", "SqliteStore", "StorageError"]
