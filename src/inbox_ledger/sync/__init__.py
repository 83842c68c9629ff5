"""Incremental mailbox sync."""

from .controller import IncrementalSyncController, SyncError

__all__ = ["IncrementalSyncController", "SyncError"]
