"""Chunked, resumable deep scans of mailbox history."""

from .jobs import JobNotFound, ScanJobError, ScanJobService
from .partition import partition_range, scan_range
from .processor import ChunkOutcome, ChunkProcessor

__all__ = [
    "ChunkOutcome",
    "ChunkProcessor",
    "JobNotFound",
    "ScanJobError",
    "ScanJobService",
    "partition_range",
    "scan_range",
]
