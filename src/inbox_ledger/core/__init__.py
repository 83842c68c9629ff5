"""Core utilities for configuration, logging, and shared domain types."""

from .config import AppSettings, ScanSettings, SyncSettings, load_app_settings
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "ScanSettings",
    "SyncSettings",
    "configure_logging",
    "load_app_settings",
]
