"""Logging configuration helpers."""

from __future__ import annotations

import logging
import logging.config
from typing import Any

from .config import LoggingSettings

# Chatty third-party loggers kept at WARNING unless the root is stricter.
_NOISY_LOGGERS = ("httpx", "httpcore")


def _structured_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for single-line JSON logs."""
    return {
        "format": (
            '{{"ts": "{asctime}", "level": "{levelname}", '
            '"logger": "{name}", "message": "{message}"}}'
        ),
        "style": "{",
    }


def _plain_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for human readable logs."""
    return {
        "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
    }


def configure_logging(settings: LoggingSettings) -> None:
    """Configure application logging according to provided settings."""
    formatter = _structured_formatter() if settings.structured else _plain_formatter()
    level = settings.level.upper()
    numeric_level = logging.getLevelName(level)
    quiet_level = (
        level
        if isinstance(numeric_level, int) and numeric_level > logging.WARNING
        else "WARNING"
    )

    dict_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": formatter,
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": level,
            },
        },
        "loggers": {name: {"level": quiet_level} for name in _NOISY_LOGGERS},
        "root": {
            "handlers": ["console"],
            "level": level,
        },
    }

    logging.config.dictConfig(dict_config)


__all__ = ["configure_logging"]
