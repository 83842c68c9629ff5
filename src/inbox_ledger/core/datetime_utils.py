"""Datetime helpers shared across the application."""

from __future__ import annotations

from datetime import UTC, date, datetime

__all__ = [
    "ensure_utc",
    "parse_date",
    "parse_datetime",
    "serialize_date",
    "serialize_datetime",
    "subtract_years",
    "utc_now",
]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` converted to UTC; naive values are assumed to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def serialize_datetime(value: datetime | None) -> str | None:
    """Serialise ``value`` to a sortable UTC ISO 8601 string."""
    if value is None:
        return None
    normalised = ensure_utc(value)
    assert normalised is not None
    return normalised.isoformat(timespec="microseconds")


def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO 8601 string into an aware UTC ``datetime``."""
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def serialize_date(value: date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def parse_date(value: str | None) -> date | None:
    if value is None:
        return None
    return date.fromisoformat(value)


def subtract_years(value: datetime, years: int) -> datetime:
    """Return ``value`` moved back ``years`` calendar years (Feb 29 -> Feb 28)."""
    try:
        return value.replace(year=value.year - years)
    except ValueError:
        return value.replace(year=value.year - years, day=28)
