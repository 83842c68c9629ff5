"""Split a scan range into contiguous work windows."""

from __future__ import annotations

from datetime import datetime, timedelta

from ..core.datetime_utils import ensure_utc, subtract_years
from ..core.models import TimeWindow


def scan_range(now: datetime, years: int) -> TimeWindow:
    """Return the window covering the last ``years`` calendar years up to ``now``."""
    end = ensure_utc(now)
    assert end is not None
    return TimeWindow(start=subtract_years(end, years), end=end)


def partition_range(window: TimeWindow, window_days: int) -> list[TimeWindow]:
    """Partition ``window`` into ``window_days`` slices; the last one is clipped.

    Slices are half-open and contiguous, so every instant of the range falls in
    exactly one of them.
    """
    if window_days < 1:
        raise ValueError("window_days must be at least 1")
    if window.end <= window.start:
        return []
    step = timedelta(days=window_days)
    slices: list[TimeWindow] = []
    cursor = window.start
    while cursor < window.end:
        end = min(cursor + step, window.end)
        slices.append(TimeWindow(start=cursor, end=end))
        cursor = end
    return slices


__all__ = ["partition_range", "scan_range"]
