"""
Clock and time-bucket helpers.

Every component asks a Clock for "now" and uses normalize() to align
timestamps to window boundaries. Buckets are half-open [start, next_start)
intervals aligned to UTC wall time:
  • minute — floor to the minute
  • hour   — floor to the hour
  • day    — floor to midnight UTC
  • month  — floor to the 1st of the month, midnight UTC
"""

from __future__ import annotations

import datetime
import enum


class Window(str, enum.Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"


# Fixed-length windows only; month length depends on the calendar
WINDOW_SECONDS: dict[Window, int] = {
    Window.MINUTE: 60,
    Window.HOUR: 3_600,
    Window.DAY: 86_400,
}

# Rollup chain: each window rolls up into the next coarser one
COARSER: dict[Window, Window] = {
    Window.MINUTE: Window.HOUR,
    Window.HOUR: Window.DAY,
    Window.DAY: Window.MONTH,
}


def as_utc(ts: datetime.datetime) -> datetime.datetime:
    """Naive timestamps are taken to be UTC already."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=datetime.timezone.utc)
    return ts.astimezone(datetime.timezone.utc)


def normalize(ts: datetime.datetime, window: Window) -> datetime.datetime:
    """Return the start of the bucket of `window` that contains `ts`."""
    ts = as_utc(ts).replace(second=0, microsecond=0)
    if window is Window.MINUTE:
        return ts
    ts = ts.replace(minute=0)
    if window is Window.HOUR:
        return ts
    ts = ts.replace(hour=0)
    if window is Window.DAY:
        return ts
    return ts.replace(day=1)


def next_bucket(ts: datetime.datetime, window: Window) -> datetime.datetime:
    """Start of the bucket following the one that contains `ts`."""
    start = normalize(ts, window)
    if window is Window.MONTH:
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1)
        return start.replace(month=start.month + 1)
    return start + datetime.timedelta(seconds=WINDOW_SECONDS[window])


def previous_bucket(ts: datetime.datetime, window: Window) -> datetime.datetime:
    """Start of the bucket just before the one that contains `ts`."""
    start = normalize(ts, window)
    return normalize(start - datetime.timedelta(microseconds=1), window)


def window_seconds(window: Window, at: datetime.datetime) -> int:
    """Length in seconds of the bucket of `window` containing `at`."""
    if window in WINDOW_SECONDS:
        return WINDOW_SECONDS[window]
    return int((next_bucket(at, window) - normalize(at, window)).total_seconds())


def epoch_seconds(ts: datetime.datetime) -> int:
    return int(as_utc(ts).timestamp())


class Clock:
    """Wall clock in UTC. The only place that reads the system time."""

    def now(self) -> datetime.datetime:
        return datetime.datetime.now(datetime.timezone.utc)


class ManualClock(Clock):
    """Clock that only moves when told to; used for tests and replays."""

    def __init__(self, start: datetime.datetime) -> None:
        self._now = as_utc(start)

    def now(self) -> datetime.datetime:
        return self._now

    def set(self, ts: datetime.datetime) -> None:
        self._now = as_utc(ts)

    def advance(self, seconds: float = 0.0, **kwargs: float) -> datetime.datetime:
        self._now += datetime.timedelta(seconds=seconds, **kwargs)
        return self._now
