"""Pure slot arithmetic. Nothing here touches a database or a cache."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Iterable, Iterator, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

Interval = Tuple[datetime, datetime]


@dataclass(frozen=True)
class Slot:
    provider_id: str
    location_id: str
    start_ts: datetime
    end_ts: datetime


@dataclass(frozen=True)
class WeeklyPattern:
    """Weekly wall-clock hours. ``weekday`` and the times are read in ``timezone``."""

    weekday: int  # 0=Monday ... 6=Sunday
    start_time: time
    end_time: time
    effective_from: Optional[date] = None
    effective_until: Optional[date] = None
    timezone: str = "UTC"

    def problems(self) -> List[str]:
        out = []
        if not 0 <= self.weekday <= 6:
            out.append("weekday must be between 0 (Monday) and 6 (Sunday)")
        if self.start_time >= self.end_time:
            out.append("start_time must be before end_time")
        if self.effective_from and self.effective_until and self.effective_from > self.effective_until:
            out.append("effective_from must not be after effective_until")
        if zone_or_none(self.timezone) is None:
            out.append(f"unknown timezone {self.timezone!r}")
        return out

    def active_between(self, start: date, end: date) -> Optional[Tuple[date, date]]:
        """Clip [start, end] to the pattern's effective dates, or None if disjoint."""
        first = max(start, self.effective_from) if self.effective_from else start
        last = min(end, self.effective_until) if self.effective_until else end
        if first > last:
            return None
        return first, last


def zone_or_none(name: str) -> Optional[ZoneInfo]:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        return None


def _utc_wall(day: date, at: time, zone: ZoneInfo) -> datetime:
    local = datetime.combine(day, at, tzinfo=zone)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


@lru_cache(maxsize=4096)
def expand_pattern(pattern: WeeklyPattern, window_start: date, window_end: date) -> Tuple[Interval, ...]:
    """
    Materialize a weekly pattern into naive UTC intervals touching the UTC
    days [window_start, window_end].

    Patterns are immutable values, so an edited block produces a new cache
    key instead of invalidating an old one.
    """
    if pattern.problems():
        return ()
    # A local day can start on the UTC day before or after the window edge.
    span = pattern.active_between(window_start - timedelta(days=1), window_end + timedelta(days=1))
    if span is None:
        return ()
    first, last = span
    zone = ZoneInfo(pattern.timezone)
    lower = datetime.combine(window_start, time.min)
    upper = datetime.combine(window_end + timedelta(days=1), time.min)

    day = first + timedelta(days=(pattern.weekday - first.weekday()) % 7)
    out = []
    while day <= last:
        start = _utc_wall(day, pattern.start_time, zone)
        end = _utc_wall(day, pattern.end_time, zone)
        if overlaps(start, end, lower, upper):
            out.append((start, end))
        day += timedelta(days=7)
    return tuple(out)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open [start, end) intersection test."""
    return a_start < b_end and b_start < a_end


def subtract_intervals(base: Interval, cuts: Iterable[Interval]) -> List[Interval]:
    """Remove every cut from base; returns the remaining pieces in order."""
    pieces = [base]
    for cut_start, cut_end in sorted(cuts):
        remaining = []
        for start, end in pieces:
            if not overlaps(start, end, cut_start, cut_end):
                remaining.append((start, end))
                continue
            if start < cut_start:
                remaining.append((start, cut_start))
            if cut_end < end:
                remaining.append((cut_end, end))
        pieces = remaining
    return pieces


def partition(start: datetime, end: datetime, duration_minutes: int, buffer_minutes: int = 0) -> Iterator[Interval]:
    """
    Cut [start, end) into fixed-width slots separated by a buffer.
    A slot that would run past ``end`` is dropped.
    """
    if duration_minutes <= 0:
        return
    width = timedelta(minutes=duration_minutes)
    step = width + timedelta(minutes=buffer_minutes)
    cursor = start
    while cursor + width <= end:
        yield cursor, cursor + width
        cursor += step
