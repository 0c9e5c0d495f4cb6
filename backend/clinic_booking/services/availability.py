from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from itertools import groupby
from typing import Iterator, List, Optional

from sqlmodel import Session

from ..config import Settings, get_settings
from ..errors import InvalidDateRange, StoreUnavailable
from ..models import as_utc, utcnow
from .appointments import live_overlapping
from .holds import HoldManager
from .schedule import materialize, unavailable_blocks, work_blocks
from .slots import Interval, Slot, overlaps, partition, subtract_intervals

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Window:
    start_ts: datetime
    end_ts: datetime
    slot_duration_minutes: int
    buffer_minutes: int


class Availability:
    """
    Free slots of one provider at one location.

    Schedule and appointments are read once, when the object is built.
    Slots are then produced lazily, day by day, and iterating again starts
    over from the same snapshot.
    """

    def __init__(
        self,
        provider_id: str,
        location_id: str,
        windows: List[_Window],
        taken: List[Interval],
        range_start: datetime,
        range_end: datetime,
        now: datetime,
        holds: Optional[HoldManager] = None,
    ):
        self.provider_id = provider_id
        self.location_id = location_id
        self._windows = windows
        self._taken = taken
        self._range_start = range_start
        self._range_end = range_end
        self._now = now
        self._holds = holds

    def __iter__(self) -> Iterator[Slot]:
        for _, day_windows in groupby(self._windows, key=lambda w: w.start_ts.date()):
            candidates = sorted(
                (slot for w in day_windows for slot in self._slots_in(w)),
                key=lambda s: s.start_ts,
            )
            held = self._held_starts(candidates)
            for slot in candidates:
                if slot.start_ts not in held:
                    yield slot

    def _slots_in(self, window: _Window) -> Iterator[Slot]:
        for start, end in partition(window.start_ts, window.end_ts, window.slot_duration_minutes, window.buffer_minutes):
            if start < self._now or not self._range_start <= start < self._range_end:
                continue
            if any(overlaps(start, end, t_start, t_end) for t_start, t_end in self._taken):
                continue
            yield Slot(self.provider_id, self.location_id, start, end)

    def _held_starts(self, candidates: List[Slot]):
        if self._holds is None or not candidates:
            return set()
        try:
            return self._holds.held_starts(self.provider_id, self.location_id, (s.start_ts for s in candidates))
        except StoreUnavailable:
            logger.warning(
                "Hold store unreachable; availability for %s/%s shown without hold filtering",
                self.provider_id, self.location_id,
            )
            return set()


def check_date_range(start_date: date, end_date: date, settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    if start_date > end_date:
        raise InvalidDateRange("start_date must not be after end_date")
    days = (end_date - start_date).days + 1
    if days > settings.max_horizon_days:
        raise InvalidDateRange(f"Date range is limited to {settings.max_horizon_days} days, got {days}")


def compute_availability(
    session: Session,
    provider_id: str,
    location_id: str,
    start_date: date,
    end_date: date,
    holds: Optional[HoldManager] = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> Availability:
    check_date_range(start_date, end_date, settings)
    range_start = datetime.combine(start_date, time.min)
    range_end = datetime.combine(end_date + timedelta(days=1), time.min)

    # Step 1: WORK intervals, one per block instance
    work = []
    for block in work_blocks(session, provider_id, location_id):
        if block.slot_duration_minutes <= 0 or block.buffer_minutes < 0:
            logger.warning("Skipping schedule block %s with invalid slot settings", block.id)
            continue
        for start, end in materialize(block, start_date, end_date):
            if start >= end:
                logger.warning("Skipping empty instance of schedule block %s", block.id)
                continue
            work.append((start, end, block))
    work.sort(key=lambda w: (w[0], w[1]))

    kept = []
    for start, end, block in work:
        if kept and start < kept[-1][1]:
            logger.warning(
                "Schedule block %s overlaps block %s for provider %s; skipping it",
                block.id, kept[-1][2].id, provider_id,
            )
            continue
        kept.append((start, end, block))

    # Step 2: carve out breaks and holidays
    cuts = [
        interval
        for block in unavailable_blocks(session, provider_id, location_id)
        for interval in materialize(block, start_date, end_date)
    ]
    windows = [
        _Window(free_start, free_end, block.slot_duration_minutes, block.buffer_minutes)
        for start, end, block in kept
        for free_start, free_end in subtract_intervals((start, end), cuts)
    ]

    # Step 3: slots already consumed by appointments
    taken = [
        (a.start_ts, a.end_ts)
        for a in live_overlapping(session, provider_id, location_id, range_start, range_end)
    ]

    return Availability(
        provider_id=provider_id,
        location_id=location_id,
        windows=windows,
        taken=taken,
        range_start=range_start,
        range_end=range_end,
        now=as_utc(now) or utcnow(),
        holds=holds,
    )


def is_open_slot(
    session: Session,
    provider_id: str,
    location_id: str,
    start_ts: datetime,
    end_ts: datetime,
    now: Optional[datetime] = None,
) -> bool:
    """Whether [start_ts, end_ts) is an exact free slot of the schedule, ignoring holds."""
    wanted = Slot(provider_id, location_id, start_ts, end_ts)
    day = start_ts.date()
    return any(slot == wanted for slot in compute_availability(session, provider_id, location_id, day, day, now=now))
