"""Schedule blocks: materialization, overlap rules and validated writes."""
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlmodel import Session, select

from ..config import Settings, get_settings
from ..errors import InvalidDateRange, InvalidScheduleBlock, ScheduleBlockNotFound, ScheduleConflict
from ..models import AppointmentStatus, BlockKind, ScheduleBlock, as_utc, utcnow
from .appointments import list_for_provider, live_overlapping
from .slots import Interval, WeeklyPattern, expand_pattern, overlaps

logger = logging.getLogger(__name__)

_PATTERN_FIELDS = ("weekday", "start_time", "end_time", "effective_from", "effective_until", "timezone")

# One year and a week covers every offset change of a zone.
_ZONE_CYCLE = timedelta(days=371)


def pattern_of(block: ScheduleBlock) -> WeeklyPattern:
    return WeeklyPattern(
        weekday=block.weekday,
        start_time=block.start_time,
        end_time=block.end_time,
        effective_from=block.effective_from,
        effective_until=block.effective_until,
        timezone=block.timezone,
    )


def materialize(block: ScheduleBlock, start_date: date, end_date: date) -> List[Interval]:
    """Concrete intervals of a block touching the UTC days [start_date, end_date]."""
    if block.is_recurring:
        return list(expand_pattern(pattern_of(block), start_date, end_date))
    window_start = datetime.combine(start_date, time.min)
    window_end = datetime.combine(end_date + timedelta(days=1), time.min)
    if overlaps(block.start_ts, block.end_ts, window_start, window_end):
        return [(block.start_ts, block.end_ts)]
    return []


def _weekly_overlap(a: ScheduleBlock, b: ScheduleBlock) -> bool:
    start = max(filter(None, (a.effective_from, b.effective_from)), default=None)
    end = min(filter(None, (a.effective_until, b.effective_until)), default=None)
    if start and end and start > end:
        return False

    if a.timezone == b.timezone:
        return a.weekday == b.weekday and a.start_time < b.end_time and b.start_time < a.end_time

    if start is None:
        start = end - _ZONE_CYCLE if end else utcnow().date()
    end = min(end or date.max, start + _ZONE_CYCLE)
    theirs = materialize(b, start, end)
    return any(overlaps(s, e, bs, be) for s, e in materialize(a, start, end) for bs, be in theirs)


def blocks_overlap(a: ScheduleBlock, b: ScheduleBlock) -> bool:
    if a.is_recurring and b.is_recurring:
        return _weekly_overlap(a, b)

    if a.is_recurring or b.is_recurring:
        weekly, one_off = (a, b) if a.is_recurring else (b, a)
        return any(
            overlaps(s, e, one_off.start_ts, one_off.end_ts)
            for s, e in materialize(weekly, one_off.start_ts.date(), one_off.end_ts.date())
        )

    return overlaps(a.start_ts, a.end_ts, b.start_ts, b.end_ts)


def _same_shape(a: ScheduleBlock, b: ScheduleBlock) -> bool:
    fields = ("kind", "location_id", "start_ts", "end_ts") + _PATTERN_FIELDS
    return all(getattr(a, f) == getattr(b, f) for f in fields)


def get_block(session: Session, block_id: str, provider_id: Optional[str] = None) -> ScheduleBlock:
    block = session.get(ScheduleBlock, block_id)
    if block is None or (provider_id is not None and block.provider_id != provider_id):
        raise ScheduleBlockNotFound()
    return block


def work_blocks(session: Session, provider_id: str, location_id: str) -> List[ScheduleBlock]:
    return list(session.exec(
        select(ScheduleBlock).where(
            ScheduleBlock.provider_id == provider_id,
            ScheduleBlock.location_id == location_id,
            ScheduleBlock.kind == BlockKind.WORK,
        )
    ).all())


def unavailable_blocks(session: Session, provider_id: str, location_id: str) -> List[ScheduleBlock]:
    """BREAK/HOLIDAY blocks for this location plus the provider-wide ones."""
    return list(session.exec(
        select(ScheduleBlock).where(
            ScheduleBlock.provider_id == provider_id,
            ScheduleBlock.kind.in_([BlockKind.BREAK, BlockKind.HOLIDAY]),
            or_(ScheduleBlock.location_id == location_id, ScheduleBlock.location_id.is_(None)),
        )
    ).all())


def provider_blocks(session: Session, provider_id: str) -> List[ScheduleBlock]:
    return list(session.exec(
        select(ScheduleBlock).where(ScheduleBlock.provider_id == provider_id)
    ).all())


def get_provider_schedule(session: Session, provider_id: str, start_date: date, end_date: date) -> Dict[str, Any]:
    if start_date > end_date:
        raise InvalidDateRange("start_date must not be after end_date")

    entries = []
    for block in provider_blocks(session, provider_id):
        for start, end in materialize(block, start_date, end_date):
            entries.append({
                "block_id": block.id,
                "location_id": block.location_id,
                "kind": block.kind,
                "start_ts": start,
                "end_ts": end,
                "recurring": block.is_recurring,
            })
    entries.sort(key=lambda e: e["start_ts"])

    window_start = datetime.combine(start_date, time.min)
    window_end = datetime.combine(end_date + timedelta(days=1), time.min)
    appointments = [
        a for a in list_for_provider(session, provider_id)
        if window_start <= a.start_ts < window_end
    ]

    return {
        "provider_id": provider_id,
        "blocks": entries,
        "appointments": appointments,
        "summary": {
            "working_blocks": sum(1 for e in entries if e["kind"] == BlockKind.WORK),
            "breaks": sum(1 for e in entries if e["kind"] == BlockKind.BREAK),
            "holidays": sum(1 for e in entries if e["kind"] == BlockKind.HOLIDAY),
            "total_appointments": len(appointments),
            "confirmed_appointments": sum(1 for a in appointments if a.status == AppointmentStatus.CONFIRMED),
        },
    }


def _validate(block: ScheduleBlock, settings: Settings) -> None:
    problems = []

    has_window = block.start_ts is not None or block.end_ts is not None
    has_pattern = any(getattr(block, f) is not None for f in ("weekday", "start_time", "end_time"))
    if has_window == has_pattern:
        problems.append("give either start_ts/end_ts or weekday/start_time/end_time")
    elif has_window:
        if block.start_ts is None or block.end_ts is None:
            problems.append("start_ts and end_ts are both required")
        elif block.start_ts >= block.end_ts:
            problems.append("Start time must be before end time")
    else:
        if block.weekday is None or block.start_time is None or block.end_time is None:
            problems.append("weekday, start_time and end_time are all required")
        else:
            problems.extend(pattern_of(block).problems())

    if not block.timezone:
        problems.append("timezone is required")

    if block.kind == BlockKind.WORK:
        if not block.location_id:
            problems.append("WORK blocks need a location_id")
        if not settings.min_slot_minutes <= block.slot_duration_minutes <= settings.max_slot_minutes:
            problems.append(
                f"slot_duration_minutes must be between {settings.min_slot_minutes} and {settings.max_slot_minutes}"
            )
        if not 0 <= block.buffer_minutes <= settings.max_buffer_minutes:
            problems.append(f"buffer_minutes must be between 0 and {settings.max_buffer_minutes}")

    if problems:
        raise InvalidScheduleBlock("; ".join(problems))


def _check_conflicts(session: Session, block: ScheduleBlock) -> None:
    for other in provider_blocks(session, block.provider_id):
        if other.id == block.id:
            continue
        if _same_shape(other, block):
            raise ScheduleConflict("Schedule already exists for this exact time slot")
        if block.kind == BlockKind.WORK and other.kind == BlockKind.WORK and blocks_overlap(block, other):
            raise ScheduleConflict(f"Schedule block conflicts with existing WORK block {other.id}")


def create_block(
    session: Session,
    provider_id: str,
    location_id: Optional[str] = None,
    kind: BlockKind = BlockKind.WORK,
    start_ts: Optional[datetime] = None,
    end_ts: Optional[datetime] = None,
    weekday: Optional[int] = None,
    start_time: Optional[time] = None,
    end_time: Optional[time] = None,
    effective_from: Optional[date] = None,
    effective_until: Optional[date] = None,
    timezone: str = "UTC",
    slot_duration_minutes: Optional[int] = None,
    buffer_minutes: int = 0,
    settings: Optional[Settings] = None,
) -> ScheduleBlock:
    settings = settings or get_settings()
    if kind == BlockKind.WORK:
        slot_duration_minutes = slot_duration_minutes or settings.default_slot_minutes
    else:
        slot_duration_minutes, buffer_minutes = 0, 0

    block = ScheduleBlock(
        id="blk_" + uuid.uuid4().hex[:12],
        provider_id=provider_id,
        location_id=location_id,
        kind=kind,
        start_ts=as_utc(start_ts),
        end_ts=as_utc(end_ts),
        weekday=weekday,
        start_time=start_time,
        end_time=end_time,
        effective_from=effective_from,
        effective_until=effective_until,
        timezone=timezone,
        slot_duration_minutes=slot_duration_minutes,
        buffer_minutes=buffer_minutes,
    )
    _validate(block, settings)
    _check_conflicts(session, block)

    session.add(block)
    session.commit()
    session.refresh(block)
    logger.info("Schedule block %s (%s) created for provider %s", block.id, block.kind.value, provider_id)
    return block


def mark_unavailable(
    session: Session,
    provider_id: str,
    start_ts: datetime,
    end_ts: datetime,
    kind: BlockKind = BlockKind.BREAK,
    location_id: Optional[str] = None,
) -> ScheduleBlock:
    if kind == BlockKind.WORK:
        raise InvalidScheduleBlock("kind must be BREAK or HOLIDAY")
    return create_block(
        session,
        provider_id=provider_id,
        location_id=location_id,
        kind=kind,
        start_ts=start_ts,
        end_ts=end_ts,
    )


def update_block(
    session: Session,
    block_id: str,
    provider_id: str,
    changes: Dict[str, Any],
    settings: Optional[Settings] = None,
) -> ScheduleBlock:
    settings = settings or get_settings()
    block = get_block(session, block_id, provider_id)

    allowed = {"location_id", "start_ts", "end_ts", "slot_duration_minutes", "buffer_minutes"} | set(_PATTERN_FIELDS)
    unknown = set(changes) - allowed
    if unknown:
        raise InvalidScheduleBlock(f"Cannot update {', '.join(sorted(unknown))}")

    for field, value in changes.items():
        if field in ("start_ts", "end_ts"):
            value = as_utc(value)
        setattr(block, field, value)
    block.updated_at = utcnow()

    try:
        _validate(block, settings)
        _check_conflicts(session, block)
    except (InvalidScheduleBlock, ScheduleConflict):
        session.rollback()
        raise

    session.add(block)
    session.commit()
    session.refresh(block)
    logger.info("Schedule block %s updated", block.id)
    return block


def delete_block(session: Session, block_id: str, provider_id: str, now: Optional[datetime] = None) -> None:
    """
    Remove a block. A WORK block that still has live appointments from
    ``now`` on is refused.
    """
    block = get_block(session, block_id, provider_id)

    if block.kind == BlockKind.WORK:
        now = now or utcnow()
        upcoming = live_overlapping(session, provider_id, block.location_id, now, datetime.max)
        for appt in upcoming:
            touched = materialize(block, appt.start_ts.date(), appt.end_ts.date())
            if any(overlaps(s, e, appt.start_ts, appt.end_ts) for s, e in touched):
                raise ScheduleConflict("Cannot delete schedule block with existing appointments")

    session.delete(block)
    session.commit()
    logger.info("Schedule block %s deleted", block_id)
