from __future__ import annotations

from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DDL, DateTime, event
from sqlmodel import SQLModel, Field, Index


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # naive input is already UTC
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class BlockKind(str, Enum):
    WORK = "WORK"
    BREAK = "BREAK"
    HOLIDAY = "HOLIDAY"


class AppointmentStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    RESCHEDULED = "RESCHEDULED"


class VisitType(str, Enum):
    CLINIC = "CLINIC"
    TELE = "TELE"
    HOUSE = "HOUSE"


# Statuses that occupy their time range.
LIVE_STATUSES = (
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.STARTED,
    AppointmentStatus.COMPLETED,
)


class ScheduleBlock(SQLModel, table=True):
    """
    Either a one-off block (``start_ts``/``end_ts``, naive UTC) or a weekly
    block: ``weekday`` (0=Monday) and ``start_time``/``end_time`` are wall
    clock in ``timezone``. A BREAK/HOLIDAY without ``location_id`` applies
    to every location.
    """

    id: str = Field(primary_key=True)
    provider_id: str = Field(index=True)
    location_id: Optional[str] = Field(default=None, index=True)
    kind: BlockKind = BlockKind.WORK

    start_ts: Optional[datetime] = Field(default=None, sa_type=DateTime)
    end_ts: Optional[datetime] = Field(default=None, sa_type=DateTime)

    weekday: Optional[int] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    effective_from: Optional[date] = None
    effective_until: Optional[date] = None
    timezone: str = "UTC"

    slot_duration_minutes: int = 0
    buffer_minutes: int = 0

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    @property
    def is_recurring(self) -> bool:
        return self.weekday is not None


class Appointment(SQLModel, table=True):
    id: str = Field(primary_key=True)
    provider_id: str
    location_id: str
    patient_id: str = Field(index=True)
    start_ts: datetime = Field(sa_type=DateTime)
    end_ts: datetime = Field(sa_type=DateTime)

    status: AppointmentStatus = AppointmentStatus.CONFIRMED
    visit_type: VisitType = VisitType.CLINIC
    address: Optional[str] = None
    notes: Optional[str] = None

    created_from_hold_id: str = Field(unique=True)
    rescheduled_from_id: Optional[str] = Field(default=None, foreign_key="appointment.id")

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    checked_in_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=DateTime)


Index("idx_appt_provider_location_start", Appointment.provider_id, Appointment.location_id, Appointment.start_ts)


class AppointmentEvent(SQLModel, table=True):
    id: str = Field(primary_key=True)
    appointment_id: str = Field(foreign_key="appointment.id", index=True)
    from_status: Optional[AppointmentStatus] = None
    to_status: AppointmentStatus
    actor_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


# Live appointments of one provider at one location may not overlap.
_LIVE_SQL = ", ".join(f"'{s.value}'" for s in LIVE_STATUSES)

_SQLITE_OVERLAP_CHECK = f"""
BEGIN
    SELECT RAISE(ABORT, 'appointment overlaps an existing booking')
    WHERE EXISTS (
        SELECT 1 FROM appointment AS a
        WHERE a.id != NEW.id
          AND a.provider_id = NEW.provider_id
          AND a.location_id = NEW.location_id
          AND a.status IN ({_LIVE_SQL})
          AND a.start_ts < NEW.end_ts
          AND NEW.start_ts < a.end_ts
    );
END
"""

event.listen(
    Appointment.__table__,
    "after_create",
    DDL(
        "CREATE TRIGGER IF NOT EXISTS appointment_no_overlap_insert "
        f"BEFORE INSERT ON appointment WHEN NEW.status IN ({_LIVE_SQL})"
        + _SQLITE_OVERLAP_CHECK
    ).execute_if(dialect="sqlite"),
)
event.listen(
    Appointment.__table__,
    "after_create",
    DDL(
        "CREATE TRIGGER IF NOT EXISTS appointment_no_overlap_update "
        "BEFORE UPDATE OF start_ts, end_ts, status ON appointment "
        f"WHEN NEW.status IN ({_LIVE_SQL})"
        + _SQLITE_OVERLAP_CHECK
    ).execute_if(dialect="sqlite"),
)
event.listen(
    Appointment.__table__,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
event.listen(
    Appointment.__table__,
    "after_create",
    DDL(
        "ALTER TABLE appointment ADD CONSTRAINT appointment_no_overlap "
        "EXCLUDE USING gist (provider_id WITH =, location_id WITH =, "
        "tsrange(start_ts, end_ts) WITH &&) "
        f"WHERE (status IN ({_LIVE_SQL}))"
    ).execute_if(dialect="postgresql"),
)
