from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlmodel import Session, select

from ..errors import AppointmentNotFound
from ..models import Appointment, AppointmentStatus, LIVE_STATUSES


def get_appointment(session: Session, appointment_id: str) -> Appointment:
    appt = session.get(Appointment, appointment_id)
    if appt is None:
        raise AppointmentNotFound()
    return appt


def find_by_hold(session: Session, hold_id: str) -> Optional[Appointment]:
    return session.exec(
        select(Appointment).where(Appointment.created_from_hold_id == hold_id)
    ).first()


def live_overlapping(
    session: Session,
    provider_id: str,
    location_id: Optional[str],
    start_ts: datetime,
    end_ts: datetime,
    exclude_id: Optional[str] = None,
) -> List[Appointment]:
    """Live appointments whose [start, end) intersects the given range."""
    stmt = select(Appointment).where(
        Appointment.provider_id == provider_id,
        Appointment.status.in_(LIVE_STATUSES),
        Appointment.start_ts < end_ts,
        Appointment.end_ts > start_ts,
    )
    if location_id is not None:
        stmt = stmt.where(Appointment.location_id == location_id)
    if exclude_id is not None:
        stmt = stmt.where(Appointment.id != exclude_id)
    return list(session.exec(stmt.order_by(Appointment.start_ts)).all())


def list_for_patient(
    session: Session,
    patient_id: str,
    status: Optional[AppointmentStatus] = None,
) -> List[Appointment]:
    stmt = select(Appointment).where(Appointment.patient_id == patient_id)
    if status is not None:
        stmt = stmt.where(Appointment.status == status)
    return list(session.exec(stmt.order_by(Appointment.start_ts.desc())).all())


def list_for_provider(
    session: Session,
    provider_id: str,
    on_date: Optional[date] = None,
    location_id: Optional[str] = None,
) -> List[Appointment]:
    stmt = select(Appointment).where(Appointment.provider_id == provider_id)
    if location_id is not None:
        stmt = stmt.where(Appointment.location_id == location_id)
    if on_date is not None:
        day_start = datetime.combine(on_date, time.min)
        stmt = stmt.where(
            Appointment.start_ts >= day_start,
            Appointment.start_ts < day_start + timedelta(days=1),
        )
    return list(session.exec(stmt.order_by(Appointment.start_ts)).all())
