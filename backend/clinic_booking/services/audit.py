from __future__ import annotations

import uuid
from typing import List, Optional

from sqlmodel import Session, select

from ..models import AppointmentEvent, AppointmentStatus


def record_status_change(
    session: Session,
    appointment_id: str,
    from_status: Optional[AppointmentStatus],
    to_status: AppointmentStatus,
    actor_id: Optional[str] = None,
) -> AppointmentEvent:
    """
    Append-only trail of appointment status changes.
    Joins the caller's transaction; the caller commits.
    """
    ev = AppointmentEvent(
        id="evt_" + uuid.uuid4().hex[:12],
        appointment_id=appointment_id,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
    )
    session.add(ev)
    return ev


def history(session: Session, appointment_id: str) -> List[AppointmentEvent]:
    return list(session.exec(
        select(AppointmentEvent)
        .where(AppointmentEvent.appointment_id == appointment_id)
        .order_by(AppointmentEvent.created_at, AppointmentEvent.id)
    ).all())
