"""
Appointment state machine.

    CONFIRMED -> STARTED -> COMPLETED
    CONFIRMED -> CANCELLED
    CONFIRMED -> RESCHEDULED   (only through a new hold, see booking.reschedule)

COMPLETED, CANCELLED and RESCHEDULED are terminal. Who may ask for a
transition is decided by the caller; this module only guards the graph.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session

from ..errors import AppointmentNotFound, IllegalTransition
from ..models import Appointment, AppointmentStatus, utcnow
from .appointments import get_appointment
from .audit import record_status_change

logger = logging.getLogger(__name__)

S = AppointmentStatus

TRANSITIONS = {
    S.CONFIRMED: frozenset({S.STARTED, S.CANCELLED, S.RESCHEDULED}),
    S.STARTED: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.RESCHEDULED: frozenset(),
}

TERMINAL = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

_STAMPS = {
    S.STARTED: "started_at",
    S.COMPLETED: "completed_at",
    S.CANCELLED: "cancelled_at",
}


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in TRANSITIONS[current]


def apply_transition(
    session: Session,
    appointment: Appointment,
    target: AppointmentStatus,
    actor_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    """
    Move ``appointment`` to ``target`` inside the caller's transaction.

    The UPDATE is conditioned on the status we read, so a concurrent
    transition that got there first makes this one fail instead of
    overwriting it.
    """
    current = appointment.status
    if not can_transition(current, target):
        raise IllegalTransition(current, target)

    now = now or utcnow()
    values = {"status": target, "updated_at": now}
    if target in _STAMPS:
        values[_STAMPS[target]] = now

    result = session.execute(
        update(Appointment)
        .where(Appointment.id == appointment.id, Appointment.status == current)
        .values(**values)
    )
    if result.rowcount != 1:
        session.rollback()
        fresh = session.get(Appointment, appointment.id)
        raise IllegalTransition(fresh.status if fresh else current, target)

    record_status_change(session, appointment.id, current, target, actor_id)
    return appointment


def transition_appointment(
    session: Session,
    appointment_id: str,
    target: AppointmentStatus,
    actor_id: Optional[str] = None,
) -> Appointment:
    appt = get_appointment(session, appointment_id)
    if target == S.RESCHEDULED:
        raise IllegalTransition(appt.status, target, "Rescheduling needs a hold on the new slot")

    previous = appt.status
    apply_transition(session, appt, target, actor_id)
    session.commit()
    session.refresh(appt)
    logger.info("Appointment %s moved %s -> %s", appt.id, previous.value, target.value)
    return appt


def start_consultation(session: Session, appointment_id: str, provider_id: str) -> Appointment:
    appt = get_appointment(session, appointment_id)
    if appt.provider_id != provider_id:
        raise AppointmentNotFound()
    return transition_appointment(session, appointment_id, S.STARTED, provider_id)


def complete_consultation(session: Session, appointment_id: str, provider_id: str) -> Appointment:
    appt = get_appointment(session, appointment_id)
    if appt.provider_id != provider_id:
        raise AppointmentNotFound()
    return transition_appointment(session, appointment_id, S.COMPLETED, provider_id)


def cancel_appointment(session: Session, appointment_id: str, actor_id: str) -> Appointment:
    appt = get_appointment(session, appointment_id)
    if actor_id not in (appt.patient_id, appt.provider_id):
        raise AppointmentNotFound()
    return transition_appointment(session, appointment_id, S.CANCELLED, actor_id)


def check_in(session: Session, appointment_id: str, patient_id: str) -> Appointment:
    """Stamp the patient's arrival; the status stays CONFIRMED."""
    appt = get_appointment(session, appointment_id)
    if appt.patient_id != patient_id:
        raise AppointmentNotFound()
    if appt.status != S.CONFIRMED:
        raise IllegalTransition(appt.status, appt.status, "Only confirmed appointments can be checked in")
    if appt.checked_in_at is None:
        appt.checked_in_at = utcnow()
        appt.updated_at = appt.checked_in_at
        session.add(appt)
        session.commit()
        session.refresh(appt)
    return appt
