from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session

from ..errors import HoldExpired, InvalidVisit, SlotAlreadyBooked, SlotUnavailable, StoreUnavailable
from ..models import Appointment, AppointmentStatus, VisitType, as_utc
from .appointments import find_by_hold, get_appointment, live_overlapping
from .audit import record_status_change
from .availability import is_open_slot
from .holds import Hold, HoldManager
from .lifecycle import apply_transition

logger = logging.getLogger(__name__)


def place_hold(
    session: Session,
    holds: HoldManager,
    provider_id: str,
    location_id: str,
    start_ts: datetime,
    end_ts: datetime,
    requester_id: str,
    now: Optional[datetime] = None,
) -> Hold:
    """Hold a slot that the schedule offers and nobody has booked."""
    start_ts, end_ts = as_utc(start_ts), as_utc(end_ts)
    if end_ts <= start_ts:
        raise SlotUnavailable("Slot end must be after its start")
    if not is_open_slot(session, provider_id, location_id, start_ts, end_ts, now=now):
        raise SlotUnavailable("Slot is not open for booking")
    return holds.create_hold(provider_id, location_id, start_ts, end_ts, requester_id)


def confirm_booking(
    session: Session,
    holds: HoldManager,
    hold_id: str,
    patient_id: str,
    visit_type: VisitType = VisitType.CLINIC,
    address: Optional[str] = None,
    notes: Optional[str] = None,
    requester_id: Optional[str] = None,
) -> Appointment:
    """
    Turn a live hold into a CONFIRMED appointment and release the hold.

    Confirming the same hold twice yields one appointment; the second call
    fails with HoldExpired.
    """
    return _book_from_hold(
        session, holds, hold_id, patient_id, visit_type, address, notes, requester_id,
    )


def reschedule(
    session: Session,
    holds: HoldManager,
    appointment_id: str,
    hold_id: str,
    actor_id: Optional[str] = None,
) -> Appointment:
    """
    Move an appointment onto a newly held slot. The old appointment ends
    in RESCHEDULED and the new one is inserted in the same transaction.
    """
    old = get_appointment(session, appointment_id)
    return _book_from_hold(
        session, holds, hold_id,
        patient_id=old.patient_id,
        visit_type=old.visit_type,
        address=old.address,
        notes=old.notes,
        requester_id=None,
        replaces=old,
        actor_id=actor_id,
    )


def _book_from_hold(
    session: Session,
    holds: HoldManager,
    hold_id: str,
    patient_id: str,
    visit_type: VisitType,
    address: Optional[str],
    notes: Optional[str],
    requester_id: Optional[str],
    replaces: Optional[Appointment] = None,
    actor_id: Optional[str] = None,
) -> Appointment:
    if visit_type == VisitType.HOUSE and not address:
        raise InvalidVisit("House visits need an address")

    # Step 1: the hold must still be live, and ours
    hold = holds.get_hold(hold_id)
    if hold is None:
        raise HoldExpired()
    if requester_id is not None and hold.requester_id != requester_id:
        raise HoldExpired()
    if replaces is not None and (replaces.provider_id, replaces.location_id) != (hold.provider_id, hold.location_id):
        raise SlotUnavailable("Hold is for a different provider or location")

    # Step 2: re-check the durable store; the hold alone does not stop out-of-band writes
    if find_by_hold(session, hold_id) is not None:
        raise HoldExpired()
    exclude = replaces.id if replaces is not None else None
    if live_overlapping(session, hold.provider_id, hold.location_id, hold.start_ts, hold.end_ts, exclude_id=exclude):
        raise SlotAlreadyBooked()

    # Step 3: insert, with the overlap constraint as final arbiter
    appt = Appointment(
        id="appt_" + uuid.uuid4().hex[:12],
        provider_id=hold.provider_id,
        location_id=hold.location_id,
        patient_id=patient_id,
        start_ts=hold.start_ts,
        end_ts=hold.end_ts,
        status=AppointmentStatus.CONFIRMED,
        visit_type=visit_type,
        address=address if visit_type == VisitType.HOUSE else None,
        notes=notes,
        created_from_hold_id=hold_id,
        rescheduled_from_id=exclude,
    )
    try:
        if replaces is not None:
            apply_transition(session, replaces, AppointmentStatus.RESCHEDULED, actor_id)
            session.flush()
        session.add(appt)
        session.flush()
        record_status_change(session, appt.id, None, AppointmentStatus.CONFIRMED, actor_id or requester_id or patient_id)
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if find_by_hold(session, hold_id) is not None:
            raise HoldExpired() from exc
        logger.warning("Overlap constraint rejected hold %s on %s", hold_id, hold.start_ts.isoformat())
        raise SlotAlreadyBooked() from exc
    except OperationalError as exc:
        session.rollback()
        raise StoreUnavailable(f"Appointment store unavailable: {exc}") from exc
    session.refresh(appt)

    # Step 4: the appointment is durable; a lingering hold only delays its own expiry
    try:
        holds.release_hold(hold_id)
    except StoreUnavailable:
        logger.warning("Appointment %s confirmed but hold %s could not be released", appt.id, hold_id)

    if replaces is not None:
        logger.info("Appointment %s rescheduled to %s", replaces.id, appt.id)
    else:
        logger.info("Appointment %s confirmed from hold %s", appt.id, hold_id)
    return appt
