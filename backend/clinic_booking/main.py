from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from .config import Settings, get_settings
from .db import create_db_and_tables, get_session, verify_connection
from .errors import BookingError, InfrastructureError
from .models import AppointmentStatus
from .schemas import (
    AvailabilityResponse, SlotResponse,
    CreateHoldRequest, CreateHoldResponse, HoldResponse,
    ConfirmRequest, AppointmentResponse, AppointmentsResponse,
    AppointmentHistoryResponse, AppointmentEventResponse,
    TransitionRequest, RescheduleRequest, CheckInRequest,
    ScheduleBlockCreate, ScheduleBlockUpdate, ScheduleBlockResponse, UnavailableRequest,
    ProviderScheduleResponse, HealthResponse,
)
from .services import appointments, audit, lifecycle, schedule
from .services.availability import compute_availability
from .services.booking import confirm_booking, place_hold, reschedule
from .services.hold_store import InMemoryHoldStore, RedisHoldStore
from .services.holds import HoldManager

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def build_hold_manager(settings: Settings) -> HoldManager:
    if settings.hold_backend == "memory":
        store = InMemoryHoldStore()
    else:
        store = RedisHoldStore.from_url(settings.redis_url)
    return HoldManager(store, ttl_seconds=settings.hold_ttl_seconds)


hold_manager = build_hold_manager(settings)


def get_hold_manager() -> HoldManager:
    return hold_manager


app = FastAPI(title="Clinic Slot Booking API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BookingError)
def booking_error_handler(request: Request, exc: BookingError):
    if isinstance(exc, InfrastructureError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content={"reason": exc.reason, "detail": exc.detail})


@app.exception_handler(OperationalError)
def database_error_handler(request: Request, exc: OperationalError):
    logger.error("%s %s failed: database unavailable", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=503, content={"reason": "STORE_UNAVAILABLE", "detail": "Appointment store unavailable"})


@app.on_event("startup")
def on_startup():
    verify_connection()
    create_db_and_tables()


@app.get("/health", response_model=HealthResponse)
def health(session: Session = Depends(get_session), holds: HoldManager = Depends(get_hold_manager)):
    try:
        session.connection().exec_driver_sql("SELECT 1")
        database = True
    except OperationalError:
        logger.exception("Database health check failed")
        database = False
    try:
        hold_store = holds.store.ping()
    except InfrastructureError:
        logger.exception("Hold store health check failed")
        hold_store = False
    return HealthResponse(database=database, hold_store=hold_store)


@app.get("/api/availability", response_model=AvailabilityResponse)
def availability(
    provider_id: str,
    location_id: str,
    start_date: date,
    end_date: Optional[date] = None,
    session: Session = Depends(get_session),
    holds: HoldManager = Depends(get_hold_manager),
):
    end = end_date or start_date
    slots = compute_availability(session, provider_id, location_id, start_date, end, holds=holds)
    return AvailabilityResponse(
        provider_id=provider_id,
        location_id=location_id,
        start_date=start_date,
        end_date=end,
        slots=[SlotResponse(**vars(s)) for s in slots],
    )


@app.post("/api/holds", response_model=CreateHoldResponse)
def hold_slot(
    req: CreateHoldRequest,
    session: Session = Depends(get_session),
    holds: HoldManager = Depends(get_hold_manager),
):
    hold = place_hold(
        session,
        holds,
        provider_id=req.provider_id,
        location_id=req.location_id,
        start_ts=req.start_ts,
        end_ts=req.end_ts,
        requester_id=req.requester_id,
    )
    return CreateHoldResponse(hold_id=hold.hold_id, expires_at=hold.expires_at)


@app.get("/api/holds/{hold_id}", response_model=HoldResponse)
def read_hold(hold_id: str, holds: HoldManager = Depends(get_hold_manager)):
    hold = holds.get_hold(hold_id)
    if hold is None:
        raise HTTPException(status_code=404, detail="Hold not found")
    return HoldResponse.model_validate(hold)


@app.delete("/api/holds/{hold_id}", status_code=204)
def release_hold(hold_id: str, holds: HoldManager = Depends(get_hold_manager)):
    holds.release_hold(hold_id)
    return Response(status_code=204)


@app.post("/api/appointments", response_model=AppointmentResponse)
def confirm(
    req: ConfirmRequest,
    session: Session = Depends(get_session),
    holds: HoldManager = Depends(get_hold_manager),
):
    appt = confirm_booking(
        session,
        holds,
        hold_id=req.hold_id,
        patient_id=req.patient_id,
        visit_type=req.visit_type,
        address=req.address,
        notes=req.notes,
        requester_id=req.requester_id,
    )
    return AppointmentResponse.model_validate(appt)


@app.get("/api/appointments", response_model=AppointmentsResponse)
def list_appointments(
    patient_id: Optional[str] = None,
    provider_id: Optional[str] = None,
    on_date: Optional[date] = None,
    status: Optional[AppointmentStatus] = None,
    session: Session = Depends(get_session),
):
    if patient_id:
        rows = appointments.list_for_patient(session, patient_id, status)
    elif provider_id:
        rows = appointments.list_for_provider(session, provider_id, on_date)
        if status is not None:
            rows = [a for a in rows if a.status == status]
    else:
        raise HTTPException(status_code=400, detail="patient_id or provider_id is required")
    return AppointmentsResponse(appointments=[AppointmentResponse.model_validate(a) for a in rows])


@app.get("/api/appointments/{appointment_id}", response_model=AppointmentResponse)
def read_appointment(appointment_id: str, session: Session = Depends(get_session)):
    return AppointmentResponse.model_validate(appointments.get_appointment(session, appointment_id))


@app.get("/api/appointments/{appointment_id}/events", response_model=AppointmentHistoryResponse)
def appointment_events(appointment_id: str, session: Session = Depends(get_session)):
    appointments.get_appointment(session, appointment_id)
    return AppointmentHistoryResponse(
        appointment_id=appointment_id,
        events=[AppointmentEventResponse.model_validate(e) for e in audit.history(session, appointment_id)],
    )


@app.post("/api/appointments/{appointment_id}/transition", response_model=AppointmentResponse)
def transition(appointment_id: str, req: TransitionRequest, session: Session = Depends(get_session)):
    appt = lifecycle.transition_appointment(session, appointment_id, req.target_state, req.actor_id)
    return AppointmentResponse.model_validate(appt)


@app.post("/api/appointments/{appointment_id}/reschedule", response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: str,
    req: RescheduleRequest,
    session: Session = Depends(get_session),
    holds: HoldManager = Depends(get_hold_manager),
):
    appt = reschedule(session, holds, appointment_id, req.hold_id, req.actor_id)
    return AppointmentResponse.model_validate(appt)


@app.post("/api/appointments/{appointment_id}/checkin", response_model=AppointmentResponse)
def check_in(appointment_id: str, req: CheckInRequest, session: Session = Depends(get_session)):
    return AppointmentResponse.model_validate(lifecycle.check_in(session, appointment_id, req.patient_id))


@app.post("/api/schedule/blocks", response_model=ScheduleBlockResponse)
def create_schedule_block(req: ScheduleBlockCreate, session: Session = Depends(get_session)):
    block = schedule.create_block(session, **req.model_dump())
    return ScheduleBlockResponse.model_validate(block)


@app.post("/api/schedule/unavailable", response_model=ScheduleBlockResponse)
def mark_unavailable(req: UnavailableRequest, session: Session = Depends(get_session)):
    block = schedule.mark_unavailable(session, **req.model_dump())
    return ScheduleBlockResponse.model_validate(block)


@app.patch("/api/schedule/blocks/{block_id}", response_model=ScheduleBlockResponse)
def update_schedule_block(block_id: str, req: ScheduleBlockUpdate, session: Session = Depends(get_session)):
    changes = req.model_dump(exclude_unset=True, exclude={"provider_id"})
    block = schedule.update_block(session, block_id, req.provider_id, changes)
    return ScheduleBlockResponse.model_validate(block)


@app.delete("/api/schedule/blocks/{block_id}", status_code=204)
def delete_schedule_block(block_id: str, provider_id: str, session: Session = Depends(get_session)):
    schedule.delete_block(session, block_id, provider_id)
    return Response(status_code=204)


@app.get("/api/schedule", response_model=ProviderScheduleResponse)
def provider_schedule(
    provider_id: str,
    start_date: date,
    end_date: date,
    session: Session = Depends(get_session),
):
    data = schedule.get_provider_schedule(session, provider_id, start_date, end_date)
    data["appointments"] = [AppointmentResponse.model_validate(a) for a in data["appointments"]]
    return ProviderScheduleResponse(**data)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("clinic_booking.main:app", host="0.0.0.0", port=8000)
