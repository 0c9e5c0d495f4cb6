from __future__ import annotations

from datetime import datetime, date, time
from typing import Annotated, Optional, List

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from .models import AppointmentStatus, BlockKind, VisitType, as_utc

# Offset-carrying input ("...Z", "+05:30") is stored as naive UTC.
UTCTimestamp = Annotated[datetime, AfterValidator(as_utc)]


class SlotResponse(BaseModel):
    provider_id: str
    location_id: str
    start_ts: datetime
    end_ts: datetime


class AvailabilityResponse(BaseModel):
    provider_id: str
    location_id: str
    start_date: date
    end_date: date
    slots: List[SlotResponse]


class CreateHoldRequest(BaseModel):
    provider_id: str
    location_id: str
    start_ts: UTCTimestamp
    end_ts: UTCTimestamp
    requester_id: str = Field(..., min_length=1, max_length=120)

    @model_validator(mode="after")
    def _end_after_start(self):
        if self.end_ts <= self.start_ts:
            raise ValueError("end_ts must be after start_ts")
        return self


class CreateHoldResponse(BaseModel):
    hold_id: str
    expires_at: datetime


class HoldResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    hold_id: str
    provider_id: str
    location_id: str
    start_ts: datetime
    end_ts: datetime
    requester_id: str
    expires_at: datetime


class ConfirmRequest(BaseModel):
    hold_id: str
    patient_id: str = Field(..., min_length=1, max_length=120)
    visit_type: VisitType = VisitType.CLINIC
    address: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)
    requester_id: Optional[str] = None

    @model_validator(mode="after")
    def _house_needs_address(self):
        if self.visit_type == VisitType.HOUSE and not self.address:
            raise ValueError("address is required for HOUSE visits")
        return self


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider_id: str
    location_id: str
    patient_id: str
    start_ts: datetime
    end_ts: datetime
    status: AppointmentStatus
    visit_type: VisitType
    address: Optional[str] = None
    notes: Optional[str] = None
    created_from_hold_id: str
    rescheduled_from_id: Optional[str] = None
    created_at: datetime
    checked_in_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class AppointmentsResponse(BaseModel):
    appointments: List[AppointmentResponse]


class AppointmentEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: Optional[AppointmentStatus] = None
    to_status: AppointmentStatus
    actor_id: Optional[str] = None
    created_at: datetime


class AppointmentHistoryResponse(BaseModel):
    appointment_id: str
    events: List[AppointmentEventResponse]


class TransitionRequest(BaseModel):
    target_state: AppointmentStatus
    actor_id: Optional[str] = None


class RescheduleRequest(BaseModel):
    hold_id: str
    actor_id: Optional[str] = None


class CheckInRequest(BaseModel):
    patient_id: str


class ScheduleBlockCreate(BaseModel):
    provider_id: str
    location_id: Optional[str] = None
    kind: BlockKind = BlockKind.WORK

    start_ts: Optional[UTCTimestamp] = None
    end_ts: Optional[UTCTimestamp] = None

    weekday: Optional[int] = Field(None, ge=0, le=6)
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    effective_from: Optional[date] = None
    effective_until: Optional[date] = None
    timezone: str = "UTC"

    slot_duration_minutes: Optional[int] = None
    buffer_minutes: int = 0


class UnavailableRequest(BaseModel):
    provider_id: str
    start_ts: UTCTimestamp
    end_ts: UTCTimestamp
    kind: BlockKind = BlockKind.BREAK
    location_id: Optional[str] = None


class ScheduleBlockUpdate(BaseModel):
    provider_id: str
    location_id: Optional[str] = None
    start_ts: Optional[UTCTimestamp] = None
    end_ts: Optional[UTCTimestamp] = None
    weekday: Optional[int] = Field(None, ge=0, le=6)
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    effective_from: Optional[date] = None
    effective_until: Optional[date] = None
    timezone: Optional[str] = None
    slot_duration_minutes: Optional[int] = None
    buffer_minutes: Optional[int] = None


class ScheduleBlockResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider_id: str
    location_id: Optional[str] = None
    kind: BlockKind
    start_ts: Optional[datetime] = None
    end_ts: Optional[datetime] = None
    weekday: Optional[int] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    effective_from: Optional[date] = None
    effective_until: Optional[date] = None
    timezone: str
    slot_duration_minutes: int
    buffer_minutes: int


class ScheduleEntry(BaseModel):
    block_id: str
    location_id: Optional[str] = None
    kind: BlockKind
    start_ts: datetime
    end_ts: datetime
    recurring: bool


class ScheduleSummary(BaseModel):
    working_blocks: int
    breaks: int
    holidays: int
    total_appointments: int
    confirmed_appointments: int


class ProviderScheduleResponse(BaseModel):
    provider_id: str
    blocks: List[ScheduleEntry]
    appointments: List[AppointmentResponse]
    summary: ScheduleSummary


class HealthResponse(BaseModel):
    database: bool
    hold_store: bool
