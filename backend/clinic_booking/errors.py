"""Typed outcomes of the booking core, each with a reason code and HTTP status."""
from __future__ import annotations


class BookingError(Exception):
    reason = "BOOKING_ERROR"
    status_code = 400

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.__class__.__doc__ or self.reason
        super().__init__(self.detail)


class ConflictError(BookingError):
    status_code = 409


class SlotUnavailable(ConflictError):
    """Slot is already held or booked."""
    reason = "SLOT_UNAVAILABLE"


class SlotAlreadyBooked(ConflictError):
    """Slot was booked by another request."""
    reason = "SLOT_ALREADY_BOOKED"


class HoldExpired(ConflictError):
    """Hold has expired or does not exist."""
    reason = "HOLD_EXPIRED"


# An unknown token and an expired one look the same to the store.
HoldNotFound = HoldExpired


class IllegalTransition(ConflictError):
    reason = "ILLEGAL_TRANSITION"

    def __init__(self, current, target, detail: str | None = None):
        self.current = current
        self.target = target
        super().__init__(detail or f"Cannot move appointment from {current.value} to {target.value}")


class ScheduleConflict(ConflictError):
    """Schedule block conflicts with existing schedule."""
    reason = "SCHEDULE_CONFLICT"


class ValidationError(BookingError):
    status_code = 422


class InvalidDateRange(ValidationError):
    """Date range is empty or too long."""
    reason = "INVALID_DATE_RANGE"


class InvalidScheduleBlock(ValidationError):
    """Schedule block is malformed."""
    reason = "INVALID_SCHEDULE_BLOCK"


class InvalidVisit(ValidationError):
    """Visit details are incomplete."""
    reason = "INVALID_VISIT"


class NotFound(BookingError):
    status_code = 404


class AppointmentNotFound(NotFound):
    """Appointment not found."""
    reason = "APPOINTMENT_NOT_FOUND"


class ScheduleBlockNotFound(NotFound):
    """Schedule block not found."""
    reason = "SCHEDULE_BLOCK_NOT_FOUND"


class InfrastructureError(BookingError):
    status_code = 503


class StoreUnavailable(InfrastructureError):
    """Backing store is unavailable."""
    reason = "STORE_UNAVAILABLE"
