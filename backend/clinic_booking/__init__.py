"""Appointment slot booking: availability, holds and confirmation."""

__version__ = "0.1.0"
