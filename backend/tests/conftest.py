import os
import tempfile

# Point the app's own engine and hold backend somewhere harmless before import.
_TMP_DIR = tempfile.mkdtemp(prefix="clinic-booking-tests-")
os.environ.setdefault("BOOKING_DATABASE_URL", f"sqlite:///{_TMP_DIR}/app.db")
os.environ.setdefault("BOOKING_HOLD_BACKEND", "memory")

import uuid
from datetime import date, datetime, time, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from clinic_booking.db import create_db_and_tables, get_session, make_engine
from clinic_booking.main import app, get_hold_manager
from clinic_booking.models import Appointment, AppointmentStatus
from clinic_booking.services import schedule
from clinic_booking.services.hold_store import InMemoryHoldStore
from clinic_booking.services.holds import HoldManager

PROVIDER = "doc_1"
LOCATION = "clinic_1"
DAY = date(2030, 1, 7)  # Monday
NOW = datetime(2030, 1, 1, 8, 0)


def at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    return datetime.combine(day, time(hour, minute))


class FakeClock:
    """Wall clock for holds and monotonic clock for the store, moved together."""

    def __init__(self, start: datetime = NOW):
        self.current = start
        self.mono = 1000.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.mono += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'booking.db'}")
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def store(clock):
    return InMemoryHoldStore(clock=clock.monotonic)


@pytest.fixture
def holds(store, clock):
    return HoldManager(store, ttl_seconds=120, clock=clock.now)


@pytest.fixture
def work_block(session):
    def _add(start=None, end=None, slot=30, buffer=0, provider_id=PROVIDER, location_id=LOCATION):
        return schedule.create_block(
            session,
            provider_id=provider_id,
            location_id=location_id,
            start_ts=start or at(9),
            end_ts=end or at(10),
            slot_duration_minutes=slot,
            buffer_minutes=buffer,
        )
    return _add


@pytest.fixture
def appointment(session):
    """Insert an appointment directly, the way an administrative path would."""
    def _add(start, end, status=AppointmentStatus.CONFIRMED, provider_id=PROVIDER,
             location_id=LOCATION, patient_id="pat_admin"):
        appt = Appointment(
            id="appt_" + uuid.uuid4().hex[:12],
            provider_id=provider_id,
            location_id=location_id,
            patient_id=patient_id,
            start_ts=start,
            end_ts=end,
            status=status,
            created_from_hold_id="manual_" + uuid.uuid4().hex[:12],
        )
        session.add(appt)
        session.commit()
        session.refresh(appt)
        return appt
    return _add


@pytest.fixture
def client(engine, holds):
    def _session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_hold_manager] = lambda: holds
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
