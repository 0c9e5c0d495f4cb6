from datetime import timedelta
from unittest.mock import MagicMock

from clinic_booking.errors import StoreUnavailable
from clinic_booking.main import app, get_hold_manager
from clinic_booking.services.holds import HoldManager

from conftest import DAY, LOCATION, PROVIDER, at


def create_block(client, start=None, end=None, **extra):
    payload = {
        "provider_id": PROVIDER,
        "location_id": LOCATION,
        "start_ts": (start or at(9)).isoformat(),
        "end_ts": (end or at(10)).isoformat(),
        "slot_duration_minutes": 30,
    }
    payload.update(extra)
    return client.post("/api/schedule/blocks", json=payload)


def hold(client, start, end, requester="pat_1"):
    return client.post("/api/holds", json={
        "provider_id": PROVIDER,
        "location_id": LOCATION,
        "start_ts": start.isoformat(),
        "end_ts": end.isoformat(),
        "requester_id": requester,
    })


def book(client, start, end, patient="pat_1"):
    hold_id = hold(client, start, end, patient).json()["hold_id"]
    return client.post("/api/appointments", json={"hold_id": hold_id, "patient_id": patient})


def test_health_reports_both_stores(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"database": True, "hold_store": True}


def test_hold_and_confirm_flow(client):
    assert create_block(client).status_code == 200

    held = hold(client, at(9), at(9, 30))
    assert held.status_code == 200
    hold_id = held.json()["hold_id"]

    clash = hold(client, at(9), at(9, 30), requester="pat_2")
    assert clash.status_code == 409
    assert clash.json()["reason"] == "SLOT_UNAVAILABLE"

    read = client.get(f"/api/holds/{hold_id}")
    assert read.status_code == 200
    assert read.json()["requester_id"] == "pat_1"

    confirmed = client.post("/api/appointments", json={"hold_id": hold_id, "patient_id": "pat_1"})
    assert confirmed.status_code == 200
    body = confirmed.json()
    assert body["status"] == "CONFIRMED"
    assert body["start_ts"] == at(9).isoformat()

    again = client.post("/api/appointments", json={"hold_id": hold_id, "patient_id": "pat_1"})
    assert again.status_code == 409
    assert again.json()["reason"] == "HOLD_EXPIRED"
    assert client.get(f"/api/holds/{hold_id}").status_code == 404

    slots = client.get("/api/availability", params={
        "provider_id": PROVIDER, "location_id": LOCATION, "start_date": DAY.isoformat(),
    }).json()["slots"]
    assert [s["start_ts"] for s in slots] == [at(9, 30).isoformat()]


def test_released_hold_frees_the_slot(client):
    create_block(client)
    hold_id = hold(client, at(9), at(9, 30)).json()["hold_id"]

    assert client.delete(f"/api/holds/{hold_id}").status_code == 204
    assert hold(client, at(9), at(9, 30), requester="pat_2").status_code == 200


def test_house_visit_without_address_is_rejected(client):
    create_block(client)
    hold_id = hold(client, at(9), at(9, 30)).json()["hold_id"]

    response = client.post("/api/appointments", json={
        "hold_id": hold_id, "patient_id": "pat_1", "visit_type": "HOUSE",
    })

    assert response.status_code == 422


def test_lifecycle_over_http(client):
    create_block(client)
    appt_id = book(client, at(9), at(9, 30)).json()["id"]

    started = client.post(f"/api/appointments/{appt_id}/transition", json={
        "target_state": "STARTED", "actor_id": PROVIDER,
    })
    assert started.status_code == 200
    assert started.json()["status"] == "STARTED"

    illegal = client.post(f"/api/appointments/{appt_id}/transition", json={"target_state": "CANCELLED"})
    assert illegal.status_code == 409
    assert illegal.json()["reason"] == "ILLEGAL_TRANSITION"

    client.post(f"/api/appointments/{appt_id}/transition", json={"target_state": "COMPLETED"})
    events = client.get(f"/api/appointments/{appt_id}/events").json()["events"]
    assert [e["to_status"] for e in events] == ["CONFIRMED", "STARTED", "COMPLETED"]

    missing = client.get("/api/appointments/appt_missing")
    assert missing.status_code == 404
    assert missing.json()["reason"] == "APPOINTMENT_NOT_FOUND"


def test_reschedule_and_check_in_over_http(client):
    create_block(client, at(9), at(11))
    old_id = book(client, at(9), at(9, 30)).json()["id"]
    hold_id = hold(client, at(10), at(10, 30)).json()["hold_id"]

    moved = client.post(f"/api/appointments/{old_id}/reschedule", json={"hold_id": hold_id, "actor_id": "pat_1"})
    assert moved.status_code == 200
    new = moved.json()
    assert new["rescheduled_from_id"] == old_id
    assert client.get(f"/api/appointments/{old_id}").json()["status"] == "RESCHEDULED"

    checked = client.post(f"/api/appointments/{new['id']}/checkin", json={"patient_id": "pat_1"})
    assert checked.status_code == 200
    assert checked.json()["checked_in_at"] is not None


def test_listing_appointments(client):
    create_block(client)
    book(client, at(9), at(9, 30), patient="pat_1")
    book(client, at(9, 30), at(10), patient="pat_2")

    mine = client.get("/api/appointments", params={"patient_id": "pat_1"}).json()["appointments"]
    assert [a["patient_id"] for a in mine] == ["pat_1"]

    day = client.get("/api/appointments", params={
        "provider_id": PROVIDER, "on_date": DAY.isoformat(), "status": "CONFIRMED",
    }).json()["appointments"]
    assert [a["start_ts"] for a in day] == [at(9).isoformat(), at(9, 30).isoformat()]

    assert client.get("/api/appointments").status_code == 400


def test_schedule_management_over_http(client):
    block_id = create_block(client, at(9), at(12)).json()["id"]

    conflict = create_block(client, at(11), at(13))
    assert conflict.status_code == 409
    assert conflict.json()["reason"] == "SCHEDULE_CONFLICT"

    malformed = create_block(client, at(12), at(11))
    assert malformed.status_code == 422
    assert malformed.json()["reason"] == "INVALID_SCHEDULE_BLOCK"

    lunch = client.post("/api/schedule/unavailable", json={
        "provider_id": PROVIDER,
        "location_id": LOCATION,
        "start_ts": at(10).isoformat(),
        "end_ts": at(11).isoformat(),
    })
    assert lunch.status_code == 200
    assert lunch.json()["kind"] == "BREAK"

    patched = client.patch(f"/api/schedule/blocks/{block_id}", json={
        "provider_id": PROVIDER, "buffer_minutes": 10,
    })
    assert patched.status_code == 200
    assert patched.json()["buffer_minutes"] == 10

    overview = client.get("/api/schedule", params={
        "provider_id": PROVIDER,
        "start_date": DAY.isoformat(),
        "end_date": (DAY + timedelta(days=6)).isoformat(),
    })
    assert overview.status_code == 200
    assert overview.json()["summary"]["working_blocks"] == 1
    assert overview.json()["summary"]["breaks"] == 1

    assert client.delete(f"/api/schedule/blocks/{lunch.json()['id']}", params={"provider_id": PROVIDER}).status_code == 204
    gone = client.delete(f"/api/schedule/blocks/{lunch.json()['id']}", params={"provider_id": PROVIDER})
    assert gone.status_code == 404
    assert gone.json()["reason"] == "SCHEDULE_BLOCK_NOT_FOUND"


def test_unreachable_hold_store_is_503(client):
    create_block(client)
    store = MagicMock()
    store.create_if_absent.side_effect = StoreUnavailable("Hold store unreachable")
    app.dependency_overrides[get_hold_manager] = lambda: HoldManager(store)

    response = hold(client, at(9), at(9, 30))

    assert response.status_code == 503
    assert response.json()["reason"] == "STORE_UNAVAILABLE"


def test_offset_timestamps_on_schedule_blocks(client):
    first = client.post("/api/schedule/blocks", json={
        "provider_id": PROVIDER,
        "location_id": LOCATION,
        "start_ts": "2030-01-07T09:00:00Z",
        "end_ts": "2030-01-07T10:00:00Z",
        "slot_duration_minutes": 30,
    })
    assert first.status_code == 200
    assert first.json()["start_ts"] == at(9).isoformat()

    same_hour = client.post("/api/schedule/blocks", json={
        "provider_id": PROVIDER,
        "location_id": LOCATION,
        "start_ts": "2030-01-07T14:30:00+05:30",
        "end_ts": "2030-01-07T15:30:00+05:30",
        "slot_duration_minutes": 30,
    })
    assert same_hour.status_code == 409
    assert same_hour.json()["reason"] == "SCHEDULE_CONFLICT"

    next_hour = client.post("/api/schedule/blocks", json={
        "provider_id": PROVIDER,
        "location_id": LOCATION,
        "start_ts": "2030-01-07T15:30:00+05:30",
        "end_ts": "2030-01-07T16:30:00+05:30",
        "slot_duration_minutes": 30,
    })
    assert next_hour.status_code == 200
    assert next_hour.json()["start_ts"] == at(10).isoformat()

    lunch = client.post("/api/schedule/unavailable", json={
        "provider_id": PROVIDER,
        "location_id": LOCATION,
        "start_ts": "2030-01-07T10:00:00Z",
        "end_ts": "2030-01-07T11:00:00Z",
    })
    assert lunch.status_code == 200
    assert lunch.json()["end_ts"] == at(11).isoformat()


def test_offset_timestamps_on_holds(client):
    create_block(client)

    held = client.post("/api/holds", json={
        "provider_id": PROVIDER,
        "location_id": LOCATION,
        "start_ts": "2030-01-07T09:00:00Z",
        "end_ts": "2030-01-07T09:30:00Z",
        "requester_id": "pat_1",
    })
    assert held.status_code == 200
    read = client.get(f"/api/holds/{held.json()['hold_id']}").json()
    assert (read["start_ts"], read["end_ts"]) == (at(9).isoformat(), at(9, 30).isoformat())

    same_slot = client.post("/api/holds", json={
        "provider_id": PROVIDER,
        "location_id": LOCATION,
        "start_ts": "2030-01-07T14:30:00+05:30",
        "end_ts": "2030-01-07T15:00:00+05:30",
        "requester_id": "pat_2",
    })
    assert same_slot.status_code == 409
    assert same_slot.json()["reason"] == "SLOT_UNAVAILABLE"

    slots = client.get("/api/availability", params={
        "provider_id": PROVIDER, "location_id": LOCATION, "start_date": DAY.isoformat(),
    }).json()["slots"]
    assert [s["start_ts"] for s in slots] == [at(9, 30).isoformat()]


def test_weekly_block_with_unknown_timezone_is_rejected(client):
    response = client.post("/api/schedule/blocks", json={
        "provider_id": PROVIDER,
        "location_id": LOCATION,
        "weekday": 0,
        "start_time": "09:00:00",
        "end_time": "10:00:00",
        "timezone": "Mars/Olympus",
    })

    assert response.status_code == 422
    assert response.json()["reason"] == "INVALID_SCHEDULE_BLOCK"
