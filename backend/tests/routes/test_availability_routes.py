"""
API tests for /api/v1/availability.
"""

from datetime import timedelta

from app.core.timezone_utils import utc_now

from tests.utils.booking_data import CLIENT_ID, SESSION_FEE, THERAPIST_ID

BASE = "/api/v1/availability"


def test_lists_open_slots_without_auth(client, make_slot):
    later = make_slot(72)
    sooner = make_slot(24)
    make_slot(48, is_available=False)

    res = client.get(f"{BASE}/{THERAPIST_ID}")

    assert res.status_code == 200
    body = res.json()
    assert body["therapist_id"] == THERAPIST_ID
    assert body["total"] == 2
    assert [s["id"] for s in body["slots"]] == [sooner.id, later.id]
    assert body["slots"][0]["duration_minutes"] == 60


def test_held_slot_disappears_from_listing(client, make_slot, orchestrator):
    slot = make_slot()
    orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)

    res = client.get(f"{BASE}/{THERAPIST_ID}")

    assert res.json()["total"] == 0


def test_invalid_time_of_day_is_rejected(client):
    res = client.get(f"{BASE}/{THERAPIST_ID}", params={"time_of_day": "midnight"})

    assert res.status_code == 422
    assert res.json()["code"] == "validation_error"


def test_inverted_dates_are_a_bad_request(client):
    res = client.get(
        f"{BASE}/{THERAPIST_ID}",
        params={"start_date": "2030-01-10", "end_date": "2030-01-09"},
    )

    assert res.status_code == 400


def test_therapist_opens_a_slot(client, therapist_headers):
    start = (utc_now() + timedelta(days=3)).replace(microsecond=0)

    res = client.post(
        BASE,
        json={
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(minutes=50)).isoformat(),
        },
        headers=therapist_headers,
    )

    assert res.status_code == 201
    body = res.json()
    assert body["therapist_id"] == THERAPIST_ID
    assert body["is_available"] is True
    assert body["duration_minutes"] == 50


def test_overlapping_slot_conflicts(client, therapist_headers, make_slot):
    existing = make_slot(72)

    res = client.post(
        BASE,
        json={
            "start_time": (existing.start_time + timedelta(minutes=15)).isoformat(),
            "end_time": (existing.end_time + timedelta(minutes=15)).isoformat(),
        },
        headers=therapist_headers,
    )

    assert res.status_code == 409
    assert res.json()["code"] == "SLOT_OVERLAP"


def test_clients_cannot_open_slots(client, client_headers):
    start = utc_now() + timedelta(days=3)

    res = client.post(
        BASE,
        json={"start_time": start.isoformat(), "end_time": (start + timedelta(hours=1)).isoformat()},
        headers=client_headers,
    )

    assert res.status_code == 403


def test_opening_a_slot_requires_auth(client):
    res = client.post(BASE, json={})

    assert res.status_code == 401


def test_delete_and_reopen(client, therapist_headers, make_slot):
    open_slot = make_slot(72)
    orphan = make_slot(96, is_available=False)

    deleted = client.delete(f"{BASE}/{open_slot.id}", headers=therapist_headers)
    reopened = client.post(f"{BASE}/{orphan.id}/reopen", headers=therapist_headers)

    assert deleted.status_code == 204
    assert reopened.status_code == 200
    assert reopened.json()["is_available"] is True


def test_delete_rejects_malformed_id(client, therapist_headers):
    res = client.delete(f"{BASE}/not-a-ulid", headers=therapist_headers)

    assert res.status_code == 422
