from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from app.api.dependencies import get_db
from app.main import app


def test_health_reports_database_ok(client) -> None:
    res = client.get("/health")

    assert res.status_code == 200
    payload = res.json()
    assert payload["status"] == "healthy"
    assert payload["database"] == "ok"
    assert payload["environment"] == "test"


def test_health_degrades_without_database(client) -> None:
    broken = MagicMock()
    broken.execute.side_effect = OperationalError("SELECT 1", {}, Exception("down"))
    app.dependency_overrides[get_db] = lambda: broken

    res = client.get("/health")

    assert res.status_code == 503
    assert res.json()["status"] == "degraded"


def test_metrics_exposes_booking_counters(client, client_headers, make_slot) -> None:
    slot = make_slot()
    client.post(
        "/api/v1/booking/start", json={"slot_id": slot.id, "amount": 1500}, headers=client_headers
    )

    res = client.get("/metrics")

    assert res.status_code == 200
    assert "healnest_booking_outcomes_total" in res.text
