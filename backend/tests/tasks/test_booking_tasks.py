"""
Tests for booking housekeeping Celery tasks.

Tasks are called directly (no broker); ``SessionLocal`` is pointed at the
test database and the provider factories at the fakes.
"""

from datetime import timedelta

import pytest

from app.core.exceptions import ServiceException
from app.core.timezone_utils import utc_now
from app.integrations.meeting_client import MeetingProviderError
from app.models import AttemptState, PaymentIntent, TherapySession
from app.services.session_registry import SessionRegistry
from app.tasks.beat_schedule import get_beat_schedule
from app.tasks.booking_tasks import backfill_meeting_links, release_stale_holds

from tests.utils.booking_data import CLIENT_ID, SESSION_FEE


@pytest.fixture
def task_env(monkeypatch, session_factory, gateway, meeting_client):
    monkeypatch.setattr("app.database.SessionLocal", session_factory)
    monkeypatch.setattr("app.tasks.booking_tasks.get_payment_gateway", lambda: gateway)
    monkeypatch.setattr("app.tasks.booking_tasks.get_meeting_client", lambda: meeting_client)
    return meeting_client


class TestReleaseStaleHolds:
    def test_releases_expired_holds_and_reports_backlog(self, task_env, orchestrator, make_slot, db):
        old_slot = make_slot(24)
        fresh_slot = make_slot(72)
        old = orchestrator.start_booking(CLIENT_ID, old_slot.id, SESSION_FEE)
        orchestrator.start_booking(CLIENT_ID, fresh_slot.id, SESSION_FEE)
        intent = db.query(PaymentIntent).filter_by(transaction_ref=old.transaction_ref).one()
        intent.created_at = utc_now() - timedelta(hours=1)
        db.commit()

        result = release_stale_holds()

        assert result["released"] == 1
        assert result["compensation_backlog"] == 0
        assert "processed_at" in result
        db.refresh(intent)
        db.refresh(old_slot)
        assert intent.attempt_state == AttemptState.RELEASED.value
        assert old_slot.is_available is True

    def test_nothing_to_do(self, task_env):
        assert release_stale_holds()["released"] == 0


class TestBackfillMeetingLinks:
    def test_attaches_missing_links(self, task_env, make_session, db):
        first = make_session(24)
        second = make_session(48)

        result = backfill_meeting_links()

        assert result["attached"] == 2
        assert result["failed"] == 0
        for session in (first, second):
            db.refresh(session)
            assert session.meeting_link.endswith(f"session-{session.id}")

    def test_provider_failure_is_counted_not_raised(self, task_env, make_session, db):
        session = make_session(24)
        task_env.error = MeetingProviderError("down", status_code=503)

        result = backfill_meeting_links()

        assert result == {"attached": 0, "failed": 1, "processed_at": result["processed_at"]}
        db.refresh(session)
        assert session.meeting_link is None

    def test_database_failure_skips_only_that_session(self, task_env, make_session, monkeypatch, db):
        first = make_session(24)
        second = make_session(48)
        original_attach = SessionRegistry.attach_meeting_link

        def _attach(self, session, link):
            if session.id == first.id:
                raise ServiceException("Database operation failed")
            original_attach(self, session, link)

        monkeypatch.setattr(SessionRegistry, "attach_meeting_link", _attach)

        result = backfill_meeting_links()

        assert result["attached"] == 1
        assert result["failed"] == 1
        db.refresh(first)
        db.refresh(second)
        assert first.meeting_link is None
        assert second.meeting_link is not None

    def test_skips_past_sessions(self, task_env, make_session):
        make_session(-5)

        assert backfill_meeting_links()["attached"] == 0
        assert task_env.calls == []


def test_beat_schedule_runs_both_jobs():
    schedule = get_beat_schedule()

    assert schedule["release-stale-holds"]["task"] == "app.tasks.booking_tasks.release_stale_holds"
    assert schedule["backfill-meeting-links"]["task"] == "app.tasks.booking_tasks.backfill_meeting_links"
