"""
Tests for BookingOrchestrator.

Covers the booking lifecycle end to end against the fake Khalti client:
reserve -> initiate -> poll -> finalize, plus the failure paths that must
free the slot and the ones that must never lose a captured payment.
"""

from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from app.core.exceptions import (
    BusinessRuleException,
    CompensationRequiredException,
    ConflictException,
    GatewayException,
    NotFoundException,
    SlotUnavailableException,
    ValidationException,
)
from app.core.timezone_utils import utc_now
from app.integrations.khalti_client import (
    KHALTI_COMPLETED,
    KHALTI_PENDING,
    KHALTI_USER_CANCELED,
    KhaltiError,
)
from app.integrations.meeting_client import MeetingProviderError
from app.models import AttemptState, PaymentIntent, PaymentStatus, TherapySession
from app.services.booking_orchestrator import BookingOrchestrator, BookingOutcomeStatus
from app.services.payment_gateway import PaymentGateway, VerificationOutcome, VerificationStatus

from tests.utils.booking_data import CLIENT_ID, OTHER_CLIENT_ID, SESSION_FEE, SESSION_FEE_PAISA


def _intent(db: Session, transaction_ref: str) -> PaymentIntent:
    intent = db.query(PaymentIntent).filter_by(transaction_ref=transaction_ref).one()
    db.refresh(intent)
    return intent


def _slot_available(db: Session, slot) -> bool:
    db.refresh(slot)
    return slot.is_available


class _ScriptedGateway(PaymentGateway):
    """Real initiate; ``verify`` runs ``on_verify`` and returns a fixed outcome."""

    def __init__(self, inner: PaymentGateway, outcome: VerificationOutcome, on_verify=None):
        self.inner = inner
        self.outcome = outcome
        self.on_verify = on_verify

    def initiate(self, amount, currency, order_ref, customer_info=None):
        return self.inner.initiate(amount, currency, order_ref, customer_info)

    def verify(self, transaction_ref: str) -> VerificationOutcome:
        if self.on_verify is not None:
            self.on_verify(transaction_ref)
        return self.outcome


class TestStartBooking:
    def test_reserves_slot_and_opens_payment(self, orchestrator, make_slot, khalti, db):
        slot = make_slot()

        result = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)

        assert result.redirect_url.startswith("https://test-pay.khalti.com/")
        assert result.order_ref.startswith("SESSION-therapist-01-client-01-")
        assert result.resumed is False
        assert _slot_available(db, slot) is False
        intent = _intent(db, result.transaction_ref)
        assert intent.attempt_state == AttemptState.AWAITING_PAYMENT.value
        assert intent.status == PaymentStatus.INITIATED.value
        assert intent.amount == SESSION_FEE
        assert khalti.calls[0]["amount_paisa"] == SESSION_FEE_PAISA

    def test_second_client_loses_the_slot(self, orchestrator, make_slot):
        slot = make_slot()
        orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)

        with pytest.raises(SlotUnavailableException) as exc_info:
            orchestrator.start_booking(OTHER_CLIENT_ID, slot.id, SESSION_FEE)
        assert exc_info.value.code == "SLOT_UNAVAILABLE"

    def test_repeat_start_resumes_the_active_attempt(self, orchestrator, make_slot, khalti):
        slot = make_slot()
        first = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)

        again = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)

        assert again.resumed is True
        assert again.transaction_ref == first.transaction_ref
        assert len([c for c in khalti.calls if c["method"] == "initiate_payment"]) == 1

    def test_past_slot_is_rejected(self, orchestrator, make_slot):
        slot = make_slot(-1)

        with pytest.raises(BusinessRuleException) as exc_info:
            orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        assert exc_info.value.code == "SLOT_IN_PAST"

    def test_unknown_slot(self, orchestrator):
        with pytest.raises(NotFoundException):
            orchestrator.start_booking(CLIENT_ID, "01ARZ3NDEKTSV4RRFFQ69G5FAV", SESSION_FEE)

    def test_non_positive_amount(self, orchestrator, make_slot):
        slot = make_slot()
        with pytest.raises(ValidationException):
            orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE * 0)

    def test_gateway_failure_releases_the_slot(self, orchestrator, make_slot, khalti, db):
        slot = make_slot()
        khalti.set_error("initiate_payment", KhaltiError("boom", status_code=503))

        with pytest.raises(GatewayException):
            orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)

        assert _slot_available(db, slot) is True
        assert db.query(PaymentIntent).count() == 0


class TestPollPayment:
    def test_pending_payment_stays_pending(self, orchestrator, make_slot, khalti, db):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        khalti.set_status(started.transaction_ref, KHALTI_PENDING)

        outcome = orchestrator.poll_payment(started.transaction_ref, CLIENT_ID)

        assert outcome.status == BookingOutcomeStatus.STILL_PENDING
        assert _intent(db, started.transaction_ref).status == PaymentStatus.PENDING.value
        assert _slot_available(db, slot) is False

    def test_repeated_pending_verification_changes_nothing(self, orchestrator, make_slot, db):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)

        outcomes = [orchestrator.poll_payment(started.transaction_ref) for _ in range(3)]

        assert {o.status for o in outcomes} == {BookingOutcomeStatus.STILL_PENDING}
        assert db.query(TherapySession).count() == 0
        assert _slot_available(db, slot) is False
        assert _intent(db, started.transaction_ref).attempt_state == AttemptState.AWAITING_PAYMENT.value

    def test_completed_payment_confirms_one_session(
        self, orchestrator, make_slot, pay, meeting_client, db
    ):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        pay(started.transaction_ref)

        outcome = orchestrator.poll_payment(started.transaction_ref, CLIENT_ID)

        assert outcome.status == BookingOutcomeStatus.CONFIRMED
        session = db.get(TherapySession, outcome.session_id)
        assert session.slot_id == slot.id
        assert session.scheduled_time == slot.start_time
        assert session.duration_minutes == 60
        assert session.payment_amount == SESSION_FEE
        assert session.payment_method == "khalti"
        assert session.payment_transaction_ref == started.transaction_ref
        assert session.meeting_link == f"https://meet.healnest.local/session-{session.id}"
        assert len(meeting_client.calls) == 1
        intent = _intent(db, started.transaction_ref)
        assert intent.attempt_state == AttemptState.CONFIRMED.value
        assert intent.status == PaymentStatus.VERIFIED.value
        assert _slot_available(db, slot) is False

    def test_repeated_polls_return_the_same_session(self, orchestrator, make_slot, pay, db):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        pay(started.transaction_ref)

        outcomes = [orchestrator.poll_payment(started.transaction_ref) for _ in range(3)]

        assert {o.session_id for o in outcomes} == {outcomes[0].session_id}
        assert db.query(TherapySession).count() == 1

    def test_losing_the_finalize_race_returns_the_winners_session(
        self, orchestrator, make_slot, pay, db
    ):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        stale_intent = _intent(db, started.transaction_ref)
        pay(started.transaction_ref)
        winner = orchestrator.poll_payment(started.transaction_ref)

        completed = VerificationOutcome(
            status=VerificationStatus.COMPLETED, amount=SESSION_FEE, currency="NPR"
        )
        loser = orchestrator._finalize(
            stale_intent, completed, AttemptState.AWAITING_PAYMENT, allow_retry=True
        )

        assert loser.status == BookingOutcomeStatus.CONFIRMED
        assert loser.session_id == winner.session_id
        assert db.query(TherapySession).count() == 1

    def test_cancelled_payment_fails_and_frees_the_slot(self, orchestrator, make_slot, khalti, db):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        khalti.set_status(started.transaction_ref, KHALTI_USER_CANCELED)

        outcome = orchestrator.poll_payment(started.transaction_ref)

        assert outcome.status == BookingOutcomeStatus.FAILED
        assert _slot_available(db, slot) is True
        assert _intent(db, started.transaction_ref).attempt_state == AttemptState.FAILED.value

    def test_unknown_provider_reference_fails_the_attempt(self, orchestrator, make_slot, khalti, db):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        del khalti.payments[started.transaction_ref]

        outcome = orchestrator.poll_payment(started.transaction_ref)

        assert outcome.status == BookingOutcomeStatus.FAILED
        assert outcome.reason == "provider_not_found"
        assert _slot_available(db, slot) is True

    def test_amount_mismatch_is_never_trusted(self, orchestrator, make_slot, khalti, db):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        khalti.set_status(started.transaction_ref, KHALTI_COMPLETED, total_amount=100)

        outcome = orchestrator.poll_payment(started.transaction_ref)

        assert outcome.status == BookingOutcomeStatus.FAILED
        assert outcome.reason == "amount_mismatch"
        assert db.query(TherapySession).count() == 0
        assert _slot_available(db, slot) is True

    def test_currency_mismatch_is_never_trusted(self, orchestrator, make_slot, gateway, db):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        orchestrator.gateway = _ScriptedGateway(
            gateway,
            VerificationOutcome(VerificationStatus.COMPLETED, amount=SESSION_FEE, currency="USD"),
        )

        outcome = orchestrator.poll_payment(started.transaction_ref)

        assert outcome.status == BookingOutcomeStatus.FAILED
        assert outcome.reason == "currency_mismatch"
        assert db.query(TherapySession).count() == 0
        assert _slot_available(db, slot) is True
        assert _intent(db, started.transaction_ref).attempt_state == AttemptState.FAILED.value

    @pytest.mark.parametrize("release", ["cancel", "sweep"])
    def test_release_during_pending_verify_is_not_overwritten(
        self, orchestrator, make_slot, gateway, session_factory, db, release
    ):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)

        def _release_elsewhere(transaction_ref: str) -> None:
            with session_factory() as other_db:
                other = BookingOrchestrator(other_db, gateway)
                if release == "cancel":
                    other.cancel_attempt(transaction_ref, CLIENT_ID)
                else:
                    other.release_stale_holds(max_age=timedelta(0))

        orchestrator.gateway = _ScriptedGateway(
            gateway,
            VerificationOutcome(VerificationStatus.PENDING, provider_status=KHALTI_PENDING),
            on_verify=_release_elsewhere,
        )

        outcome = orchestrator.poll_payment(started.transaction_ref, CLIENT_ID)

        assert outcome.status == BookingOutcomeStatus.FAILED
        intent = _intent(db, started.transaction_ref)
        assert intent.attempt_state == AttemptState.RELEASED.value
        assert intent.status == PaymentStatus.ABANDONED.value
        assert _slot_available(db, slot) is True

    def test_gateway_error_leaves_attempt_untouched(self, orchestrator, make_slot, khalti, db):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        khalti.set_error("lookup_payment", KhaltiError("timeout"))

        with pytest.raises(GatewayException):
            orchestrator.poll_payment(started.transaction_ref)

        assert _intent(db, started.transaction_ref).attempt_state == AttemptState.AWAITING_PAYMENT.value
        assert _slot_available(db, slot) is False

    def test_expired_hold_is_released_lazily(self, orchestrator, make_slot, db):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        intent = _intent(db, started.transaction_ref)
        intent.hold_expires_at = utc_now() - timedelta(seconds=1)
        db.commit()

        outcome = orchestrator.poll_payment(started.transaction_ref)

        assert outcome.status == BookingOutcomeStatus.FAILED
        assert outcome.reason == "hold_expired"
        assert _slot_available(db, slot) is True

    def test_other_clients_reference_looks_missing(self, orchestrator, make_slot):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)

        with pytest.raises(NotFoundException):
            orchestrator.poll_payment(started.transaction_ref, OTHER_CLIENT_ID)

    def test_meeting_provider_outage_does_not_block_confirmation(
        self, orchestrator, make_slot, pay, meeting_client, db
    ):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        pay(started.transaction_ref)
        meeting_client.error = MeetingProviderError("down", status_code=503)

        outcome = orchestrator.poll_payment(started.transaction_ref)

        assert outcome.status == BookingOutcomeStatus.CONFIRMED
        assert db.get(TherapySession, outcome.session_id).meeting_link is None


class TestCompensation:
    def test_session_write_failure_requires_compensation(
        self, orchestrator, session_registry, make_slot, pay, db, monkeypatch
    ):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        pay(started.transaction_ref)

        def _explode(**kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(session_registry, "create", _explode)

        with pytest.raises(CompensationRequiredException) as exc_info:
            orchestrator.poll_payment(started.transaction_ref)

        assert exc_info.value.transaction_ref == started.transaction_ref
        intent = _intent(db, started.transaction_ref)
        assert intent.attempt_state == AttemptState.COMPENSATION_REQUIRED.value
        assert intent.status == PaymentStatus.VERIFIED.value
        assert "disk full" in intent.last_error
        assert db.query(TherapySession).count() == 0
        assert orchestrator.compensation_backlog() == 1

    def test_compensation_is_sticky(self, orchestrator, session_registry, make_slot, pay, monkeypatch):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        pay(started.transaction_ref)

        def _explode(**kwargs):
            raise RuntimeError("constraint check failed")

        monkeypatch.setattr(session_registry, "create", _explode)
        with pytest.raises(CompensationRequiredException):
            orchestrator.poll_payment(started.transaction_ref)
        monkeypatch.undo()

        with pytest.raises(CompensationRequiredException):
            orchestrator.poll_payment(started.transaction_ref)
        with pytest.raises(ConflictException) as exc_info:
            orchestrator.cancel_attempt(started.transaction_ref)
        assert exc_info.value.code == "COMPENSATION_PENDING"


class TestCancelAttempt:
    def test_abandon_releases_the_slot(self, orchestrator, make_slot, db):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)

        outcome = orchestrator.cancel_attempt(started.transaction_ref, CLIENT_ID)

        assert outcome.status == BookingOutcomeStatus.FAILED
        assert _slot_available(db, slot) is True
        assert [s.id for s in orchestrator.slot_ledger.list_available(slot.therapist_id)] == [slot.id]
        intent = _intent(db, started.transaction_ref)
        assert intent.attempt_state == AttemptState.RELEASED.value
        assert intent.status == PaymentStatus.ABANDONED.value

    def test_abandoned_slot_is_bookable_by_others(self, orchestrator, make_slot):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        orchestrator.cancel_attempt(started.transaction_ref, CLIENT_ID)

        other = orchestrator.start_booking(OTHER_CLIENT_ID, slot.id, SESSION_FEE)

        assert other.transaction_ref != started.transaction_ref

    def test_cancel_twice_is_a_no_op(self, orchestrator, make_slot):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        orchestrator.cancel_attempt(started.transaction_ref)

        outcome = orchestrator.cancel_attempt(started.transaction_ref)

        assert outcome.status == BookingOutcomeStatus.FAILED

    def test_confirmed_booking_cannot_be_abandoned(self, orchestrator, make_slot, pay):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        pay(started.transaction_ref)
        orchestrator.poll_payment(started.transaction_ref)

        with pytest.raises(ConflictException) as exc_info:
            orchestrator.cancel_attempt(started.transaction_ref)
        assert exc_info.value.code == "BOOKING_CONFIRMED"

    def test_poll_after_abandon_reports_failed(self, orchestrator, make_slot, khalti):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        orchestrator.cancel_attempt(started.transaction_ref)
        khalti.set_status(started.transaction_ref, KHALTI_PENDING)

        outcome = orchestrator.poll_payment(started.transaction_ref)

        assert outcome.status == BookingOutcomeStatus.FAILED


class TestStaleHolds:
    def test_sweep_releases_old_holds_only(self, orchestrator, make_slot, db):
        old_slot = make_slot(24)
        fresh_slot = make_slot(48)
        old = orchestrator.start_booking(CLIENT_ID, old_slot.id, SESSION_FEE)
        fresh = orchestrator.start_booking(OTHER_CLIENT_ID, fresh_slot.id, SESSION_FEE)
        old_intent = _intent(db, old.transaction_ref)
        old_intent.created_at = utc_now() - timedelta(minutes=30)
        db.commit()

        released = orchestrator.release_stale_holds()

        assert released == 1
        assert _slot_available(db, old_slot) is True
        assert _slot_available(db, fresh_slot) is False
        assert _intent(db, old.transaction_ref).attempt_state == AttemptState.RELEASED.value
        assert _intent(db, fresh.transaction_ref).attempt_state == AttemptState.AWAITING_PAYMENT.value

    def test_sweep_is_idempotent(self, orchestrator, make_slot):
        slot = make_slot()
        orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)

        assert orchestrator.release_stale_holds(max_age=timedelta(0)) == 1
        assert orchestrator.release_stale_holds(max_age=timedelta(0)) == 0

    def test_late_payment_rebooks_a_free_slot(self, orchestrator, make_slot, pay, db):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        orchestrator.release_stale_holds(max_age=timedelta(0))
        pay(started.transaction_ref)

        outcome = orchestrator.poll_payment(started.transaction_ref)

        assert outcome.status == BookingOutcomeStatus.CONFIRMED
        assert _slot_available(db, slot) is False
        assert _intent(db, started.transaction_ref).attempt_state == AttemptState.CONFIRMED.value

    def test_late_payment_for_a_taken_slot_requires_compensation(
        self, orchestrator, make_slot, pay, db
    ):
        slot = make_slot()
        started = orchestrator.start_booking(CLIENT_ID, slot.id, SESSION_FEE)
        orchestrator.release_stale_holds(max_age=timedelta(0))
        rival = orchestrator.start_booking(OTHER_CLIENT_ID, slot.id, SESSION_FEE)
        pay(started.transaction_ref)

        with pytest.raises(CompensationRequiredException):
            orchestrator.poll_payment(started.transaction_ref)

        assert db.query(TherapySession).count() == 0
        assert (
            _intent(db, started.transaction_ref).attempt_state
            == AttemptState.COMPENSATION_REQUIRED.value
        )
        assert _intent(db, rival.transaction_ref).attempt_state == AttemptState.AWAITING_PAYMENT.value
        assert _slot_available(db, slot) is False
