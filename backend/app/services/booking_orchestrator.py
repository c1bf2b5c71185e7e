# backend/app/services/booking_orchestrator.py
"""
Booking orchestrator.

Drives one booking attempt from slot selection to a confirmed session:

    reserve slot -> initiate payment -> poll until verified -> write session

The slot is reserved before money is requested, so two clients can never
pay for the same slot. Verification is safe to repeat; only the finalize
step writes, and it is guarded twice: a conditional state transition on the
intent and the unique transaction reference on the session.

Gateway calls never run inside a database transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
import logging
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.constants import PAYMENT_METHOD_KHALTI
from ..core.exceptions import (
    BusinessRuleException,
    CompensationRequiredException,
    ConflictException,
    DuplicateSessionError,
    NotFoundException,
    ServiceException,
    SlotUnavailableException,
    StaleHoldException,
    ValidationException,
)
from ..core.timezone_utils import utc_now
from ..integrations.meeting_client import MeetingProviderError
from ..models.payment_intent import AttemptState, PaymentIntent, PaymentStatus
from ..models.therapy_session import TherapySession
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..repositories.payment_intent_repository import PaymentIntentRepository
from .base import BaseService
from .payment_gateway import (
    PaymentGateway,
    VerificationOutcome,
    VerificationStatus,
    build_order_ref,
)
from .session_registry import SessionRegistry
from .slot_ledger import SlotLedger

if TYPE_CHECKING:
    from ..integrations.meeting_client import FakeMeetingClient, MeetingClient

logger = logging.getLogger(__name__)


class BookingOutcomeStatus(str, Enum):
    STILL_PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class BookingOutcome:
    status: BookingOutcomeStatus
    transaction_ref: str
    session_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def still_pending(cls, transaction_ref: str) -> "BookingOutcome":
        return cls(BookingOutcomeStatus.STILL_PENDING, transaction_ref)

    @classmethod
    def confirmed(cls, transaction_ref: str, session_id: str) -> "BookingOutcome":
        return cls(BookingOutcomeStatus.CONFIRMED, transaction_ref, session_id=session_id)

    @classmethod
    def failed(cls, transaction_ref: str, reason: str) -> "BookingOutcome":
        return cls(BookingOutcomeStatus.FAILED, transaction_ref, reason=reason)

    @property
    def is_resolved(self) -> bool:
        return self.status != BookingOutcomeStatus.STILL_PENDING


@dataclass(frozen=True)
class StartBookingResult:
    transaction_ref: str
    redirect_url: str
    order_ref: str
    slot_id: str
    hold_expires_at: datetime
    resumed: bool = False


class _FinalizeRaceLost(Exception):
    """Another caller moved the intent first; the transaction was rolled back."""


class _SlotTaken(Exception):
    """A released slot was booked by someone else before the late payment arrived."""


class BookingOrchestrator(BaseService):
    """
    Coordinates the slot ledger, the payment gateway and the session registry.

    All collaborators are injected so tests can swap the gateway for a fake.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        *,
        slot_ledger: Optional[SlotLedger] = None,
        session_registry: Optional[SessionRegistry] = None,
        intent_repository: Optional[PaymentIntentRepository] = None,
        meeting_client: Optional["MeetingClient | FakeMeetingClient"] = None,
        hold_timeout: Optional[timedelta] = None,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.slot_ledger = slot_ledger or SlotLedger(db)
        self.session_registry = session_registry or SessionRegistry(db, slot_ledger=self.slot_ledger)
        self.intents = intent_repository or RepositoryFactory.create_payment_intent_repository(db)
        self.meeting_client = meeting_client
        self.hold_timeout = hold_timeout or settings.booking_hold_timeout

    # ------------------------------------------------------------------ start

    @BaseService.measure_operation("start_booking")
    def start_booking(
        self,
        client_id: str,
        slot_id: str,
        amount: Decimal,
        *,
        currency: Optional[str] = None,
        customer_info: Optional[Mapping[str, Any]] = None,
    ) -> StartBookingResult:
        """
        Reserve ``slot_id`` for ``client_id`` and open a payment for it.

        Calling again while the client's attempt on this slot is still
        awaiting payment returns that attempt instead of opening another.

        Raises:
            SlotUnavailableException: another client holds or booked the slot
            GatewayException: the provider refused; the slot is released
        """
        if amount <= 0:
            raise ValidationException("Amount must be positive", details={"amount": str(amount)})
        currency = (currency or settings.payment_currency).upper()

        slot = self.slot_ledger.get_slot(slot_id)
        now = utc_now()
        if slot.start_time <= now:
            raise BusinessRuleException(
                "This slot has already started", code="SLOT_IN_PAST", details={"slot_id": slot_id}
            )

        existing = self.intents.find_active_for_client_slot(client_id, slot_id)
        if existing is not None:
            try:
                self._ensure_hold_alive(existing, now)
            except StaleHoldException:
                self._release_attempt(existing, reason="hold_expired")
            else:
                self.logger.info(
                    "Resuming active booking attempt",
                    extra={"transaction_ref": existing.transaction_ref, "slot_id": slot_id},
                )
                return StartBookingResult(
                    transaction_ref=existing.transaction_ref,
                    redirect_url=existing.redirect_url or "",
                    order_ref=existing.order_ref,
                    slot_id=slot_id,
                    hold_expires_at=existing.hold_expires_at,
                    resumed=True,
                )

        handle = self.slot_ledger.reserve(slot_id)
        if handle is None:
            prometheus_metrics.record_booking_outcome("rejected")
            raise SlotUnavailableException(slot_id)

        order_ref = build_order_ref(handle.therapist_id, client_id, handle.start_time)
        try:
            initiated = self.gateway.initiate(amount, currency, order_ref, customer_info)
        except Exception:
            self.logger.warning(
                "Payment initiation failed; releasing slot",
                extra={"slot_id": slot_id, "client_id": client_id, "order_ref": order_ref},
            )
            self._release_slot_after_failure(slot_id)
            raise

        hold_expires_at = utc_now() + self.hold_timeout
        try:
            with self.transaction():
                intent = self.intents.create(
                    transaction_ref=initiated.transaction_ref,
                    order_ref=order_ref,
                    client_id=client_id,
                    therapist_id=handle.therapist_id,
                    slot_id=slot_id,
                    amount=amount,
                    currency=currency,
                    status=PaymentStatus.INITIATED.value,
                    attempt_state=AttemptState.AWAITING_PAYMENT.value,
                    redirect_url=initiated.redirect_url,
                    provider_response=initiated.raw,
                    hold_expires_at=hold_expires_at,
                )
        except Exception:
            self.logger.error(
                "Could not record payment intent; releasing slot",
                extra={"slot_id": slot_id, "transaction_ref": initiated.transaction_ref},
                exc_info=True,
            )
            self._release_slot_after_failure(slot_id)
            raise

        prometheus_metrics.record_booking_outcome("started")
        self.log_operation(
            "start_booking",
            transaction_ref=intent.transaction_ref,
            client_id=client_id,
            slot_id=slot_id,
            amount=str(amount),
        )
        return StartBookingResult(
            transaction_ref=intent.transaction_ref,
            redirect_url=initiated.redirect_url,
            order_ref=order_ref,
            slot_id=slot_id,
            hold_expires_at=hold_expires_at,
        )

    # ------------------------------------------------------------------- poll

    @BaseService.measure_operation("poll_payment")
    def poll_payment(self, transaction_ref: str, client_id: Optional[str] = None) -> BookingOutcome:
        """
        Check payment progress and finalize the booking once it is paid.

        Safe to call repeatedly and concurrently: once the payment completes,
        every call returns ``Confirmed`` with the same session id.

        Raises:
            NotFoundException: unknown reference (or another client's)
            GatewayException: the provider could not be reached
            CompensationRequiredException: paid, but the booking could not
                be recorded
        """
        intent = self._get_intent(transaction_ref, client_id)

        existing = self.session_registry.get_by_transaction_ref(transaction_ref)
        if existing is not None:
            return BookingOutcome.confirmed(transaction_ref, existing.id)

        settled = self._settled_outcome(intent)
        if settled is not None:
            return settled

        outcome = self.gateway.verify(transaction_ref)
        return self._apply_verification(intent, outcome, allow_retry=True)

    def _settled_outcome(self, intent: PaymentIntent) -> Optional[BookingOutcome]:
        """Outcome for attempts that no provider answer can change."""
        state = intent.attempt_state
        if state == AttemptState.COMPENSATION_REQUIRED.value:
            raise CompensationRequiredException(intent.transaction_ref, intent.last_error or "")
        if state == AttemptState.FAILED.value:
            return BookingOutcome.failed(intent.transaction_ref, intent.last_error or "payment_failed")
        if state == AttemptState.CONFIRMED.value:
            self.logger.error(
                "Confirmed intent without a session",
                extra={"transaction_ref": intent.transaction_ref},
            )
            raise ServiceException("Booking record is inconsistent")
        return None

    def _apply_verification(
        self, intent: PaymentIntent, outcome: VerificationOutcome, *, allow_retry: bool
    ) -> BookingOutcome:
        ref = intent.transaction_ref
        state = intent.attempt_state
        awaiting = state == AttemptState.AWAITING_PAYMENT.value

        if outcome.status == VerificationStatus.PENDING:
            if not awaiting:
                return BookingOutcome.failed(ref, intent.last_error or "attempt_released")
            try:
                self._ensure_hold_alive(intent, utc_now())
            except StaleHoldException:
                if self._release_attempt(intent, reason="hold_expired"):
                    prometheus_metrics.record_booking_outcome("released")
                    return BookingOutcome.failed(ref, "hold_expired")
                return self._retry_after_race(ref, outcome, allow_retry)
            # A cancel or sweep may have released the attempt during verify().
            with self.transaction():
                still_awaiting = self.intents.transition(
                    ref,
                    [AttemptState.AWAITING_PAYMENT],
                    AttemptState.AWAITING_PAYMENT,
                    status=PaymentStatus.PENDING.value,
                )
            if not still_awaiting:
                return self._retry_after_race(ref, outcome, allow_retry)
            return BookingOutcome.still_pending(ref)

        if outcome.status in (VerificationStatus.NOT_FOUND, VerificationStatus.FAILED):
            reason = f"provider_{outcome.status.value}"
            if awaiting:
                if not self._fail_attempt(intent, outcome, reason):
                    return self._retry_after_race(ref, outcome, allow_retry)
            return BookingOutcome.failed(ref, intent.last_error or reason)

        # Completed: never trust it until it matches what we asked for.
        mismatch = self._payment_mismatch(intent, outcome)
        if mismatch is not None:
            self.logger.error(
                "Completed payment does not match intent",
                extra={
                    "transaction_ref": ref,
                    "expected_amount": str(intent.amount),
                    "expected_currency": intent.currency,
                    "reported_amount": str(outcome.amount),
                    "reported_currency": outcome.currency,
                },
            )
            if awaiting and not self._fail_attempt(intent, outcome, mismatch):
                return self._retry_after_race(ref, outcome, allow_retry)
            return BookingOutcome.failed(ref, mismatch)

        if awaiting:
            return self._finalize(intent, outcome, AttemptState.AWAITING_PAYMENT, allow_retry)

        if state == AttemptState.RELEASED.value:
            # Money arrived after the hold was released. The slot has to be
            # won again through the ledger, exactly like a fresh booking.
            self.logger.warning(
                "Late payment on released attempt",
                extra={"transaction_ref": ref, "slot_id": intent.slot_id},
            )
            return self._finalize(intent, outcome, AttemptState.RELEASED, allow_retry)

        # Another caller is finalizing right now.
        return BookingOutcome.still_pending(ref)

    def _finalize(
        self,
        intent: PaymentIntent,
        outcome: VerificationOutcome,
        from_state: AttemptState,
        allow_retry: bool,
    ) -> BookingOutcome:
        """
        Write the session exactly once for this transaction reference.

        Claiming the intent, re-taking a released slot and inserting the
        session all commit together or not at all.
        """
        ref = intent.transaction_ref
        retake_slot = from_state == AttemptState.RELEASED
        slot = self.slot_ledger.get_slot(intent.slot_id)
        now = utc_now()
        try:
            with self.transaction():
                if not self.intents.transition(ref, [from_state], AttemptState.FINALIZING):
                    raise _FinalizeRaceLost()
                if retake_slot and self.slot_ledger.reserve(intent.slot_id, commit=False) is None:
                    raise _SlotTaken()
                session = self.session_registry.create(
                    client_id=intent.client_id,
                    therapist_id=intent.therapist_id,
                    slot_id=intent.slot_id,
                    scheduled_time=slot.start_time,
                    duration_minutes=slot.duration_minutes,
                    payment_amount=intent.amount,
                    payment_currency=intent.currency,
                    payment_method=PAYMENT_METHOD_KHALTI,
                    payment_transaction_ref=ref,
                    payment_status=PaymentStatus.VERIFIED.value,
                )
                self.intents.transition(
                    ref,
                    [AttemptState.FINALIZING],
                    AttemptState.CONFIRMED,
                    status=PaymentStatus.VERIFIED.value,
                    provider_response=outcome.raw,
                    last_error=None,
                    resolved_at=now,
                )
        except _FinalizeRaceLost:
            return self._retry_after_race(ref, outcome, allow_retry)
        except _SlotTaken:
            self._require_compensation(intent, outcome, reason="late_payment_slot_taken")
        except DuplicateSessionError:
            existing = self.session_registry.get_by_transaction_ref(ref)
            if existing is not None:
                return BookingOutcome.confirmed(ref, existing.id)
            self._require_compensation(intent, outcome, reason="duplicate_session_unresolved")
        except Exception as exc:
            self._require_compensation(
                intent, outcome, reason=f"session_write_failed: {exc}", cause=exc
            )

        prometheus_metrics.record_booking_outcome("confirmed")
        self.log_operation(
            "booking_confirmed",
            transaction_ref=ref,
            session_id=session.id,
            client_id=intent.client_id,
            slot_id=intent.slot_id,
            late_payment=retake_slot,
        )
        self._attach_meeting_link(session)
        return BookingOutcome.confirmed(ref, session.id)

    def _retry_after_race(
        self, transaction_ref: str, outcome: VerificationOutcome, allow_retry: bool
    ) -> BookingOutcome:
        """Re-read state after losing a conditional transition and apply the outcome once more."""
        existing = self.session_registry.get_by_transaction_ref(transaction_ref)
        if existing is not None:
            return BookingOutcome.confirmed(transaction_ref, existing.id)
        if not allow_retry:
            return BookingOutcome.still_pending(transaction_ref)
        intent = self._get_intent(transaction_ref)
        self.intents.refresh(intent)
        settled = self._settled_outcome(intent)
        if settled is not None:
            return settled
        return self._apply_verification(intent, outcome, allow_retry=False)

    def _require_compensation(
        self,
        intent: PaymentIntent,
        outcome: VerificationOutcome,
        *,
        reason: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        """
        Record a captured payment that has no session and raise.

        Never retried: doing so could charge or book twice.
        """
        ref = intent.transaction_ref
        context: Dict[str, Any] = {
            "transaction_ref": ref,
            "amount": str(intent.amount),
            "currency": intent.currency,
            "client_id": intent.client_id,
            "therapist_id": intent.therapist_id,
            "slot_id": intent.slot_id,
            "order_ref": intent.order_ref,
            "reason": reason,
        }
        try:
            with self.transaction():
                self.intents.transition(
                    ref,
                    [AttemptState.AWAITING_PAYMENT, AttemptState.RELEASED],
                    AttemptState.COMPENSATION_REQUIRED,
                    status=PaymentStatus.VERIFIED.value,
                    provider_response=outcome.raw,
                    last_error=reason[:2000],
                    resolved_at=utc_now(),
                )
        except Exception:
            self.logger.critical(
                "Could not persist compensation state", extra=context, exc_info=True
            )
        self.logger.critical(
            "COMPENSATION REQUIRED: payment captured but session not recorded",
            extra=context,
            exc_info=cause is not None,
        )
        prometheus_metrics.record_compensation_required()
        raise CompensationRequiredException(ref, reason) from cause

    def _payment_mismatch(self, intent: PaymentIntent, outcome: VerificationOutcome) -> Optional[str]:
        if outcome.amount is None or Decimal(outcome.amount) != Decimal(intent.amount):
            return "amount_mismatch"
        if (outcome.currency or "").upper() != intent.currency.upper():
            return "currency_mismatch"
        return None

    def _attach_meeting_link(self, session: TherapySession) -> None:
        """Best effort; a missing link is backfilled by a periodic task."""
        if self.meeting_client is None:
            return
        try:
            link = self.meeting_client.create_meeting(
                session_id=session.id,
                starts_at=session.scheduled_time,
                duration_minutes=session.duration_minutes,
            )
            self.session_registry.attach_meeting_link(session, link)
        except (MeetingProviderError, ServiceException) as exc:
            self.logger.warning(
                "Meeting link not created; will backfill",
                extra={"session_id": session.id, "error": str(exc)},
            )

    # ----------------------------------------------------------------- cancel

    @BaseService.measure_operation("cancel_attempt")
    def cancel_attempt(self, transaction_ref: str, client_id: Optional[str] = None) -> BookingOutcome:
        """
        Client abandons an attempt that is awaiting payment.

        The provider is not contacted; it expires the payment on its own.
        Cancelling an already released or failed attempt is a no-op.
        """
        intent = self._get_intent(transaction_ref, client_id)
        if intent.attempt_state == AttemptState.AWAITING_PAYMENT.value:
            if self._release_attempt(intent, reason="cancelled_by_client"):
                prometheus_metrics.record_booking_outcome("released")
                return BookingOutcome.failed(transaction_ref, "cancelled")
            self.intents.refresh(intent)

        if self.session_registry.get_by_transaction_ref(transaction_ref) is not None:
            raise ConflictException(
                "Booking is already confirmed; cancel the session instead",
                code="BOOKING_CONFIRMED",
                details={"transaction_ref": transaction_ref},
            )
        if intent.attempt_state == AttemptState.COMPENSATION_REQUIRED.value:
            raise ConflictException(
                "Payment is under manual review",
                code="COMPENSATION_PENDING",
                details={"transaction_ref": transaction_ref},
            )
        return BookingOutcome.failed(transaction_ref, intent.last_error or "cancelled")

    # ------------------------------------------------------------------ sweep

    @BaseService.measure_operation("release_stale_holds")
    def release_stale_holds(self, max_age: Optional[timedelta] = None, limit: int = 200) -> int:
        """
        Release holds that have been awaiting payment longer than ``max_age``.

        Returns:
            Number of attempts released by this run
        """
        max_age = max_age if max_age is not None else self.hold_timeout
        cutoff = utc_now() - max_age
        released = 0
        for intent in self.intents.find_stale(cutoff, limit=limit):
            stale = StaleHoldException(intent.transaction_ref, intent.slot_id)
            if self._release_attempt(intent, reason=stale.code.lower()):
                released += 1
                self.logger.info("Released stale hold", extra=stale.details)
        prometheus_metrics.record_stale_holds_released(released)
        if released:
            self.log_operation("release_stale_holds", released=released, cutoff=cutoff.isoformat())
        return released

    def compensation_backlog(self) -> int:
        return self.intents.count_in_state(AttemptState.COMPENSATION_REQUIRED)

    # ---------------------------------------------------------------- helpers

    def _get_intent(self, transaction_ref: str, client_id: Optional[str] = None) -> PaymentIntent:
        intent = self.intents.get_by_transaction_ref(transaction_ref)
        if intent is None or (client_id is not None and intent.client_id != client_id):
            raise NotFoundException(
                "Booking attempt not found",
                code="BOOKING_ATTEMPT_NOT_FOUND",
                details={"transaction_ref": transaction_ref},
            )
        return intent

    def _ensure_hold_alive(self, intent: PaymentIntent, now: datetime) -> None:
        if intent.is_hold_expired(now):
            raise StaleHoldException(intent.transaction_ref, intent.slot_id)

    def _release_attempt(self, intent: PaymentIntent, *, reason: str) -> bool:
        """AwaitingPayment -> Released, slot freed in the same transaction."""
        with self.transaction():
            moved = self.intents.transition(
                intent.transaction_ref,
                [AttemptState.AWAITING_PAYMENT],
                AttemptState.RELEASED,
                status=PaymentStatus.ABANDONED.value,
                last_error=reason,
                resolved_at=utc_now(),
            )
            if moved:
                self.slot_ledger.release(intent.slot_id, commit=False)
        if moved:
            self.logger.info(
                "Booking attempt released",
                extra={"transaction_ref": intent.transaction_ref, "slot_id": intent.slot_id, "reason": reason},
            )
        return moved

    def _fail_attempt(self, intent: PaymentIntent, outcome: VerificationOutcome, reason: str) -> bool:
        """AwaitingPayment -> Failed, slot freed in the same transaction."""
        with self.transaction():
            moved = self.intents.transition(
                intent.transaction_ref,
                [AttemptState.AWAITING_PAYMENT],
                AttemptState.FAILED,
                status=PaymentStatus.FAILED.value,
                provider_response=outcome.raw or None,
                last_error=reason,
                resolved_at=utc_now(),
            )
            if moved:
                self.slot_ledger.release(intent.slot_id, commit=False)
        if moved:
            prometheus_metrics.record_booking_outcome("failed")
            self.logger.info(
                "Booking attempt failed",
                extra={"transaction_ref": intent.transaction_ref, "reason": reason},
            )
        return moved

    def _release_slot_after_failure(self, slot_id: str) -> None:
        try:
            self.slot_ledger.release(slot_id)
        except Exception:
            self.logger.exception("Failed to release slot after error", extra={"slot_id": slot_id})
