# backend/app/services/slot_ledger.py
"""
Slot ledger service.

Owns the availability flag of every therapist slot. ``reserve`` is the
compare-and-set that prevents double booking and reports a lost race as
``None`` rather than raising, so callers decide how to surface it.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.constants import (
    MAX_SLOT_DURATION_MINUTES,
    MIN_SLOT_DURATION_MINUTES,
    TIME_OF_DAY_WINDOWS,
)
from ..core.enums import TimeOfDay
from ..core.exceptions import (
    ConflictException,
    NotFoundException,
    RepositoryException,
    SlotOverlapException,
    ValidationException,
)
from ..core.timezone_utils import clinic_day_bounds, ensure_utc, to_clinic_time, utc_now
from ..models.payment_intent import AttemptState
from ..models.slot import TherapistSlot
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..repositories.slot_repository import SlotRepository
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservedHandle:
    """Proof that the caller won a slot."""

    slot_id: str
    therapist_id: str
    start_time: datetime
    end_time: datetime
    reserved_at: datetime


class SlotLedger(BaseService):
    def __init__(self, db: Session, slot_repository: Optional[SlotRepository] = None):
        super().__init__(db)
        self.repository = slot_repository or RepositoryFactory.create_slot_repository(db)

    def get_slot(self, slot_id: str) -> TherapistSlot:
        slot = self.repository.get_by_id(slot_id)
        if slot is None:
            raise NotFoundException("Slot not found", code="SLOT_NOT_FOUND", details={"slot_id": slot_id})
        return slot

    @BaseService.measure_operation("list_available")
    def list_available(
        self,
        therapist_id: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        time_of_day: Optional[TimeOfDay] = None,
        include_past: bool = False,
    ) -> List[TherapistSlot]:
        """
        Available slots for ``therapist_id`` ordered by start time.

        Dates are calendar days in the clinic timezone and both ends are
        inclusive. Past slots are hidden unless ``include_past`` is set.
        """
        if start_date and end_date and end_date < start_date:
            raise ValidationException("end_date must not be before start_date")

        start = clinic_day_bounds(start_date)[0] if start_date else None
        end = clinic_day_bounds(end_date)[1] if end_date else None
        if not include_past:
            now = utc_now()
            start = max(start, now) if start else now

        slots = self.repository.list_available(therapist_id, start=start, end=end)
        if time_of_day is not None:
            first_hour, last_hour = TIME_OF_DAY_WINDOWS[time_of_day.value]
            slots = [
                slot
                for slot in slots
                if first_hour <= to_clinic_time(slot.start_time).hour < last_hour
            ]
        return slots

    @BaseService.measure_operation("reserve")
    def reserve(self, slot_id: str, *, commit: bool = True) -> Optional[ReservedHandle]:
        """
        Atomically take an available slot.

        With ``commit=False`` the conditional update joins the caller's open
        transaction and only becomes visible when the caller commits.

        Returns:
            A handle if this caller won, ``None`` if the slot was already
            taken (or never existed)
        """
        if commit:
            with self.transaction():
                won = self.repository.try_reserve(slot_id)
        else:
            won = self.repository.try_reserve(slot_id)
        prometheus_metrics.record_slot_reservation(won)
        if not won:
            self.logger.info("Slot reservation lost", extra={"slot_id": slot_id})
            return None

        slot = self.get_slot(slot_id)
        self.logger.info(
            "Slot reserved", extra={"slot_id": slot_id, "therapist_id": slot.therapist_id}
        )
        return ReservedHandle(
            slot_id=slot.id,
            therapist_id=slot.therapist_id,
            start_time=slot.start_time,
            end_time=slot.end_time,
            reserved_at=utc_now(),
        )

    def release(self, slot_id: str, *, commit: bool = True) -> bool:
        """
        Make a slot available again. Releasing an available slot is a no-op.

        With ``commit=False`` the update joins the caller's open transaction.

        Returns:
            True if the slot flipped back to available
        """
        if commit:
            with self.transaction():
                released = self.repository.release(slot_id)
        else:
            released = self.repository.release(slot_id)
        if released:
            self.logger.info("Slot released", extra={"slot_id": slot_id})
        return released

    # Therapist calendar management

    @BaseService.measure_operation("create_slot")
    def create_slot(self, therapist_id: str, start_time: datetime, end_time: datetime) -> TherapistSlot:
        start_time = ensure_utc(start_time)
        end_time = ensure_utc(end_time)
        if start_time >= end_time:
            raise ValidationException("start_time must be before end_time")
        duration = end_time - start_time
        if not (
            timedelta(minutes=MIN_SLOT_DURATION_MINUTES)
            <= duration
            <= timedelta(minutes=MAX_SLOT_DURATION_MINUTES)
        ):
            raise ValidationException(
                f"Slots must last between {MIN_SLOT_DURATION_MINUTES} and "
                f"{MAX_SLOT_DURATION_MINUTES} minutes"
            )
        if start_time <= utc_now():
            raise ValidationException("Slots must start in the future")

        conflict = self.repository.find_overlapping(therapist_id, start_time, end_time)
        if conflict is not None:
            raise SlotOverlapException(
                new_range=f"{start_time.isoformat()}-{end_time.isoformat()}",
                conflicting_range=f"{conflict.start_time.isoformat()}-{conflict.end_time.isoformat()}",
            )

        try:
            with self.transaction():
                slot = self.repository.create(
                    therapist_id=therapist_id,
                    start_time=start_time,
                    end_time=end_time,
                    is_available=True,
                )
        except RepositoryException as exc:
            # Lost a race with a concurrent create for the same start time.
            raise SlotOverlapException(
                new_range=f"{start_time.isoformat()}-{end_time.isoformat()}",
                conflicting_range=start_time.isoformat(),
            ) from exc

        self.log_operation("create_slot", slot_id=slot.id, therapist_id=therapist_id)
        return slot

    def _get_owned_slot(self, therapist_id: str, slot_id: str) -> TherapistSlot:
        slot = self.get_slot(slot_id)
        if slot.therapist_id != therapist_id:
            raise NotFoundException("Slot not found", code="SLOT_NOT_FOUND", details={"slot_id": slot_id})
        return slot

    @BaseService.measure_operation("delete_slot")
    def delete_slot(self, therapist_id: str, slot_id: str) -> None:
        """Remove an open slot. Held or booked slots cannot be deleted."""
        slot = self._get_owned_slot(therapist_id, slot_id)
        if not slot.is_available:
            raise ConflictException(
                "Slot is held or booked and cannot be deleted",
                code="SLOT_IN_USE",
                details={"slot_id": slot_id},
            )
        intents = RepositoryFactory.create_payment_intent_repository(self.db)
        sessions = RepositoryFactory.create_therapy_session_repository(self.db)
        if intents.exists(slot_id=slot_id) or sessions.exists(slot_id=slot_id):
            raise ConflictException(
                "Slot has booking history and cannot be deleted",
                code="SLOT_HAS_HISTORY",
                details={"slot_id": slot_id},
            )
        with self.transaction():
            self.repository.delete(slot)
        self.log_operation("delete_slot", slot_id=slot_id, therapist_id=therapist_id)

    @BaseService.measure_operation("reopen_slot")
    def reopen_slot(self, therapist_id: str, slot_id: str) -> TherapistSlot:
        """
        Explicit therapist action that puts an unavailable slot back on the market.

        Refused while a booking attempt holds the slot or a scheduled session
        consumes it.
        """
        slot = self._get_owned_slot(therapist_id, slot_id)
        if slot.is_available:
            return slot
        if slot.start_time <= utc_now():
            raise ValidationException("Past slots cannot be reopened")

        intents = RepositoryFactory.create_payment_intent_repository(self.db)
        sessions = RepositoryFactory.create_therapy_session_repository(self.db)
        held = any(
            intents.exists(slot_id=slot_id, attempt_state=state.value)
            for state in (AttemptState.AWAITING_PAYMENT, AttemptState.COMPENSATION_REQUIRED)
        )
        if held or sessions.has_scheduled_for_slot(slot_id):
            raise ConflictException(
                "Slot is held by a booking attempt or a scheduled session",
                code="SLOT_IN_USE",
                details={"slot_id": slot_id},
            )
        self.release(slot_id)
        self.repository.refresh(slot)
        self.log_operation("reopen_slot", slot_id=slot_id, therapist_id=therapist_id)
        return slot
