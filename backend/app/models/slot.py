# backend/app/models/slot.py
"""
Therapist slot model.

A slot is one bookable window on a therapist's calendar. ``is_available`` is
the single source of truth for whether it can be reserved; the reservation
itself is a conditional UPDATE on that column (see SlotRepository).
"""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import Boolean, CheckConstraint, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from ..database import Base
from .types import TimestampMixin, UTCDateTime


class TherapistSlot(TimestampMixin, Base):
    __tablename__ = "therapist_slots"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    therapist_id: Mapped[str] = mapped_column(String(64), nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("therapist_id", "start_time", name="uq_therapist_slots_therapist_start"),
        CheckConstraint("start_time < end_time", name="ck_therapist_slots_time_order"),
        Index("ix_therapist_slots_lookup", "therapist_id", "is_available", "start_time"),
    )

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """True when [start, end) intersects this slot."""
        return self.start_time < end and start < self.end_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "therapist_id": self.therapist_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "is_available": self.is_available,
            "duration_minutes": self.duration_minutes,
        }

    def __repr__(self) -> str:
        return (
            f"<TherapistSlot {self.id} therapist={self.therapist_id} "
            f"start={self.start_time} available={self.is_available}>"
        )
