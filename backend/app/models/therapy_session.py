# backend/app/models/therapy_session.py
"""
Therapy session model.

A session only ever exists as the result of a verified payment. It carries
an immutable snapshot of that payment; ``payment_transaction_ref`` is unique
so the finalize step can never produce two sessions for one payment.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
import logging
from typing import Any, Dict, Optional

from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from ..database import Base
from .types import TimestampMixin, UTCDateTime

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CancelledBy(str, Enum):
    CLIENT = "client"
    THERAPIST = "therapist"


class TherapySession(TimestampMixin, Base):
    __tablename__ = "therapy_sessions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    therapist_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    slot_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("therapist_slots.id", ondelete="RESTRICT"), nullable=False
    )
    scheduled_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SessionStatus.SCHEDULED.value
    )
    meeting_link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Cancellation metadata (only set when status == cancelled)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Payment snapshot
    payment_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_transaction_ref: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False)

    __table_args__ = (
        # A slot backs at most one scheduled session.
        Index(
            "uq_therapy_sessions_scheduled_slot",
            "slot_id",
            unique=True,
            postgresql_where=text("status = 'scheduled'"),
            sqlite_where=text("status = 'scheduled'"),
        ),
        Index("ix_therapy_sessions_therapist_time", "therapist_id", "scheduled_time"),
    )

    @property
    def is_scheduled(self) -> bool:
        return self.status == SessionStatus.SCHEDULED.value

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.client_id, self.therapist_id)

    def cancel(self, cancelled_by: CancelledBy, reason: str, at: datetime) -> None:
        """Move to cancelled and record who did it."""
        self.status = SessionStatus.CANCELLED.value
        self.cancelled_by = cancelled_by.value
        self.cancellation_reason = reason
        self.cancelled_at = at
        logger.info(
            "Session cancelled",
            extra={"session_id": self.id, "cancelled_by": cancelled_by.value},
        )

    def complete(self, at: datetime) -> None:
        self.status = SessionStatus.COMPLETED.value
        self.completed_at = at

    def to_dict(self) -> Dict[str, Any]:
        cancellation = None
        if self.status == SessionStatus.CANCELLED.value:
            cancellation = {
                "reason": self.cancellation_reason,
                "cancelled_by": self.cancelled_by,
                "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            }
        return {
            "id": self.id,
            "client_id": self.client_id,
            "therapist_id": self.therapist_id,
            "slot_id": self.slot_id,
            "scheduled_time": self.scheduled_time.isoformat(),
            "duration_minutes": self.duration_minutes,
            "status": self.status,
            "meeting_link": self.meeting_link,
            "cancellation": cancellation,
            "payment": {
                "amount": str(self.payment_amount),
                "currency": self.payment_currency,
                "method": self.payment_method,
                "transaction_ref": self.payment_transaction_ref,
                "status": self.payment_status,
            },
        }

    def __repr__(self) -> str:
        return f"<TherapySession {self.id} at {self.scheduled_time} ({self.status})>"
