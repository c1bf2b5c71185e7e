"""
Payment intent model for Khalti-backed booking attempts.

One row per booking attempt. Rows are append-only for audit: a retry on the
same slot after a failed or abandoned attempt creates a new row. Two
independent status columns are tracked:

- ``status``: what we know about the money (initiated, pending, verified, ...)
- ``attempt_state``: where the booking attempt sits in the orchestration
  state machine (awaiting_payment, finalizing, confirmed, ...)
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, ForeignKey, Index, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from app.database import Base

from .types import TimestampMixin, UTCDateTime


class PaymentStatus(str, Enum):
    INITIATED = "initiated"
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    ABANDONED = "abandoned"


class AttemptState(str, Enum):
    """
    Booking attempt states.

    SELECTING_SLOT, SLOT_HELD and REJECTED only exist in memory during
    ``start_booking``; an intent row is written once payment is initiated.
    """

    SELECTING_SLOT = "selecting_slot"
    SLOT_HELD = "slot_held"
    REJECTED = "rejected"
    AWAITING_PAYMENT = "awaiting_payment"
    FINALIZING = "finalizing"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    FAILED = "failed"
    COMPENSATION_REQUIRED = "compensation_required"


TERMINAL_ATTEMPT_STATES = frozenset(
    {
        AttemptState.CONFIRMED.value,
        AttemptState.FAILED.value,
        AttemptState.COMPENSATION_REQUIRED.value,
    }
)


class PaymentIntent(TimestampMixin, Base):
    """Khalti payment intent for one booking attempt."""

    __tablename__ = "payment_intents"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    transaction_ref: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    order_ref: Mapped[str] = mapped_column(String(160), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    therapist_id: Mapped[str] = mapped_column(String(64), nullable=False)
    slot_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("therapist_slots.id", ondelete="RESTRICT"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, comment="Amount in NPR")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NPR")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.INITIATED.value
    )
    attempt_state: Mapped[str] = mapped_column(
        String(32), nullable=False, default=AttemptState.AWAITING_PAYMENT.value
    )
    redirect_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    provider_response: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hold_expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        # At most one live attempt per (client, slot).
        Index(
            "uq_payment_intents_active_client_slot",
            "client_id",
            "slot_id",
            unique=True,
            postgresql_where=text("attempt_state = 'awaiting_payment'"),
            sqlite_where=text("attempt_state = 'awaiting_payment'"),
        ),
        Index("ix_payment_intents_attempt_state_created", "attempt_state", "created_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.attempt_state == AttemptState.AWAITING_PAYMENT.value

    @property
    def is_terminal(self) -> bool:
        return self.attempt_state in TERMINAL_ATTEMPT_STATES

    def is_hold_expired(self, now: datetime) -> bool:
        return now >= self.hold_expires_at

    def __repr__(self) -> str:
        return (
            f"<PaymentIntent {self.transaction_ref} slot={self.slot_id} "
            f"status={self.status} state={self.attempt_state}>"
        )
