# backend/app/schemas/booking.py
"""
Booking attempt schemas.

A booking attempt holds a slot while the client pays. Once the payment is
verified it turns into a session (see ``schemas.session``).
"""

from datetime import datetime
from typing import Optional

from pydantic import Field, field_validator

from ..services.booking_orchestrator import BookingOutcomeStatus
from ._strict_base import StrictRequestModel
from .base import Money, StandardizedModel


class CustomerInfo(StrictRequestModel):
    """Optional payer details forwarded to the wallet provider."""

    name: Optional[str] = Field(None, max_length=100)
    email: Optional[str] = Field(None, max_length=254)
    phone: Optional[str] = Field(None, max_length=20)


class StartBookingRequest(StrictRequestModel):
    slot_id: str = Field(..., min_length=1, max_length=26, description="Slot to reserve")
    amount: Money = Field(..., description="Session fee in NPR")
    customer_info: Optional[CustomerInfo] = None

    @field_validator("amount")
    @classmethod
    def _positive_amount(cls, v: Money) -> Money:
        if v <= 0:
            raise ValueError("Amount must be positive")
        return v


class StartBookingResponse(StandardizedModel):
    transaction_ref: str
    redirect_url: str
    order_ref: str
    slot_id: str
    hold_expires_at: datetime
    resumed: bool = False


class TransactionRefRequest(StrictRequestModel):
    """Body for verify and cancel, both keyed by the provider reference."""

    transaction_ref: str = Field(..., min_length=1, max_length=64)


class BookingOutcomeResponse(StandardizedModel):
    outcome: BookingOutcomeStatus
    transaction_ref: str
    session_id: Optional[str] = None
    reason: Optional[str] = None
