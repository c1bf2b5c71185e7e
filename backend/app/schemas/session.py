# backend/app/schemas/session.py
"""Therapy session schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import Field, field_validator

from ..core.constants import MAX_REASON_LENGTH
from ..models.therapy_session import SessionStatus
from ._strict_base import StrictRequestModel
from .base import Money, StandardizedModel


class SessionCancelRequest(StrictRequestModel):
    reason: str = Field(..., min_length=1, max_length=MAX_REASON_LENGTH)

    @field_validator("reason")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Reason must not be blank")
        return v


class SessionResponse(StandardizedModel):
    id: str
    client_id: str
    therapist_id: str
    slot_id: str
    scheduled_time: datetime
    duration_minutes: int
    status: SessionStatus
    meeting_link: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    payment_amount: Money
    payment_currency: str
    payment_method: str
    payment_transaction_ref: str
    payment_status: str


class SessionListResponse(StandardizedModel):
    sessions: List[SessionResponse]
    total: int
