# backend/app/schemas/availability.py
"""
Availability schemas.

A slot is one bookable block on a therapist's calendar. ``is_available``
turns false while a client holds or has booked it.
"""

from datetime import datetime
from typing import List

from pydantic import Field, model_validator

from ..core.timezone_utils import ensure_utc
from ._strict_base import StrictRequestModel
from .base import StandardizedModel


class SlotCreate(StrictRequestModel):
    """Open a new slot on the calling therapist's calendar."""

    start_time: datetime = Field(..., description="Slot start (timezone-aware, stored as UTC)")
    end_time: datetime = Field(..., description="Slot end")

    @model_validator(mode="after")
    def _validate_order(self) -> "SlotCreate":
        if ensure_utc(self.end_time) <= ensure_utc(self.start_time):
            raise ValueError("End time must be after start time")
        return self


class SlotResponse(StandardizedModel):
    id: str
    therapist_id: str
    start_time: datetime
    end_time: datetime
    is_available: bool
    duration_minutes: int


class AvailableSlotsResponse(StandardizedModel):
    therapist_id: str
    slots: List[SlotResponse]
    total: int
