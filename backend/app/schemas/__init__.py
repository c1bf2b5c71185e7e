"""
Pydantic schemas for the HealNest booking API.

Request models reject unknown fields; response models read ORM rows
directly and emit enum values.
"""

from .availability import AvailableSlotsResponse, SlotCreate, SlotResponse
from .base import Money, StandardizedModel
from .booking import (
    BookingOutcomeResponse,
    CustomerInfo,
    StartBookingRequest,
    StartBookingResponse,
    TransactionRefRequest,
)
from .common import HealthResponse
from .session import SessionCancelRequest, SessionListResponse, SessionResponse

__all__ = [
    # Base
    "Money",
    "StandardizedModel",
    # Availability
    "AvailableSlotsResponse",
    "SlotCreate",
    "SlotResponse",
    # Booking
    "BookingOutcomeResponse",
    "CustomerInfo",
    "StartBookingRequest",
    "StartBookingResponse",
    "TransactionRefRequest",
    # Sessions
    "SessionCancelRequest",
    "SessionListResponse",
    "SessionResponse",
    # Common
    "HealthResponse",
]
