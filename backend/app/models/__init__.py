"""
Database models for the HealNest booking service.

- TherapistSlot: bookable windows on a therapist's calendar
- PaymentIntent: one row per booking attempt, append-only
- TherapySession: confirmed sessions with their payment snapshot
"""

from .payment_intent import AttemptState, PaymentIntent, PaymentStatus
from .slot import TherapistSlot
from .therapy_session import CancelledBy, SessionStatus, TherapySession

__all__ = [
    "AttemptState",
    "CancelledBy",
    "PaymentIntent",
    "PaymentStatus",
    "SessionStatus",
    "TherapistSlot",
    "TherapySession",
]
