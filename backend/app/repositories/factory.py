# backend/app/repositories/factory.py
"""
Repository Factory for the HealNest booking service.

Centralizes repository creation so services never construct repositories
directly, which keeps them easy to swap for fakes in tests.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from .payment_intent_repository import PaymentIntentRepository
    from .slot_repository import SlotRepository
    from .therapy_session_repository import TherapySessionRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_slot_repository(db: Session) -> "SlotRepository":
        from .slot_repository import SlotRepository

        return SlotRepository(db)

    @staticmethod
    def create_payment_intent_repository(db: Session) -> "PaymentIntentRepository":
        from .payment_intent_repository import PaymentIntentRepository

        return PaymentIntentRepository(db)

    @staticmethod
    def create_therapy_session_repository(db: Session) -> "TherapySessionRepository":
        from .therapy_session_repository import TherapySessionRepository

        return TherapySessionRepository(db)
