# backend/app/repositories/__init__.py
"""
Repository layer for the HealNest booking service.

Usage:
    from app.repositories import RepositoryFactory

    slots = RepositoryFactory.create_slot_repository(db)
    won = slots.try_reserve(slot_id)
"""

from .base_repository import BaseRepository
from .factory import RepositoryFactory
from .payment_intent_repository import PaymentIntentRepository
from .slot_repository import SlotRepository
from .therapy_session_repository import TherapySessionRepository

__all__ = [
    "BaseRepository",
    "PaymentIntentRepository",
    "RepositoryFactory",
    "SlotRepository",
    "TherapySessionRepository",
]
