# backend/app/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

This module provides factory functions that create service instances
with their required dependencies properly injected.
"""

from functools import lru_cache
import logging

from fastapi import Depends
from sqlalchemy.orm import Session

from ...core.config import settings
from ...integrations import FakeKhaltiClient, FakeMeetingClient, KhaltiClient, MeetingClient
from ...services.booking_orchestrator import BookingOrchestrator
from ...services.payment_gateway import KhaltiPaymentGateway, PaymentGateway
from ...services.session_registry import SessionRegistry
from ...services.slot_ledger import SlotLedger
from .database import get_db

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_fake_khalti_client() -> FakeKhaltiClient:
    """Process-wide fake so payments survive between requests."""
    return FakeKhaltiClient()


def build_khalti_client() -> KhaltiClient | FakeKhaltiClient:
    if settings.payment_provider == "fake":
        return get_fake_khalti_client()
    try:
        return KhaltiClient(
            secret_key=settings.khalti_secret_key,
            base_url=settings.khalti_base_url,
            timeout=settings.khalti_timeout_seconds,
        )
    except ValueError as exc:  # Missing secret key
        if settings.environment == "production":
            raise
        logger.warning(
            "Falling back to FakeKhaltiClient due to configuration error",
            extra={"error": str(exc), "environment": settings.environment},
        )
        return get_fake_khalti_client()


def get_payment_gateway() -> PaymentGateway:
    """Provide the wallet gateway selected by configuration."""
    return KhaltiPaymentGateway(
        build_khalti_client(),
        return_url=settings.khalti_return_url,
        website_url=settings.khalti_website_url,
    )


def get_meeting_client() -> MeetingClient | FakeMeetingClient:
    """Provide the meeting-link client selected by configuration."""
    if settings.meeting_provider == "fake":
        return FakeMeetingClient()
    try:
        return MeetingClient(
            api_key=settings.meeting_api_key,
            base_url=settings.meeting_api_base_url,
            timeout=settings.meeting_timeout_seconds,
        )
    except ValueError as exc:
        if settings.environment == "production":
            raise
        logger.warning(
            "Falling back to FakeMeetingClient due to configuration error",
            extra={"error": str(exc), "environment": settings.environment},
        )
        return FakeMeetingClient()


def get_slot_ledger(db: Session = Depends(get_db)) -> SlotLedger:
    return SlotLedger(db)


def get_session_registry(
    db: Session = Depends(get_db),
    slot_ledger: SlotLedger = Depends(get_slot_ledger),
) -> SessionRegistry:
    return SessionRegistry(db, slot_ledger=slot_ledger)


def get_booking_orchestrator(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    slot_ledger: SlotLedger = Depends(get_slot_ledger),
    session_registry: SessionRegistry = Depends(get_session_registry),
    meeting_client: MeetingClient | FakeMeetingClient = Depends(get_meeting_client),
) -> BookingOrchestrator:
    """
    Get booking orchestrator instance.

    The ledger and registry share one database session so the finalize
    step can commit the slot, intent and session together.
    """
    return BookingOrchestrator(
        db,
        gateway,
        slot_ledger=slot_ledger,
        session_registry=session_registry,
        meeting_client=meeting_client,
    )
