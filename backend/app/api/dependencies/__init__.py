# backend/app/api/dependencies/__init__.py
"""
Central export point for all dependencies.

This module re-exports all dependencies from submodules
for convenient access throughout the application.
"""

from .auth import get_current_principal, require_client, require_therapist
from .database import get_db
from .services import (
    get_booking_orchestrator,
    get_meeting_client,
    get_payment_gateway,
    get_session_registry,
    get_slot_ledger,
)

__all__ = [
    # Auth
    "get_current_principal",
    "require_client",
    "require_therapist",
    # Database
    "get_db",
    # Services
    "get_slot_ledger",
    "get_session_registry",
    "get_payment_gateway",
    "get_meeting_client",
    "get_booking_orchestrator",
]
