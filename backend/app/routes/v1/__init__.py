# backend/app/routes/v1/__init__.py
"""
API v1 Routes

Versioned API endpoints under /api/v1.
"""

from . import availability, booking, health, prometheus, sessions

__all__ = [
    "availability",
    "booking",
    "health",
    "prometheus",
    "sessions",
]
