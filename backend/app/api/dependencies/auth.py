# backend/app/api/dependencies/auth.py
"""
Authentication and authorization dependencies.

Callers are identified by a bearer JWT carrying ``sub`` and ``role``. User
records live in the identity service; this API trusts the token.
"""

from ...auth import get_current_principal, require_client, require_therapist

__all__ = ["get_current_principal", "require_client", "require_therapist"]
