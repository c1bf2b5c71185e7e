# backend/app/core/enums.py
"""
Core enums for the HealNest booking service.

Values are persisted as plain strings, so renaming a member is a data
migration, not a refactor.
"""

from enum import Enum


class RoleName(str, Enum):
    """Roles carried in the access token."""

    CLIENT = "client"
    THERAPIST = "therapist"


class TimeOfDay(str, Enum):
    """Coarse availability filter buckets."""

    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
