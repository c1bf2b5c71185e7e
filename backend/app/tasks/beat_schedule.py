# backend/app/tasks/beat_schedule.py
"""
Celery Beat schedule configuration for HealNest.

Intervals come from settings so the sweep can be tightened per environment
without a deploy.
"""

from datetime import timedelta
from typing import Any, Dict

from app.core.config import settings


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    """Build the periodic task schedule."""
    return {
        # Free slots whose payment never arrived
        "release-stale-holds": {
            "task": "app.tasks.booking_tasks.release_stale_holds",
            "schedule": timedelta(seconds=settings.stale_hold_sweep_interval_seconds),
            "options": {"queue": "booking", "expires": settings.stale_hold_sweep_interval_seconds},
        },
        "backfill-meeting-links": {
            "task": "app.tasks.booking_tasks.backfill_meeting_links",
            "schedule": timedelta(minutes=settings.meeting_link_backfill_interval_minutes),
            "options": {"queue": "booking"},
        },
    }
