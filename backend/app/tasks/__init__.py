# backend/app/tasks/__init__.py
"""
Celery tasks package for HealNest.

Run the worker with ``celery -A app.tasks worker -B``.
"""

from app.tasks.booking_tasks import backfill_meeting_links, release_stale_holds
from app.tasks.celery_app import BaseTask, celery_app

__all__ = [
    "celery_app",
    "BaseTask",
    "release_stale_holds",
    "backfill_meeting_links",
]
