"""
Celery tasks for booking housekeeping.

Each task opens its own database session and closes it when done; tasks
never share a session with a request.
"""

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, ParamSpec, Protocol, TypedDict, TypeVar, cast

from celery.result import AsyncResult
from sqlalchemy.orm import Session

from app.api.dependencies.services import get_meeting_client, get_payment_gateway
from app.core.exceptions import ServiceException
from app.integrations.meeting_client import MeetingProviderError
from app.monitoring.prometheus_metrics import prometheus_metrics
from app.services.booking_orchestrator import BookingOrchestrator
from app.services.session_registry import SessionRegistry
from app.tasks.celery_app import BaseTask, celery_app

P = ParamSpec("P")
R = TypeVar("R", covariant=True)

logger = logging.getLogger(__name__)


class TaskWrapper(Protocol[P, R]):
    def __call__(self, *args: P.args, **kwargs: P.kwargs) -> R:
        ...

    delay: Callable[..., AsyncResult]
    apply_async: Callable[..., AsyncResult]


def typed_task(
    *task_args: Any, **task_kwargs: Any
) -> Callable[[Callable[P, R]], TaskWrapper[P, R]]:
    """Return a typed Celery task decorator for mypy."""

    return cast(
        Callable[[Callable[P, R]], TaskWrapper[P, R]],
        celery_app.task(*task_args, **task_kwargs),
    )


class SweepResults(TypedDict):
    released: int
    compensation_backlog: int
    processed_at: str


class BackfillResults(TypedDict):
    attached: int
    failed: int
    processed_at: str


@typed_task(base=BaseTask, name="app.tasks.booking_tasks.release_stale_holds")
def release_stale_holds(limit: int = 200) -> SweepResults:
    """
    Release AwaitingPayment holds older than the hold timeout.

    Also refreshes the compensation backlog gauge so alerting sees captured
    payments that still have no session.
    """
    from app.database import SessionLocal

    db: Session = SessionLocal()
    try:
        orchestrator = BookingOrchestrator(db, get_payment_gateway())
        released = orchestrator.release_stale_holds(limit=limit)
        backlog = orchestrator.compensation_backlog()
        prometheus_metrics.set_compensation_backlog(backlog)
        if backlog:
            logger.error(
                "Payments awaiting manual reconciliation",
                extra={"compensation_backlog": backlog},
            )
        return {
            "released": released,
            "compensation_backlog": backlog,
            "processed_at": datetime.now(timezone.utc).isoformat(),
        }
    finally:
        db.close()


@typed_task(base=BaseTask, name="app.tasks.booking_tasks.backfill_meeting_links")
def backfill_meeting_links(limit: int = 50) -> BackfillResults:
    """Create meeting rooms for upcoming sessions that were confirmed without one."""
    from app.database import SessionLocal

    db: Session = SessionLocal()
    results: Dict[str, int] = {"attached": 0, "failed": 0}
    try:
        registry = SessionRegistry(db)
        meeting_client = get_meeting_client()
        for session in registry.sessions_missing_meeting_links(limit=limit):
            try:
                link = meeting_client.create_meeting(
                    session_id=session.id,
                    starts_at=session.scheduled_time,
                    duration_minutes=session.duration_minutes,
                )
                registry.attach_meeting_link(session, link)
                results["attached"] += 1
            except (MeetingProviderError, ServiceException) as exc:
                results["failed"] += 1
                logger.warning(
                    "Meeting link backfill failed",
                    extra={"session_id": session.id, "error": str(exc)},
                )
        if results["attached"] or results["failed"]:
            logger.info("Meeting link backfill finished", extra=results)
        return {
            "attached": results["attached"],
            "failed": results["failed"],
            "processed_at": datetime.now(timezone.utc).isoformat(),
        }
    finally:
        db.close()
