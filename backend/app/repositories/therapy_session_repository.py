# backend/app/repositories/therapy_session_repository.py
"""
Therapy session repository.

The unique constraint on ``payment_transaction_ref`` is the storage-level
half of the finalize-once rule; ``create_session`` translates a violation of
it into ``DuplicateSessionError`` so callers can tell "already booked" apart
from a real failure.
"""

from datetime import datetime
import logging
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import DuplicateSessionError, RepositoryException
from ..models.therapy_session import SessionStatus, TherapySession
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class TherapySessionRepository(BaseRepository[TherapySession]):
    def __init__(self, db: Session):
        super().__init__(db, TherapySession)

    def get_by_transaction_ref(self, transaction_ref: str) -> Optional[TherapySession]:
        stmt = select(TherapySession).where(
            TherapySession.payment_transaction_ref == transaction_ref
        )
        return self.db.execute(stmt).scalars().first()

    def create_session(self, **kwargs: Any) -> TherapySession:
        """
        Insert a session.

        Raises:
            DuplicateSessionError: a session already exists for the payment
            RepositoryException: any other failure (including the slot
                already backing a scheduled session)
        """
        transaction_ref = kwargs["payment_transaction_ref"]
        if self.exists(payment_transaction_ref=transaction_ref):
            raise DuplicateSessionError(transaction_ref)
        try:
            return self.create(**kwargs)
        except RepositoryException as exc:
            cause = exc.__cause__
            if isinstance(cause, IntegrityError) and "payment_transaction_ref" in str(cause.orig):
                raise DuplicateSessionError(transaction_ref) from cause
            raise

    def list_for_client(self, client_id: str, status: Optional[str] = None) -> List[TherapySession]:
        stmt = select(TherapySession).where(TherapySession.client_id == client_id)
        if status:
            stmt = stmt.where(TherapySession.status == status)
        stmt = stmt.order_by(TherapySession.scheduled_time.asc())
        return list(self.db.execute(stmt).scalars().all())

    def list_for_therapist(
        self, therapist_id: str, status: Optional[str] = None
    ) -> List[TherapySession]:
        stmt = select(TherapySession).where(TherapySession.therapist_id == therapist_id)
        if status:
            stmt = stmt.where(TherapySession.status == status)
        stmt = stmt.order_by(TherapySession.scheduled_time.asc())
        return list(self.db.execute(stmt).scalars().all())

    def has_scheduled_for_slot(self, slot_id: str) -> bool:
        return self.exists(slot_id=slot_id, status=SessionStatus.SCHEDULED.value)

    def find_missing_meeting_links(self, now: datetime, limit: int = 50) -> List[TherapySession]:
        """Upcoming scheduled sessions that still have no join URL."""
        stmt = (
            select(TherapySession)
            .where(
                TherapySession.status == SessionStatus.SCHEDULED.value,
                TherapySession.meeting_link.is_(None),
                TherapySession.scheduled_time > now,
            )
            .order_by(TherapySession.scheduled_time.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
