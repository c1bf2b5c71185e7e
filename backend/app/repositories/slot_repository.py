# backend/app/repositories/slot_repository.py
"""
Slot repository: the storage side of the slot ledger.

``try_reserve`` is the only contended write in the system. It is a single
conditional UPDATE guarded by ``is_available = true``; whichever transaction
updates the row first wins and every other caller sees rowcount 0. There is
no read-then-write window.
"""

from datetime import datetime
import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..core.timezone_utils import utc_now
from ..models.slot import TherapistSlot
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class SlotRepository(BaseRepository[TherapistSlot]):
    def __init__(self, db: Session):
        super().__init__(db, TherapistSlot)

    def list_available(
        self,
        therapist_id: str,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[TherapistSlot]:
        """Available slots for a therapist, ``start_time`` ascending."""
        try:
            stmt = select(TherapistSlot).where(
                TherapistSlot.therapist_id == therapist_id,
                TherapistSlot.is_available.is_(True),
            )
            if start is not None:
                stmt = stmt.where(TherapistSlot.start_time >= start)
            if end is not None:
                stmt = stmt.where(TherapistSlot.start_time < end)
            stmt = stmt.order_by(TherapistSlot.start_time.asc(), TherapistSlot.id.asc())
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            self.logger.error("Error listing available slots for %s: %s", therapist_id, e)
            raise RepositoryException(f"Failed to list slots: {e}") from e

    def find_overlapping(
        self, therapist_id: str, start: datetime, end: datetime, *, exclude_id: Optional[str] = None
    ) -> Optional[TherapistSlot]:
        """First slot of this therapist intersecting [start, end), if any."""
        stmt = select(TherapistSlot).where(
            TherapistSlot.therapist_id == therapist_id,
            TherapistSlot.start_time < end,
            TherapistSlot.end_time > start,
        )
        if exclude_id is not None:
            stmt = stmt.where(TherapistSlot.id != exclude_id)
        return self.db.execute(stmt.limit(1)).scalars().first()

    def try_reserve(self, slot_id: str) -> bool:
        """
        Flip ``is_available`` true -> false if and only if it is still true.

        Returns:
            True when this caller won the slot, False otherwise
        """
        stmt = (
            update(TherapistSlot)
            .where(TherapistSlot.id == slot_id, TherapistSlot.is_available.is_(True))
            .values(is_available=False, updated_at=utc_now())
            .execution_options(synchronize_session="fetch")
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error("Reserve statement failed for slot %s: %s", slot_id, e)
            self.db.rollback()
            raise RepositoryException(f"Failed to reserve slot: {e}") from e
        return bool(result.rowcount == 1)

    def release(self, slot_id: str) -> bool:
        """
        Flip ``is_available`` back to true.

        Returns:
            True if the slot was held, False if it was already available
        """
        stmt = (
            update(TherapistSlot)
            .where(TherapistSlot.id == slot_id, TherapistSlot.is_available.is_(False))
            .values(is_available=True, updated_at=utc_now())
            .execution_options(synchronize_session="fetch")
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error("Release statement failed for slot %s: %s", slot_id, e)
            self.db.rollback()
            raise RepositoryException(f"Failed to release slot: {e}") from e
        return bool(result.rowcount == 1)
