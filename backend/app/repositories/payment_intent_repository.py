# backend/app/repositories/payment_intent_repository.py
"""
Payment intent repository.

Intents are never deleted. Attempt-state changes go through ``transition``,
a conditional UPDATE on the current state, so a poller finalizing an
attempt and the stale-hold sweep releasing it cannot both succeed.
"""

from datetime import datetime
import logging
from typing import Any, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..core.timezone_utils import utc_now
from ..models.payment_intent import AttemptState, PaymentIntent
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class PaymentIntentRepository(BaseRepository[PaymentIntent]):
    def __init__(self, db: Session):
        super().__init__(db, PaymentIntent)

    def get_by_transaction_ref(self, transaction_ref: str) -> Optional[PaymentIntent]:
        stmt = select(PaymentIntent).where(PaymentIntent.transaction_ref == transaction_ref)
        return self.db.execute(stmt).scalars().first()

    def find_active_for_client_slot(self, client_id: str, slot_id: str) -> Optional[PaymentIntent]:
        stmt = select(PaymentIntent).where(
            PaymentIntent.client_id == client_id,
            PaymentIntent.slot_id == slot_id,
            PaymentIntent.attempt_state == AttemptState.AWAITING_PAYMENT.value,
        )
        return self.db.execute(stmt).scalars().first()

    def transition(
        self,
        transaction_ref: str,
        from_states: Iterable[AttemptState],
        to_state: AttemptState,
        **values: Any,
    ) -> bool:
        """
        Move an intent to ``to_state`` only if it is currently in ``from_states``.

        Extra ``values`` (status, last_error, resolved_at, ...) are written in
        the same statement.

        Returns:
            True if this caller performed the transition
        """
        allowed = [state.value for state in from_states]
        payload = dict(values)
        payload["attempt_state"] = to_state.value
        payload["updated_at"] = utc_now()
        stmt = (
            update(PaymentIntent)
            .where(
                PaymentIntent.transaction_ref == transaction_ref,
                PaymentIntent.attempt_state.in_(allowed),
            )
            .values(**payload)
            .execution_options(synchronize_session="fetch")
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error("Intent transition failed for %s: %s", transaction_ref, e)
            self.db.rollback()
            raise RepositoryException(f"Failed to transition payment intent: {e}") from e
        moved = bool(result.rowcount == 1)
        if not moved:
            self.logger.debug(
                "Intent transition skipped",
                extra={
                    "transaction_ref": transaction_ref,
                    "from_states": allowed,
                    "to_state": to_state.value,
                },
            )
        return moved

    def find_stale(self, cutoff: datetime, limit: int = 200) -> List[PaymentIntent]:
        """AwaitingPayment intents created at or before ``cutoff``, oldest first."""
        try:
            stmt = (
                select(PaymentIntent)
                .where(
                    PaymentIntent.attempt_state == AttemptState.AWAITING_PAYMENT.value,
                    PaymentIntent.created_at <= cutoff,
                )
                .order_by(PaymentIntent.created_at.asc())
                .limit(limit)
            )
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            self.logger.error("Error finding stale holds: %s", e)
            raise RepositoryException(f"Failed to find stale holds: {e}") from e

    def count_in_state(self, state: AttemptState) -> int:
        stmt = select(func.count()).select_from(PaymentIntent).where(
            PaymentIntent.attempt_state == state.value
        )
        return int(self.db.execute(stmt).scalar_one())
