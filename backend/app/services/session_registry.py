# backend/app/services/session_registry.py
"""
Session registry.

Stores confirmed sessions and applies the cancellation and completion
policies. Cancelling a session is the only way a consumed slot returns to
the market apart from an explicit therapist reopen.
"""

from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import BusinessRuleException, NotFoundException, TooLateException
from ..core.timezone_utils import utc_now
from ..models.therapy_session import CancelledBy, SessionStatus, TherapySession
from ..principal import UserPrincipal
from ..repositories.factory import RepositoryFactory
from ..repositories.therapy_session_repository import TherapySessionRepository
from .base import BaseService
from .slot_ledger import SlotLedger

logger = logging.getLogger(__name__)


class SessionRegistry(BaseService):
    def __init__(
        self,
        db: Session,
        slot_ledger: Optional[SlotLedger] = None,
        session_repository: Optional[TherapySessionRepository] = None,
        cancellation_notice: Optional[timedelta] = None,
    ):
        super().__init__(db)
        self.slot_ledger = slot_ledger or SlotLedger(db)
        self.repository = (
            session_repository or RepositoryFactory.create_therapy_session_repository(db)
        )
        self.cancellation_notice = cancellation_notice or settings.client_cancellation_notice

    def create(
        self,
        *,
        client_id: str,
        therapist_id: str,
        slot_id: str,
        scheduled_time: datetime,
        duration_minutes: int,
        payment_amount: Decimal,
        payment_currency: str,
        payment_method: str,
        payment_transaction_ref: str,
        payment_status: str,
    ) -> TherapySession:
        """
        Insert a scheduled session inside the caller's transaction.

        Raises:
            DuplicateSessionError: a session already exists for the payment
        """
        session = self.repository.create_session(
            client_id=client_id,
            therapist_id=therapist_id,
            slot_id=slot_id,
            scheduled_time=scheduled_time,
            duration_minutes=duration_minutes,
            status=SessionStatus.SCHEDULED.value,
            payment_amount=payment_amount,
            payment_currency=payment_currency,
            payment_method=payment_method,
            payment_transaction_ref=payment_transaction_ref,
            payment_status=payment_status,
        )
        self.logger.info(
            "Session created",
            extra={
                "session_id": session.id,
                "transaction_ref": payment_transaction_ref,
                "slot_id": slot_id,
            },
        )
        return session

    def get_by_transaction_ref(self, transaction_ref: str) -> Optional[TherapySession]:
        return self.repository.get_by_transaction_ref(transaction_ref)

    def get_session(self, session_id: str, principal: Optional[UserPrincipal] = None) -> TherapySession:
        """Fetch a session; other users' sessions look like missing ones."""
        session = self.repository.get_by_id(session_id)
        if session is None or (principal is not None and not session.is_party(principal.user_id)):
            raise NotFoundException(
                "Session not found", code="SESSION_NOT_FOUND", details={"session_id": session_id}
            )
        return session

    def list_sessions(
        self, principal: UserPrincipal, status: Optional[SessionStatus] = None
    ) -> List[TherapySession]:
        status_value = status.value if status else None
        if principal.is_therapist:
            return self.repository.list_for_therapist(principal.user_id, status_value)
        return self.repository.list_for_client(principal.user_id, status_value)

    @BaseService.measure_operation("cancel_session")
    def cancel(
        self,
        session_id: str,
        cancelled_by: CancelledBy,
        reason: str,
        actor: Optional[UserPrincipal] = None,
    ) -> TherapySession:
        """
        Cancel a scheduled session and release its slot.

        Raises:
            TooLateException: a client cancelling inside the notice window
            BusinessRuleException: the session is not scheduled
        """
        session = self.get_session(session_id, actor)
        if actor is not None:
            expected = session.therapist_id if cancelled_by == CancelledBy.THERAPIST else session.client_id
            if actor.user_id != expected:
                raise NotFoundException(
                    "Session not found", code="SESSION_NOT_FOUND", details={"session_id": session_id}
                )
        if not session.is_scheduled:
            raise BusinessRuleException(
                f"Session is already {session.status}",
                code="SESSION_NOT_SCHEDULED",
                details={"session_id": session_id, "status": session.status},
            )

        now = utc_now()
        if cancelled_by == CancelledBy.CLIENT and now > session.scheduled_time - self.cancellation_notice:
            hours_left = (session.scheduled_time - now).total_seconds() / 3600
            self.logger.info(
                "Client cancellation refused inside notice window",
                extra={"session_id": session_id, "hours_until_session": round(hours_left, 2)},
            )
            raise TooLateException(
                required_hours=int(self.cancellation_notice.total_seconds() // 3600),
                hours_until_session=hours_left,
            )

        with self.transaction():
            session.cancel(cancelled_by, reason, now)
            self.db.flush()
            self.slot_ledger.release(session.slot_id, commit=False)

        self.log_operation(
            "cancel_session",
            session_id=session_id,
            cancelled_by=cancelled_by.value,
            slot_id=session.slot_id,
        )
        return session

    @BaseService.measure_operation("mark_complete")
    def mark_complete(self, session_id: str, actor: Optional[UserPrincipal] = None) -> TherapySession:
        session = self.get_session(session_id, actor)
        if actor is not None and actor.user_id != session.therapist_id:
            raise NotFoundException(
                "Session not found", code="SESSION_NOT_FOUND", details={"session_id": session_id}
            )
        if not session.is_scheduled:
            raise BusinessRuleException(
                f"Session is already {session.status}",
                code="SESSION_NOT_SCHEDULED",
                details={"session_id": session_id, "status": session.status},
            )
        now = utc_now()
        if session.scheduled_time > now:
            raise BusinessRuleException(
                "A session cannot be completed before it starts",
                code="SESSION_IN_FUTURE",
                details={"session_id": session_id},
            )
        with self.transaction():
            session.complete(now)
        self.log_operation("mark_complete", session_id=session_id)
        return session

    def attach_meeting_link(self, session: TherapySession, link: str) -> None:
        with self.transaction():
            self.repository.update(session, meeting_link=link)

    def sessions_missing_meeting_links(self, limit: int = 50) -> List[TherapySession]:
        return self.repository.find_missing_meeting_links(utc_now(), limit=limit)
