# backend/tests/conftest.py
"""
Pytest configuration.

Every test gets a fresh in-memory SQLite database, a fake Khalti client and
a fake meeting client. Nothing here talks to the network.
"""

import os

# CRITICAL: Set testing mode BEFORE any app imports!
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PAYMENT_PROVIDER"] = "fake"
os.environ["MEETING_PROVIDER"] = "fake"
os.environ["JWT_SECRET"] = "healnest-test-secret-with-enough-length"

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Generator, Optional

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import ulid

from app.auth import create_access_token
from app.core.enums import RoleName
from app.core.timezone_utils import utc_now
from app.database import Base
from app.integrations.khalti_client import KHALTI_COMPLETED, FakeKhaltiClient
from app.integrations.meeting_client import FakeMeetingClient
from app.models import TherapistSlot, TherapySession
from app.models.therapy_session import SessionStatus
from app.principal import UserPrincipal
from app.services.booking_orchestrator import BookingOrchestrator
from app.services.payment_gateway import KhaltiPaymentGateway
from app.services.session_registry import SessionRegistry
from app.services.slot_ledger import SlotLedger

from tests.utils.booking_data import CLIENT_ID, OTHER_CLIENT_ID, SESSION_FEE, THERAPIST_ID


def _enable_sqlite_fks(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(test_engine, "connect", _enable_sqlite_fks)
    import app.models  # noqa: F401

    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def khalti() -> FakeKhaltiClient:
    return FakeKhaltiClient()


@pytest.fixture
def gateway(khalti: FakeKhaltiClient) -> KhaltiPaymentGateway:
    return KhaltiPaymentGateway(
        khalti,
        return_url="https://healnest.test/payment/verify",
        website_url="https://healnest.test",
    )


@pytest.fixture
def meeting_client() -> FakeMeetingClient:
    return FakeMeetingClient()


@pytest.fixture
def slot_ledger(db: Session) -> SlotLedger:
    return SlotLedger(db)


@pytest.fixture
def session_registry(db: Session, slot_ledger: SlotLedger) -> SessionRegistry:
    return SessionRegistry(db, slot_ledger=slot_ledger)


@pytest.fixture
def orchestrator(
    db: Session,
    gateway: KhaltiPaymentGateway,
    slot_ledger: SlotLedger,
    session_registry: SessionRegistry,
    meeting_client: FakeMeetingClient,
) -> BookingOrchestrator:
    return BookingOrchestrator(
        db,
        gateway,
        slot_ledger=slot_ledger,
        session_registry=session_registry,
        meeting_client=meeting_client,
        hold_timeout=timedelta(minutes=15),
    )


@pytest.fixture
def make_slot(db: Session) -> Callable[..., TherapistSlot]:
    """Insert a slot starting ``hours_ahead`` from now."""

    def _make(
        hours_ahead: float = 48,
        *,
        therapist_id: str = THERAPIST_ID,
        duration_minutes: int = 60,
        start: Optional[datetime] = None,
        is_available: bool = True,
    ) -> TherapistSlot:
        start_time = start or (utc_now() + timedelta(hours=hours_ahead)).replace(microsecond=0)
        slot = TherapistSlot(
            id=str(ulid.ULID()),
            therapist_id=therapist_id,
            start_time=start_time,
            end_time=start_time + timedelta(minutes=duration_minutes),
            is_available=is_available,
        )
        db.add(slot)
        db.commit()
        return slot

    return _make


@pytest.fixture
def make_session(db: Session, make_slot: Callable[..., TherapistSlot]) -> Callable[..., TherapySession]:
    """Insert a scheduled session directly, bypassing payment."""

    def _make(
        hours_ahead: float = 48,
        *,
        client_id: str = CLIENT_ID,
        therapist_id: str = THERAPIST_ID,
    ) -> TherapySession:
        slot = make_slot(hours_ahead, therapist_id=therapist_id, is_available=False)
        session = TherapySession(
            id=str(ulid.ULID()),
            client_id=client_id,
            therapist_id=therapist_id,
            slot_id=slot.id,
            scheduled_time=slot.start_time,
            duration_minutes=slot.duration_minutes,
            status=SessionStatus.SCHEDULED.value,
            payment_amount=SESSION_FEE,
            payment_currency="NPR",
            payment_method="khalti",
            payment_transaction_ref=f"pidx-{ulid.ULID()}",
            payment_status="verified",
        )
        db.add(session)
        db.commit()
        return session

    return _make


@pytest.fixture
def pay(khalti: FakeKhaltiClient) -> Callable[[str], None]:
    """Mark a Khalti payment as completed for the amount it was opened with."""

    def _pay(transaction_ref: str) -> None:
        khalti.set_status(transaction_ref, KHALTI_COMPLETED)

    return _pay


@pytest.fixture
def client_principal() -> UserPrincipal:
    return UserPrincipal(user_id=CLIENT_ID, role=RoleName.CLIENT)


@pytest.fixture
def therapist_principal() -> UserPrincipal:
    return UserPrincipal(user_id=THERAPIST_ID, role=RoleName.THERAPIST)


@pytest.fixture
def client(
    session_factory: sessionmaker,
    gateway: KhaltiPaymentGateway,
    meeting_client: FakeMeetingClient,
) -> Generator[TestClient, None, None]:
    """API client wired to the test database and the fake providers."""
    from app.api.dependencies import get_db, get_meeting_client, get_payment_gateway
    from app.main import app

    def _get_db() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_meeting_client] = lambda: meeting_client
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


def _bearer(user_id: str, role: RoleName) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture
def client_headers() -> Dict[str, str]:
    return _bearer(CLIENT_ID, RoleName.CLIENT)


@pytest.fixture
def other_client_headers() -> Dict[str, str]:
    return _bearer(OTHER_CLIENT_ID, RoleName.CLIENT)


@pytest.fixture
def therapist_headers() -> Dict[str, str]:
    return _bearer(THERAPIST_ID, RoleName.THERAPIST)
