"""Pytest configuration and fixtures."""

import os

# Configure before the application settings are first loaded
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-at-least-32-characters")

import pytest
from typing import Any, Dict, Generator, List, Tuple

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from qms.core.clock import FrozenClock
from qms.core.rbac import UserRole
from qms.core.security import create_staff_token
from qms.db.base import Base
from qms.db.session import get_db
from qms.main import app
# Import all models to ensure they're registered with Base.metadata
from qms.models import *
from qms.services.queue_settings_service import QueueSettingsService, get_queue_settings_service
from qms.services.token_service import TokenService, get_token_service

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"


class RecordingBroadcaster:
    """Keeps every emitted event for assertions."""

    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    def emit(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((room, event, payload))

    def names(self) -> List[str]:
        return [event for _, event, _ in self.events]

    def payloads(self, event: str) -> List[Dict[str, Any]]:
        return [payload for _, name, payload in self.events if name == event]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def organization(db_session: Session) -> Organization:
    org = Organization(name="Test Branch", slug="test-branch", is_active=True)
    db_session.add(org)
    db_session.commit()
    db_session.refresh(org)
    return org


@pytest.fixture
def other_organization(db_session: Session) -> Organization:
    org = Organization(name="Other Branch", slug="other-branch", is_active=True)
    db_session.add(org)
    db_session.commit()
    db_session.refresh(org)
    return org


def _make_user(db_session: Session, organization: Organization, username: str, role: UserRole) -> User:
    user = User(
        organization_id=organization.id,
        username=username,
        email=f"{username}@example.com",
        role=role,
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def staff_user(db_session: Session, organization: Organization) -> User:
    return _make_user(db_session, organization, "staff", UserRole.STAFF)


@pytest.fixture
def second_staff(db_session: Session, organization: Organization) -> User:
    return _make_user(db_session, organization, "staff2", UserRole.STAFF)


@pytest.fixture
def admin_user(db_session: Session, organization: Organization) -> User:
    return _make_user(db_session, organization, "admin", UserRole.ADMIN)


@pytest.fixture
def counters(db_session: Session, organization: Organization) -> List[Counter]:
    """Three active counters."""
    items = [
        Counter(organization_id=organization.id, name=f"Counter {n}", is_active=True)
        for n in (1, 2, 3)
    ]
    db_session.add_all(items)
    db_session.commit()
    for counter in items:
        db_session.refresh(counter)
    return items


@pytest.fixture
def queue_settings(db_session: Session, organization: Organization) -> Dict[CustomerType, QueueSetting]:
    """Active queues for every customer type, numbering from 0."""
    rows = {
        customer_type: QueueSetting(
            organization_id=organization.id,
            customer_type=customer_type,
            prefix=customer_type.value[0].upper(),
            current_number=0,
            max_number=999,
            reset_daily=True,
            reset_time="00:00:00",
            is_active=True,
            priority_multiplier=1.0,
        )
        for customer_type in CustomerType
    }
    db_session.add_all(rows.values())
    db_session.commit()
    for row in rows.values():
        db_session.refresh(row)
    return rows


@pytest.fixture
def service(db_session: Session, clock: FrozenClock, broadcaster: RecordingBroadcaster) -> TokenService:
    return TokenService(db_session, clock=clock, broadcaster=broadcaster)


@pytest.fixture
def settings_service(
    db_session: Session, clock: FrozenClock, broadcaster: RecordingBroadcaster
) -> QueueSettingsService:
    return QueueSettingsService(db_session, clock=clock, broadcaster=broadcaster)


@pytest.fixture(scope="function")
def client(
    db_session: Session, clock: FrozenClock, broadcaster: RecordingBroadcaster
) -> Generator[TestClient, None, None]:
    """Create a test client with database, clock and broadcaster overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_token_service] = lambda: TokenService(
        db_session, clock=clock, broadcaster=broadcaster
    )
    app.dependency_overrides[get_queue_settings_service] = lambda: QueueSettingsService(
        db_session, clock=clock, broadcaster=broadcaster
    )
    # Disable rate limiting during tests to avoid flaky failures
    from qms.core.rate_limit import limiter as global_limiter
    global_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    global_limiter.enabled = True
    app.dependency_overrides.clear()


def auth_headers_for(user: User, role: str = None) -> dict:
    """Bearer headers carrying the user's organization and role claims."""
    token = create_staff_token(user.id, user.organization_id, role or user.role.value, user.username)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def staff_headers(staff_user: User) -> dict:
    return auth_headers_for(staff_user)


@pytest.fixture
def admin_headers(admin_user: User) -> dict:
    return auth_headers_for(admin_user)


@pytest.fixture
def outsider(db_session: Session, other_organization: Organization) -> User:
    """Staff of another organization."""
    return _make_user(db_session, other_organization, "outsider", UserRole.STAFF)


@pytest.fixture
def outsider_headers(outsider: User) -> dict:
    return auth_headers_for(outsider)
