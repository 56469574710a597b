"""Shared test fixtures for the Usage Metering Service tests.

Provides a test database (in-memory SQLite), a file-backed database for
multi-threaded tests, a controllable clock, ledger and aggregator instances,
and a FastAPI test client with the database and service dependencies
overridden.
"""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from metering.config import settings
from metering.database import Base, _build_engine, _enable_immediate_transactions, get_db
from metering.dependencies import get_aggregator, get_ledger
from metering.main import app
from metering.services.quota_ledger import QuotaLedger
from metering.services.session_aggregator import SessionAggregator

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"
TEST_JWT_SECRET = "test-secret"
TEST_ADMIN_TOKEN = "test-admin-token"

# Friday 2024-03-15 12:00 UTC
T0 = datetime(2024, 3, 15, 12, 0, 0)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, now: datetime) -> None:
        self.current = now


def make_token(user_id: str, secret: str = TEST_JWT_SECRET, **claims) -> str:
    """Sign a bearer token for ``user_id``."""
    return jwt.encode({"sub": user_id, **claims}, secret, algorithm="HS256")


@pytest.fixture()
def test_engine():
    """Create a test database engine with in-memory SQLite.

    Uses StaticPool so a single connection is shared across threads,
    which is required because TestClient dispatches requests in a
    separate thread while the test runs on the main thread.
    """
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _enable_immediate_transactions(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def test_session(test_engine):
    """Create a test database session."""
    TestSession = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    session = TestSession()
    yield session
    session.close()


@pytest.fixture()
def file_engine(tmp_path):
    """File-backed SQLite engine for tests that use several connections at once."""
    engine = _build_engine(f"sqlite:///{tmp_path / 'metering.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def file_session_factory(file_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=file_engine)


@pytest.fixture()
def clock():
    return FixedClock(T0)


@pytest.fixture()
def ledger(clock):
    return QuotaLedger(clock=clock, reset_policy="calendar_month", anonymous_limit=3)


@pytest.fixture()
def aggregator(clock):
    return SessionAggregator(clock=clock, idle_timeout=timedelta(minutes=30))


@pytest.fixture()
def client(test_session, ledger, aggregator, monkeypatch):
    """Create a FastAPI test client with the test database and services injected."""
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", TEST_ADMIN_TOKEN)

    def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_aggregator] = lambda: aggregator
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers():
    """Build an Authorization header for a user id."""

    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {make_token(user_id)}"}

    return _headers
