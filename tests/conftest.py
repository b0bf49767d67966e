"""
Test configuration and fixtures for QuickNote Auth tests.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SQL_DEBUG", "false")

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from quicknote_auth.db.models import Base
from quicknote_auth.schemas.identity import IdentityProfile
from quicknote_auth.services import crypto, totp_service
from quicknote_auth.services.auth_orchestrator import AuthOrchestrator
from quicknote_auth.services.fingerprint import StaticFingerprintSource
from quicknote_auth.storage.stores import MemoryKeyValueStore, SQLKeyValueStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def millis(self) -> int:
        return int(self.now.timestamp() * 1000)


def wrong_code(secret: str, at_time) -> str:
    """A six digit code that is not accepted anywhere in the drift window."""
    when = at_time.timestamp() if isinstance(at_time, datetime) else at_time
    accepted = {totp_service.generate_code(secret, at_time=when + offset) for offset in (-30, 0, 30)}
    return next(c for c in ("000000", "111111", "222222", "333333") if c not in accepted)


@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch):
    """Full-strength PBKDF2 makes the suite slow; the algorithm is unchanged."""
    monkeypatch.setattr(crypto, "PBKDF2_ITERATIONS", 1000)


@pytest.fixture(scope="function")
def test_db_engine():
    """In-memory SQLite engine for each test function."""
    engine = create_engine(
        "sqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def durable_store(session_factory):
    return SQLKeyValueStore(session_factory)


@pytest.fixture
def volatile_store():
    return MemoryKeyValueStore()


@pytest.fixture
def fingerprint():
    return StaticFingerprintSource("f" * 128)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def identity():
    return IdentityProfile(
        subject_id="108234567890123456789",
        email="writer@example.com",
        display_name="Ada Writer",
        verified_email=True,
    )


@pytest.fixture
def other_identity():
    return IdentityProfile(
        subject_id="209876543210987654321",
        email="someone.else@example.com",
        display_name="Someone Else",
    )


@pytest.fixture
def orchestrator(durable_store, volatile_store, fingerprint, clock):
    return AuthOrchestrator(durable_store, volatile_store, fingerprint, clock=clock)


@pytest.fixture(scope="function")
def client(orchestrator):
    """Test client bound to the fixture orchestrator."""
    from quicknote_auth.main import app

    app.state.orchestrator = orchestrator
    with TestClient(app) as test_client:
        yield test_client
    app.state.orchestrator = None
