import base64
import os
from datetime import datetime, timedelta

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("PAYME_SECRET_KEY", "test-key")
os.environ.setdefault("PAYME_MERCHANT_ID", "test-merchant")
os.environ.setdefault("PAYME_TEST_MODE", "true")
os.environ.setdefault("BOT_WEBHOOK_URL", "")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from database import Base, get_db
from auth.services import AuthService
from subscription.catalog import seed_catalog


class FakeClock:
    """Naive-UTC clock for the ledger that tests move by hand."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class FakeMsClock:
    """Epoch-millisecond clock for the Payme handler."""

    def __init__(self, start: int = 1_767_268_800_000):
        self.current = start

    def __call__(self) -> int:
        return self.current

    def advance(self, ms: int):
        self.current += ms


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    seed_catalog(session)
    yield session
    session.rollback()
    session.close()


@pytest.fixture()
def user(db):
    return AuthService.create_user(db, username="alice", telegram_id=555000111)


@pytest.fixture()
def other_user(db):
    return AuthService.create_user(db, username="bob")


@pytest.fixture()
def admin_user(db):
    return AuthService.create_user(db, username="root", email="admin@example.com", role="admin")


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def ms_clock():
    return FakeMsClock()


@pytest.fixture()
def client(db):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    # no context manager: startup hooks would touch the real DATABASE_URL
    yield TestClient(app)
    app.dependency_overrides.clear()


def bearer(user) -> dict:
    token = AuthService.create_access_token({"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


def payme_auth(password: str = "test-key", login: str = "Paycom") -> dict:
    encoded = base64.b64encode(f"{login}:{password}".encode()).decode()
    return {"Authorization": f"Basic {encoded}"}


def stale_once(lookup):
    """Wrap a lookup so its first call misses, like a read taken before a concurrent commit."""
    calls = []

    def wrapper(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return None
        return lookup(*args, **kwargs)

    return wrapper


def commit_elsewhere(session_factory, *rows) -> list:
    """Commit rows through a separate session, as a concurrent worker would. Returns their ids."""
    session = session_factory()
    try:
        session.add_all(rows)
        session.commit()
        return [row.id for row in rows]
    finally:
        session.close()
