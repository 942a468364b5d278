"""
Shared fixtures: in-memory database, fixed clock and fake record stores
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  (registers all tables on Base.metadata)
from app.database import Base
from app.exceptions import UpstreamUnavailable
from app.services.monitoring.circuit_breakers import reset_breakers


class FixedClock:
    """Clock returning a settable time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeStore:
    """In-memory stand-in for SheetsClient / SupabaseStore."""

    def __init__(self, name, tables=None, error=None):
        self.name = name
        self.tables = tables or {}
        self.error = error
        self.calls = []

    def ping(self):
        if self.error:
            raise UpstreamUnavailable(self.name, self.error)
        return {}

    def fetch_records(self, table, batch=None, program=None):
        self.calls.append((table, batch, program))
        if self.error:
            raise UpstreamUnavailable(self.name, self.error)
        rows = self.tables.get(table, [])
        if batch is not None:
            rows = [r for r in rows if r.get("batch_name") == batch]
        if program is not None:
            rows = [r for r in rows if r.get("program") == program]
        return [dict(r) for r in rows]


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 10, 14, 30, 0))


@pytest.fixture
def sheets_store():
    return FakeStore("sheets")


@pytest.fixture
def supabase_store():
    return FakeStore("supabase")


@pytest.fixture(autouse=True)
def fresh_breakers():
    reset_breakers()
    yield
    reset_breakers()
