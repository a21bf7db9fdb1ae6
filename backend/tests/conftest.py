import os

# Importing baton.main creates tables on the configured URL; keep that off disk.
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from baton.database import create_tables, make_engine
from baton.services.chain_engine import ChainEngine
from baton.services.events import EventPublisher
from baton.services.stores import EnrollmentDirectory, SessionDirectory


class FirstPick:
    """RNG stand-in that picks the first k students of the sorted pool."""

    def sample(self, population, k):
        return list(population)[:k]


class FakeClock:
    """Deterministic naive-UTC clock; every call returns the current value."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds=1):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture()
def engine(tmp_path):
    db_engine = make_engine(f"sqlite:///{tmp_path / 'baton_test.db'}")
    create_tables(bind=db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def events():
    return []


@pytest.fixture()
def make_engine_for(clock, events):
    """Build a ChainEngine over a given DB session with a pinned clock and RNG."""

    def _build(db_session, **kwargs):
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("rng", FirstPick())
        kwargs.setdefault("publisher", EventPublisher([events.append]))
        return ChainEngine(db_session, **kwargs)

    return _build


@pytest.fixture()
def chain_engine(db, make_engine_for):
    return make_engine_for(db)


@pytest.fixture()
def new_session(db, clock):
    """Create an ACTIVE session with the given students enrolled; returns its id."""

    def _create(students=(), teacher_id="t-1"):
        session = SessionDirectory(db).create(teacher_id, "Physics 101", now=clock())
        enrollments = EnrollmentDirectory(db)
        for student_id in students:
            enrollments.join(session.id, student_id, now=clock())
        db.commit()
        return session.id

    return _create

