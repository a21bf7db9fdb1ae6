"""
Database connection and session management module.

Uses SQLAlchemy for ORM operations. Supports PostgreSQL (production/Docker)
and SQLite (local development and tests).
Provides the engine factory, the session factory and the FastAPI
dependency that hands one session to each request.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from baton.config import DATABASE_URL


def make_engine(url: str, echo: bool = False):
    """
    Create a SQLAlchemy engine configured for the given database URL.

    SQLite does not support pool_size, max_overflow, or pool_pre_ping, and
    needs check_same_thread=False because FastAPI runs sync endpoints in a
    thread pool. WAL mode lets readers proceed while a hand-off commits.
    """
    engine_kwargs = {"echo": echo}

    if url.startswith("postgresql"):
        engine_kwargs.update({
            "pool_size": 10,
            "max_overflow": 20,
            "pool_pre_ping": True,
        })
    elif url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}

    new_engine = create_engine(url, **engine_kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(new_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


engine = make_engine(DATABASE_URL)

# Session factory - creates new database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


def get_db():
    """
    FastAPI dependency that provides a database session.

    Yields a session and ensures proper cleanup after request completion,
    returning the connection to the pool even if the request raised.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind=None):
    """
    Create all database tables directly (used for SQLite local dev and tests).
    For PostgreSQL, use the Alembic migrations instead.
    """
    import baton.models  # noqa: F401  registers every model on Base.metadata

    Base.metadata.create_all(bind=bind or engine)
