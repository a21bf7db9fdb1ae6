"""
Clock and random-selection providers.

All persisted timestamps are naive UTC datetimes, which keeps SQLite and
PostgreSQL comparisons consistent. Services take a clock callable and an RNG
object so tests can pin both.
"""

import secrets
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def default_rng():
    """OS-entropy backed RNG; ``sample()`` is uniform without replacement."""
    return secrets.SystemRandom()
