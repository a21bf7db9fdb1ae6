"""
Runtime configuration read from environment variables.

All settings are module-level constants so that services can import them
directly and tests can monkeypatch them. Unset or malformed values fall
back to the defaults below.
"""

import os


def _parse_int(value, fallback: int, minimum: int = 0) -> int:
    if value is None or not str(value).strip():
        return fallback
    try:
        return max(minimum, int(str(value).strip()))
    except ValueError:
        return fallback


def _parse_csv(value, fallback: list) -> list:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


# ──────────────────────────────────────────────────────────────
# Storage
# ──────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./baton.db")

# ──────────────────────────────────────────────────────────────
# Chain engine
# ──────────────────────────────────────────────────────────────
# Re-read/re-validate attempts after a version conflict before the
# hand-off is reported as ConcurrentModification.
HANDOFF_RETRIES = _parse_int(os.getenv("BATON_HANDOFF_RETRIES"), 1)

# ACTIVE chains idle longer than this are broken as STALLED.
STALL_SECONDS = _parse_int(os.getenv("BATON_STALL_SECONDS"), 90, minimum=1)

# Successful hand-offs after which a chain of the phase completes.
# 0 disables the limit: the chain then completes only on reaching a
# verifier or by an explicit close.
ENTRY_HOP_LIMIT = _parse_int(os.getenv("BATON_ENTRY_HOP_LIMIT"), 0)
LATE_HOP_LIMIT = _parse_int(os.getenv("BATON_LATE_HOP_LIMIT"), 0)
EXIT_HOP_LIMIT = _parse_int(os.getenv("BATON_EXIT_HOP_LIMIT"), 0)

# Upper bound for a single seed/reseed request.
MAX_CHAINS_PER_SEED = _parse_int(os.getenv("BATON_MAX_CHAINS_PER_SEED"), 20, minimum=1)

# ──────────────────────────────────────────────────────────────
# Snapshots
# ──────────────────────────────────────────────────────────────
SNAPSHOT_DEFAULT_LABEL = os.getenv("BATON_SNAPSHOT_DEFAULT_LABEL", "Snapshot").strip() or "Snapshot"

# ──────────────────────────────────────────────────────────────
# HTTP
# ──────────────────────────────────────────────────────────────
CORS_ALLOW_ORIGINS = _parse_csv(os.getenv("BATON_CORS_ALLOW_ORIGINS"), ["*"])
