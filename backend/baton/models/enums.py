"""
String enumerations shared by the models and services.

Values are stored as plain text columns; the ``str`` mixin lets rows be
compared directly against members (``chain.state == ChainState.ACTIVE``).
"""

import enum


class SessionState(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"


class ChainPhase(str, enum.Enum):
    """ENTRY verifies arrival, LATE late arrival, EXIT departure."""
    ENTRY = "ENTRY"
    LATE = "LATE"
    EXIT = "EXIT"


class ChainState(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    BROKEN = "BROKEN"


class BreakReason(str, enum.Enum):
    SESSION_ENDED = "SESSION_ENDED"
    PHASE_ENDED = "PHASE_ENDED"
    ABANDONED = "ABANDONED"
    STALLED = "STALLED"


class ScanOutcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class ScanFailureReason(str, enum.Enum):
    HOLDER_MISMATCH = "HOLDER_MISMATCH"
    REENTRY = "REENTRY"
    NOT_ENROLLED = "NOT_ENROLLED"
    HOLDS_ACTIVE_CHAIN = "HOLDS_ACTIVE_CHAIN"
    SESSION_ENDED = "SESSION_ENDED"
    CHAIN_NOT_ACTIVE = "CHAIN_NOT_ACTIVE"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"


class AttendanceStatus(str, enum.Enum):
    PRESENT = "PRESENT"
    LATE = "LATE"
    PARTIAL = "PARTIAL"
    ABSENT = "ABSENT"
