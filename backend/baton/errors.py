"""
Typed failures raised by the chain custody core.

Every failure carries a stable machine-readable ``code`` and the HTTP status
the API layer should answer with. Hand-off rejections also carry the FAILED
scan log entry that was written before the error was raised, so callers can
point at the audit record.
"""


class BatonError(Exception):
    """Base class for all chain custody failures."""

    code = "BATON_ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class SessionNotFound(BatonError):
    code = "SESSION_NOT_FOUND"
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__("Session {} not found".format(session_id),
                         {"session_id": session_id})


class ChainNotFound(BatonError):
    code = "CHAIN_NOT_FOUND"
    status_code = 404

    def __init__(self, session_id: str, chain_id: str):
        super().__init__("Chain {} not found in session {}".format(chain_id, session_id),
                         {"session_id": session_id, "chain_id": chain_id})


class SnapshotNotFound(BatonError):
    code = "SNAPSHOT_NOT_FOUND"
    status_code = 404

    def __init__(self, session_id: str, snapshot_id: str):
        super().__init__("Snapshot {} not found in session {}".format(snapshot_id, session_id),
                         {"session_id": session_id, "snapshot_id": snapshot_id})


class InsufficientEligibleStudents(BatonError):
    code = "INSUFFICIENT_ELIGIBLE_STUDENTS"
    status_code = 409

    def __init__(self, requested: int, available: int):
        super().__init__(
            "Insufficient eligible students: requested {}, available {}".format(requested, available),
            {"requested": requested, "available": available})
        self.requested = requested
        self.available = available


class AlreadyEnded(BatonError):
    code = "ALREADY_ENDED"
    status_code = 409

    def __init__(self, session_id: str):
        super().__init__("Session {} has already ended".format(session_id),
                         {"session_id": session_id})


class SessionNotEnded(BatonError):
    code = "SESSION_NOT_ENDED"
    status_code = 409

    def __init__(self, session_id: str):
        super().__init__("Session {} is still active".format(session_id),
                         {"session_id": session_id})


class HandoffRejected(BatonError):
    """
    A hand-off attempt that was durably logged as FAILED.

    ``entry`` is the ScanLogEntry row written for the attempt and
    ``reason`` the reason code stored on it.
    """

    status_code = 409

    def __init__(self, message: str, reason: str, entry=None, details: dict = None):
        details = dict(details or {})
        details["reason"] = reason
        if entry is not None:
            details["scan_seq"] = entry.seq
        super().__init__(message, details)
        self.reason = reason
        self.entry = entry


class InvalidHolder(HandoffRejected):
    code = "INVALID_HOLDER"


class ConcurrentModification(HandoffRejected):
    code = "CONCURRENT_MODIFICATION"


class SessionEnded(HandoffRejected):
    code = "SESSION_ENDED"


class ChainNotActive(HandoffRejected):
    code = "CHAIN_NOT_ACTIVE"
