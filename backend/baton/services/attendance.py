"""
Attendance Resolver - final attendance verdict per student.

Runs once per ended session. For each enrolled student three facts are
derived from terminal chains and SUCCESS scan records only:

- entry participation: held any ENTRY chain
- exit verified: held a COMPLETED EXIT chain, or the enrollment's
  exit-verified flag is set
- late participation: held any LATE chain

Resolution policy (first match wins):
1. no entry participation                        -> ABSENT
2. entry participation and exit verified         -> PRESENT
3. entry participation, no exit, late recorded   -> LATE
4. entry participation, no exit, no late         -> PARTIAL

Entry participation is a prerequisite: a student who only appears in a LATE
chain resolves to ABSENT.

Verdicts are written once. Later calls return the stored rows without
recomputing; a concurrent first computation that loses the primary-key race
rolls back and returns the winner's rows.
"""

import time
from typing import Dict, List, Set

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from baton.errors import SessionNotEnded
from baton.logging_config import get_logger, log_with_context
from baton.models.enums import AttendanceStatus, ChainPhase, ChainState
from baton.models.final_status import FinalStatusRecord
from baton.services.clock import utcnow
from baton.services.stores import ChainStore, EnrollmentDirectory, ScanLogStore, SessionDirectory

logger = get_logger("attendance")

TERMINAL_STATES = (ChainState.COMPLETED.value, ChainState.BROKEN.value)


def resolve_status(entry_participation: bool, exit_verified: bool,
                   late_participation: bool) -> AttendanceStatus:
    """Apply the resolution policy to one student's derived facts."""
    if not entry_participation:
        return AttendanceStatus.ABSENT
    if exit_verified:
        return AttendanceStatus.PRESENT
    if late_participation:
        return AttendanceStatus.LATE
    return AttendanceStatus.PARTIAL


def serialize_final_status(record: FinalStatusRecord) -> dict:
    return {
        "session_id": record.session_id,
        "student_id": record.student_id,
        "status": record.status,
        "entry_participation": record.entry_participation,
        "exit_verified": record.exit_verified,
        "late_participation": record.late_participation,
        "computed_at": record.computed_at.isoformat() if record.computed_at else None,
    }


class AttendanceResolver:
    """Computes and serves the stored final statuses of a session."""

    def __init__(self, db: Session, clock=None):
        self.db = db
        self.clock = clock or utcnow
        self.sessions = SessionDirectory(db)
        self.enrollments = EnrollmentDirectory(db)
        self.chains = ChainStore(db)
        self.scan_log = ScanLogStore(db)

    def get_final_status(self, session_id: str) -> List[FinalStatusRecord]:
        self.sessions.get(session_id)
        return self._stored(session_id)

    def compute_final_status(self, session_id: str) -> List[FinalStatusRecord]:
        """
        Resolve and persist every enrolled student's final status.

        Raises:
            SessionNotFound
            SessionNotEnded: the session is still ACTIVE
        """
        start_time = time.time()
        session = self.sessions.get(session_id)
        if session.is_active:
            raise SessionNotEnded(session_id)

        existing = self._stored(session_id)
        if existing:
            log_with_context(logger, "DEBUG", "Final status already computed, returning stored rows",
                             context={"session_id": session_id})
            return existing

        holders = self._terminal_holders(session_id)
        entry_students = holders[ChainPhase.ENTRY]["any"]
        late_students = holders[ChainPhase.LATE]["any"]
        exit_students = holders[ChainPhase.EXIT]["completed"] | self.enrollments.exit_verified_students(session_id)

        now = self.clock()
        records = []
        for student_id in sorted(self.enrollments.list_enrolled(session_id)):
            facts = {
                "entry_participation": student_id in entry_students,
                "exit_verified": student_id in exit_students,
                "late_participation": student_id in late_students,
            }
            records.append(FinalStatusRecord(
                session_id=session_id,
                student_id=student_id,
                status=resolve_status(**facts).value,
                computed_at=now,
                **facts,
            ))

        try:
            self.db.add_all(records)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            log_with_context(logger, "INFO", "Final status computed concurrently, returning stored rows",
                             context={"session_id": session_id})
            return self._stored(session_id)
        except SQLAlchemyError:
            self.db.rollback()
            raise

        counts: Dict[str, int] = {status.value: 0 for status in AttendanceStatus}
        for record in records:
            counts[record.status] += 1

        duration_ms = (time.time() - start_time) * 1000
        log_with_context(logger, "INFO",
                         "Final status computed for {} student(s)".format(len(records)),
                         context={"session_id": session_id},
                         extra_data={"duration_ms": round(duration_ms, 2), "counts": counts})
        return self._stored(session_id)

    def _terminal_holders(self, session_id: str) -> Dict[ChainPhase, Dict[str, Set[str]]]:
        """Holders of terminal chains per phase: all terminal chains, and COMPLETED only."""
        receivers = self.scan_log.successful_receivers_by_chain(session_id)
        holders = {phase: {"any": set(), "completed": set()} for phase in ChainPhase}

        for chain in self.chains.list_by_session(session_id):
            if chain.state not in TERMINAL_STATES:
                continue
            members = {chain.initial_holder_id, *receivers.get(chain.chain_id, [])}
            bucket = holders[ChainPhase(chain.phase)]
            bucket["any"].update(members)
            if chain.state == ChainState.COMPLETED.value:
                bucket["completed"].update(members)
        return holders

    def _stored(self, session_id: str) -> List[FinalStatusRecord]:
        return list(self.db.execute(
            select(FinalStatusRecord)
            .where(FinalStatusRecord.session_id == session_id)
            .order_by(FinalStatusRecord.student_id)
        ).scalars())
