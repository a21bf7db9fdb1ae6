"""
Storage access layer - the narrow interfaces the custody core consumes.

Each class wraps one SQLAlchemy session (one unit of work) and exposes only
the operations the engine, trace reconstructor and resolver need:

- SessionDirectory: session lookup and the guarded ACTIVE -> ENDED transition
- EnrollmentDirectory: enrolled students and exit verification
- ChainStore: create / read / conditional update (compare-and-swap) / list
- ScanLogStore: append-only attempt log, ordered reads
- SnapshotDirectory: named timestamp markers

Stores flush but never commit; transaction boundaries belong to the caller.
"""

import uuid
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from baton import config
from baton.errors import SessionNotFound, ChainNotFound, SnapshotNotFound
from baton.logging_config import get_logger, log_with_context
from baton.models.chain import Chain
from baton.models.enrollment import Enrollment
from baton.models.enums import ChainState, SessionState, ScanOutcome
from baton.models.scan_log import ScanLogEntry
from baton.models.session import ClassSession
from baton.models.snapshot import Snapshot
from baton.services.clock import utcnow

db_logger = get_logger("db")


class SessionDirectory:
    """Session facts: existence, state, and the single end transition."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, teacher_id: str, name: str = None, now: datetime = None) -> ClassSession:
        session = ClassSession(
            id=str(uuid.uuid4()),
            teacher_id=teacher_id,
            name=name,
            state=SessionState.ACTIVE.value,
            created_at=now or utcnow(),
        )
        self.db.add(session)
        self.db.flush()
        log_with_context(db_logger, "INFO", "Created session",
                         context={"session_id": session.id, "teacher_id": teacher_id})
        return session

    def find(self, session_id: str) -> Optional[ClassSession]:
        return self.db.get(ClassSession, session_id, populate_existing=True)

    def get(self, session_id: str) -> ClassSession:
        session = self.find(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def is_active(self, session_id: str) -> bool:
        """Read the session state straight from the store, bypassing the identity map."""
        state = self.db.execute(
            select(ClassSession.state).where(ClassSession.id == session_id)
        ).scalar_one_or_none()
        if state is None:
            raise SessionNotFound(session_id)
        return state == SessionState.ACTIVE.value

    def mark_ended(self, session_id: str, now: datetime = None) -> bool:
        """
        Guarded ACTIVE -> ENDED transition.

        Returns False when the session was not ACTIVE, i.e. another caller
        already ended it.
        """
        result = self.db.execute(
            update(ClassSession)
            .where(ClassSession.id == session_id,
                   ClassSession.state == SessionState.ACTIVE.value)
            .values(state=SessionState.ENDED.value, ended_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class EnrollmentDirectory:
    """Who is enrolled in a session and whose exit has been verified."""

    def __init__(self, db: Session):
        self.db = db

    def join(self, session_id: str, student_id: str, now: datetime = None) -> Tuple[Enrollment, bool]:
        """Enroll a student; returns (enrollment, created). Joining twice is a no-op."""
        existing = self.db.get(Enrollment, (session_id, student_id))
        if existing is not None:
            return existing, False

        enrollment = Enrollment(
            session_id=session_id,
            student_id=student_id,
            enrolled_at=now or utcnow(),
            exit_verified=False,
        )
        self.db.add(enrollment)
        self.db.flush()
        log_with_context(db_logger, "INFO", "Student enrolled",
                         context={"session_id": session_id, "student_id": student_id})
        return enrollment, True

    def get(self, session_id: str, student_id: str) -> Optional[Enrollment]:
        return self.db.get(Enrollment, (session_id, student_id))

    def list_enrolled(self, session_id: str) -> Set[str]:
        rows = self.db.execute(
            select(Enrollment.student_id).where(Enrollment.session_id == session_id)
        ).scalars()
        return set(rows)

    def is_enrolled(self, session_id: str, student_id: str) -> bool:
        return self.get(session_id, student_id) is not None

    def exit_verified_students(self, session_id: str) -> Set[str]:
        rows = self.db.execute(
            select(Enrollment.student_id).where(Enrollment.session_id == session_id,
                                                Enrollment.exit_verified.is_(True))
        ).scalars()
        return set(rows)

    def mark_exit_verified(self, session_id: str, student_id: str, now: datetime = None) -> Optional[Enrollment]:
        enrollment = self.get(session_id, student_id)
        if enrollment is None:
            return None
        if not enrollment.exit_verified:
            enrollment.exit_verified = True
            enrollment.exit_verified_at = now or utcnow()
            self.db.flush()
            log_with_context(db_logger, "INFO", "Exit verified",
                             context={"session_id": session_id, "student_id": student_id})
        return enrollment


class ChainStore:
    """
    Durable chain state with compare-and-swap updates.

    ``read`` always refreshes from the database so the returned version is
    the one currently stored, not a stale identity-map copy.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(self, chain: Chain) -> Chain:
        self.db.add(chain)
        self.db.flush()
        return chain

    def find(self, session_id: str, chain_id: str) -> Optional[Chain]:
        return self.db.get(Chain, (session_id, chain_id), populate_existing=True)

    def read(self, session_id: str, chain_id: str) -> Tuple[Chain, int]:
        chain = self.find(session_id, chain_id)
        if chain is None:
            raise ChainNotFound(session_id, chain_id)
        return chain, chain.version

    def conditional_update(self, session_id: str, chain_id: str, expected_version: int,
                           require_active_session: bool = False, **changes) -> bool:
        """
        Apply ``changes`` only if the stored version still equals
        ``expected_version``. Increments the version on success.

        With ``require_active_session`` the same statement also requires the
        owning session to be ACTIVE, so a hand-off cannot land after the
        session end has been committed.

        Returns False on conflict; nothing is written in that case.
        """
        changes["version"] = expected_version + 1
        changes.setdefault("updated_at", utcnow())
        statement = (
            update(Chain)
            .where(Chain.session_id == session_id,
                   Chain.chain_id == chain_id,
                   Chain.version == expected_version)
        )
        if require_active_session:
            statement = statement.where(
                select(ClassSession.id)
                .where(ClassSession.id == session_id,
                       ClassSession.state == SessionState.ACTIVE.value)
                .exists()
            )
        result = self.db.execute(
            statement.values(**changes).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            log_with_context(db_logger, "DEBUG", "Chain version conflict",
                             context={"session_id": session_id, "chain_id": chain_id},
                             extra_data={"expected_version": expected_version})
            return False
        return True

    def list_by_session(self, session_id: str, phase: str = None, state: str = None) -> List[Chain]:
        query = select(Chain).where(Chain.session_id == session_id)
        if phase is not None:
            query = query.where(Chain.phase == phase)
        if state is not None:
            query = query.where(Chain.state == state)
        query = query.order_by(Chain.phase, Chain.chain_index, Chain.created_at)
        return list(self.db.execute(query.execution_options(populate_existing=True)).scalars())

    def active_chain_held_by(self, session_id: str, phase: str, student_id: str) -> Optional[str]:
        """Id of the ACTIVE chain of the phase the student currently holds, if any."""
        return self.db.execute(
            select(Chain.chain_id)
            .where(Chain.session_id == session_id,
                   Chain.phase == phase,
                   Chain.holder_id == student_id,
                   Chain.state == ChainState.ACTIVE.value)
        ).scalar_one_or_none()

    def max_index(self, session_id: str, phase: str) -> Optional[int]:
        return self.db.execute(
            select(func.max(Chain.chain_index))
            .where(Chain.session_id == session_id, Chain.phase == phase)
        ).scalar_one_or_none()


class ScanLogStore:
    """Append-only hand-off attempt log."""

    def __init__(self, db: Session):
        self.db = db

    def append(self, session_id: str, chain_id: str, from_student: str, to_student: str,
               attempted_at: datetime, outcome: str, reason: str = None) -> ScanLogEntry:
        entry = ScanLogEntry(
            session_id=session_id,
            chain_id=chain_id,
            from_student_id=from_student,
            to_student_id=to_student,
            attempted_at=attempted_at,
            recorded_at=utcnow(),
            outcome=outcome,
            reason=reason,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_by_chain(self, session_id: str, chain_id: str,
                      as_of: datetime = None) -> List[ScanLogEntry]:
        """
        Entries for one chain in the order the store recorded them.

        ``as_of`` bounds entries by the caller-supplied attempt time.
        """
        query = select(ScanLogEntry).where(ScanLogEntry.session_id == session_id,
                                           ScanLogEntry.chain_id == chain_id)
        if as_of is not None:
            query = query.where(ScanLogEntry.attempted_at <= as_of)
        query = query.order_by(ScanLogEntry.seq)
        return list(self.db.execute(query).scalars())

    def list_by_session(self, session_id: str, outcome: str = None,
                        as_of: datetime = None) -> List[ScanLogEntry]:
        query = select(ScanLogEntry).where(ScanLogEntry.session_id == session_id)
        if outcome is not None:
            query = query.where(ScanLogEntry.outcome == outcome)
        if as_of is not None:
            query = query.where(ScanLogEntry.attempted_at <= as_of)
        query = query.order_by(ScanLogEntry.chain_id, ScanLogEntry.seq)
        return list(self.db.execute(query).scalars())

    def successful_receivers(self, session_id: str, chain_id: str) -> List[str]:
        return list(self.db.execute(
            select(ScanLogEntry.to_student_id)
            .where(ScanLogEntry.session_id == session_id,
                   ScanLogEntry.chain_id == chain_id,
                   ScanLogEntry.outcome == ScanOutcome.SUCCESS.value)
            .order_by(ScanLogEntry.seq)
        ).scalars())

    def successful_receivers_by_chain(self, session_id: str) -> Dict[str, List[str]]:
        receivers: Dict[str, List[str]] = {}
        for entry in self.list_by_session(session_id, outcome=ScanOutcome.SUCCESS.value):
            receivers.setdefault(entry.chain_id, []).append(entry.to_student_id)
        return receivers

    def count_by_chain(self, session_id: str, chain_id: str) -> int:
        return self.db.execute(
            select(func.count(ScanLogEntry.seq))
            .where(ScanLogEntry.session_id == session_id,
                   ScanLogEntry.chain_id == chain_id)
        ).scalar_one()


class SnapshotDirectory:
    """Named timestamp markers used to bound trace reconstruction."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, session_id: str, label: str = None, taken_at: datetime = None) -> Snapshot:
        count = self.db.execute(
            select(func.count(Snapshot.snapshot_id)).where(Snapshot.session_id == session_id)
        ).scalar_one()
        snapshot = Snapshot(
            session_id=session_id,
            snapshot_id=str(uuid.uuid4()),
            snapshot_index=count + 1,
            label=label or "{} #{}".format(config.SNAPSHOT_DEFAULT_LABEL, count + 1),
            taken_at=taken_at or utcnow(),
        )
        self.db.add(snapshot)
        self.db.flush()
        log_with_context(db_logger, "INFO", "Snapshot #{} recorded".format(snapshot.snapshot_index),
                         context={"session_id": session_id, "snapshot_id": snapshot.snapshot_id})
        return snapshot

    def get(self, session_id: str, snapshot_id: str) -> Snapshot:
        snapshot = self.db.get(Snapshot, (session_id, snapshot_id))
        if snapshot is None:
            raise SnapshotNotFound(session_id, snapshot_id)
        return snapshot

    def list_by_session(self, session_id: str) -> List[Snapshot]:
        return list(self.db.execute(
            select(Snapshot).where(Snapshot.session_id == session_id)
            .order_by(Snapshot.taken_at.desc(), Snapshot.snapshot_index.desc())
        ).scalars())
