"""
Chain Engine - chain lifecycle and hand-off validation.

Implements the custody rules for token-passing attendance chains:
1. Seeding: pick K distinct eligible students uniformly at random, one chain each
2. Hand-off: validate holder / re-entry / enrollment / session state and
   that the receiver holds no other ACTIVE chain of the phase, then move
   custody with a compare-and-swap on the chain version
3. Completion: a hand-off that satisfies the phase's terminal condition
   completes the chain in the same update; teachers can also close a chain
4. Break: abandoned, stalled, phase-ended or session-ended chains go BROKEN

Every hand-off attempt against an existing chain writes exactly one scan log
entry. Rejections are committed as FAILED entries before the typed error is
raised, so the audit trail is complete whatever the outcome.

Concurrency: there is no lock. Two hand-offs racing on the same chain both
read version N; only one UPDATE ... WHERE version = N matches. The loser
re-reads once and re-validates (the holder has usually moved on, which makes
it an InvalidHolder); a second conflict is reported as ConcurrentModification.
"""

import time
from dataclasses import dataclass, asdict, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from baton import config
from baton.errors import (
    AlreadyEnded, ChainNotActive, ConcurrentModification, InsufficientEligibleStudents,
    InvalidHolder, SessionEnded,
)
from baton.logging_config import get_logger, log_with_context
from baton.models.chain import Chain, generate_chain_id
from baton.models.enums import (
    BreakReason, ChainPhase, ChainState, ScanFailureReason, ScanOutcome,
)
from baton.services import events
from baton.services.clock import default_rng, to_naive_utc, utcnow
from baton.services.stores import (
    ChainStore, EnrollmentDirectory, ScanLogStore, SessionDirectory,
)

logger = get_logger("chain")

# Attempts to move a busy chain to a terminal state before giving up.
TERMINAL_TRANSITION_ATTEMPTS = 5

# Seeding rounds before a run of holder collisions is reported as a conflict.
SEED_ATTEMPTS = 3


@dataclass(frozen=True)
class TerminalCondition:
    """
    When a successful hand-off completes its chain.

    The chain completes when the new holder is one of ``verifiers`` or when
    the number of successful hand-offs reaches ``hop_limit``. With neither
    set, the chain only completes through an explicit close.
    """
    hop_limit: Optional[int] = None
    verifiers: frozenset = frozenset()

    def is_met(self, new_holder: str, hop_count: int) -> bool:
        if new_holder in self.verifiers:
            return True
        return bool(self.hop_limit) and hop_count >= self.hop_limit


def default_terminal_conditions(verifiers: Dict[str, Iterable[str]] = None) -> Dict[ChainPhase, TerminalCondition]:
    """Per-phase conditions from the environment, optionally with verifier students per phase."""
    verifiers = verifiers or {}
    limits = {
        ChainPhase.ENTRY: config.ENTRY_HOP_LIMIT,
        ChainPhase.LATE: config.LATE_HOP_LIMIT,
        ChainPhase.EXIT: config.EXIT_HOP_LIMIT,
    }
    return {
        phase: TerminalCondition(
            hop_limit=limit or None,
            verifiers=frozenset(verifiers.get(phase, verifiers.get(phase.value, ()))),
        )
        for phase, limit in limits.items()
    }


@dataclass
class SeededChain:
    chain_id: str
    phase: str
    chain_index: int
    initial_holder: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class HandoffResult:
    """Outcome of a successful hand-off."""
    session_id: str
    chain_id: str
    from_student: str
    to_student: str
    state: str
    holder_id: Optional[str]
    hop_count: int
    version: int
    completed: bool
    scan_seq: int
    retries: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EndResult:
    session_id: str
    phase: Optional[str]
    session_ended: bool
    broken_chain_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _as_phase(phase) -> ChainPhase:
    return phase if isinstance(phase, ChainPhase) else ChainPhase(str(phase).upper())


class ChainEngine:
    """
    Chain lifecycle operations over one database session.

    Args:
        db: SQLAlchemy session; each operation commits its own work
        terminal_conditions: per-phase TerminalCondition (defaults from config)
        clock: callable returning naive UTC now
        rng: object with ``sample(population, k)``
        publisher: EventPublisher receiving state-change events
        retries: re-read/re-validate attempts after a version conflict
    """

    def __init__(self, db: Session, terminal_conditions: Dict[ChainPhase, TerminalCondition] = None,
                 clock=None, rng=None, publisher: events.EventPublisher = None, retries: int = None):
        self.db = db
        self.sessions = SessionDirectory(db)
        self.enrollments = EnrollmentDirectory(db)
        self.chains = ChainStore(db)
        self.scan_log = ScanLogStore(db)
        self.terminal_conditions = terminal_conditions or default_terminal_conditions()
        self.clock = clock or utcnow
        self.rng = rng or default_rng()
        self.publisher = publisher or events.default_publisher
        self.retries = config.HANDOFF_RETRIES if retries is None else retries

    # ── Queries ───────────────────────────────────────────────

    def holders(self, chain: Chain) -> List[str]:
        """Every student who has held the chain, in custody order."""
        return [chain.initial_holder_id] + self.scan_log.successful_receivers(chain.session_id, chain.chain_id)

    def participants(self, session_id: str, phase, states: Iterable[str] = None) -> Set[str]:
        """Students who held any chain of the phase (optionally restricted to chain states)."""
        phase = _as_phase(phase)
        receivers = self.scan_log.successful_receivers_by_chain(session_id)
        students: Set[str] = set()
        for chain in self.chains.list_by_session(session_id, phase=phase.value):
            if states is not None and chain.state not in states:
                continue
            students.add(chain.initial_holder_id)
            students.update(receivers.get(chain.chain_id, []))
        return students

    def eligible_students(self, session_id: str, phase) -> Set[str]:
        """
        Students who may seed a new chain of the phase.

        Enrolled students, minus current holders of ACTIVE chains in the
        phase, minus everyone who held a COMPLETED chain in the phase. EXIT
        chains are further limited to students with ENTRY participation.
        """
        phase = _as_phase(phase)
        pool = self.enrollments.list_enrolled(session_id)
        receivers = self.scan_log.successful_receivers_by_chain(session_id)

        for chain in self.chains.list_by_session(session_id, phase=phase.value):
            if chain.is_active and chain.holder_id:
                pool.discard(chain.holder_id)
            elif chain.state == ChainState.COMPLETED.value:
                pool.discard(chain.initial_holder_id)
                pool.difference_update(receivers.get(chain.chain_id, []))

        if phase == ChainPhase.EXIT:
            pool &= self.participants(session_id, ChainPhase.ENTRY)
        return pool

    def list_chains(self, session_id: str, phase=None, state=None) -> List[Chain]:
        self.sessions.get(session_id)
        return self.chains.list_by_session(
            session_id,
            phase=_as_phase(phase).value if phase else None,
            state=ChainState(state).value if state else None,
        )

    # ── Seeding ───────────────────────────────────────────────

    def seed_chains(self, session_id: str, phase, count: int) -> List[SeededChain]:
        """
        Create ``count`` ACTIVE chains, each seeded with a distinct randomly
        chosen eligible student.

        Raises:
            SessionNotFound, SessionEnded, InsufficientEligibleStudents
            ConcurrentModification: every selection collided with a concurrent seeding
            ValueError: count is not a positive integer
        """
        return self._seed(session_id, _as_phase(phase), count, chain_index=None)

    def reseed_chains(self, session_id: str, phase, count: int) -> List[SeededChain]:
        """Seed a new round of chains for the phase with the next chain index."""
        phase = _as_phase(phase)
        current = self.chains.max_index(session_id, phase.value)
        return self._seed(session_id, phase, count,
                          chain_index=0 if current is None else current + 1)

    def _seed(self, session_id: str, phase: ChainPhase, count: int,
              chain_index: Optional[int]) -> List[SeededChain]:
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise ValueError("count must be a positive integer")

        start_time = time.time()
        session = self.sessions.get(session_id)
        if not session.is_active:
            raise SessionEnded("Session {} has ended".format(session_id),
                               ScanFailureReason.SESSION_ENDED.value,
                               details={"session_id": session_id})

        for attempt in range(1, SEED_ATTEMPTS + 1):
            pool = self.eligible_students(session_id, phase)
            if len(pool) < count:
                log_with_context(logger, "WARNING",
                                 "Seeding refused: requested {}, eligible {}".format(count, len(pool)),
                                 context={"session_id": session_id},
                                 extra_data={"phase": phase.value, "attempt": attempt})
                raise InsufficientEligibleStudents(count, len(pool))

            selected = self.rng.sample(sorted(pool), count)
            try:
                created, index = self._create_chains(session_id, phase, selected, chain_index)
                self.db.commit()
                break
            except IntegrityError:
                # ux_chains_active_holder: a concurrent seeding or hand-off
                # gave one of the selected students an ACTIVE chain first.
                self.db.rollback()
                log_with_context(logger, "INFO", "Selected holder claimed concurrently, resampling",
                                 context={"session_id": session_id},
                                 extra_data={"phase": phase.value, "attempt": attempt})
            except (SQLAlchemyError, SessionEnded):
                self.db.rollback()
                raise
        else:
            raise ConcurrentModification(
                "Seeding {} chains kept colliding with concurrent seeding".format(phase.value),
                ScanFailureReason.CONCURRENT_MODIFICATION.value,
                details={"session_id": session_id, "phase": phase.value})

        duration_ms = (time.time() - start_time) * 1000
        log_with_context(logger, "INFO",
                         "Seeded {} {} chain(s), index {}".format(len(created), phase.value, index),
                         context={"session_id": session_id},
                         extra_data={"duration_ms": round(duration_ms, 2),
                                     "holders": [c.initial_holder for c in created]})

        for seeded in created:
            self.publisher.publish(events.ChainEvent(
                event_type=events.CHAIN_SEEDED, session_id=session_id, chain_id=seeded.chain_id,
                phase=phase.value, state=ChainState.ACTIVE.value, holder_id=seeded.initial_holder,
                version=1))
        return created

    def _create_chains(self, session_id: str, phase: ChainPhase, selected: List[str],
                       chain_index: Optional[int]):
        """Insert one ACTIVE chain per selected student; the caller commits."""
        if not self.sessions.is_active(session_id):
            raise SessionEnded("Session {} has ended".format(session_id),
                               ScanFailureReason.SESSION_ENDED.value,
                               details={"session_id": session_id})

        if chain_index is None:
            current = self.chains.max_index(session_id, phase.value)
            chain_index = 0 if current is None else current

        now = self.clock()
        created = []
        for student_id in selected:
            chain = self.chains.create(Chain(
                session_id=session_id,
                chain_id=generate_chain_id(),
                phase=phase.value,
                chain_index=chain_index,
                state=ChainState.ACTIVE.value,
                initial_holder_id=student_id,
                holder_id=student_id,
                hop_count=0,
                version=1,
                created_at=now,
                updated_at=now,
            ))
            created.append(SeededChain(chain.chain_id, phase.value, chain_index, student_id))
        return created, chain_index

    # ── Hand-off ──────────────────────────────────────────────

    def apply_handoff(self, session_id: str, chain_id: str, from_student: str, to_student: str,
                      timestamp: datetime = None) -> HandoffResult:
        """
        Transfer custody of a chain from ``from_student`` to ``to_student``.

        Raises:
            SessionNotFound, ChainNotFound: nothing is logged
            SessionEnded, ChainNotActive, InvalidHolder, ConcurrentModification:
                a FAILED entry has been committed to the scan log
        """
        start_time = time.time()
        attempted_at = to_naive_utc(timestamp) if timestamp is not None else self.clock()

        self.sessions.get(session_id)
        chain, version = self.chains.read(session_id, chain_id)
        attempt = 0

        while True:
            self._validate_handoff(chain, from_student, to_student, attempted_at)

            new_hops = chain.hop_count + 1
            completes = self._condition_for(chain.phase).is_met(to_student, new_hops)
            changes = {"holder_id": to_student, "hop_count": new_hops, "updated_at": self.clock()}
            if completes:
                changes.update(state=ChainState.COMPLETED.value, holder_id=None,
                               final_holder_id=to_student)
            elif self.chains.active_chain_held_by(session_id, chain.phase, to_student):
                self._reject(InvalidHolder, ScanFailureReason.HOLDS_ACTIVE_CHAIN,
                             "{} already holds an active {} chain".format(to_student, chain.phase),
                             chain, from_student, to_student, attempted_at)

            # Final validation: session end may have raced with this attempt.
            if not self.sessions.is_active(session_id):
                self._reject(SessionEnded, ScanFailureReason.SESSION_ENDED,
                             "Session {} has ended".format(session_id),
                             chain, from_student, to_student, attempted_at)

            try:
                swapped = self.chains.conditional_update(session_id, chain_id, version,
                                                         require_active_session=True, **changes)
                if swapped:
                    entry = self.scan_log.append(session_id, chain_id, from_student, to_student,
                                                 attempted_at, ScanOutcome.SUCCESS.value)
                    scan_seq = entry.seq
                    self.db.commit()
                else:
                    self.db.rollback()
            except IntegrityError:
                # The receiver picked up another ACTIVE chain of the phase
                # after validation; re-validate like any other conflict.
                self.db.rollback()
                swapped = False
            except SQLAlchemyError:
                self.db.rollback()
                raise

            if swapped:
                break

            if not self.sessions.is_active(session_id):
                self._reject(SessionEnded, ScanFailureReason.SESSION_ENDED,
                             "Session {} has ended".format(session_id),
                             chain, from_student, to_student, attempted_at)
            if attempt >= self.retries:
                self._reject(ConcurrentModification, ScanFailureReason.CONCURRENT_MODIFICATION,
                             "Chain {} was modified concurrently".format(chain_id),
                             chain, from_student, to_student, attempted_at)
            attempt += 1
            log_with_context(logger, "INFO", "Version conflict, re-reading chain",
                             context={"session_id": session_id, "chain_id": chain_id},
                             extra_data={"expected_version": version, "attempt": attempt})
            chain, version = self.chains.read(session_id, chain_id)

        result = HandoffResult(
            session_id=session_id,
            chain_id=chain_id,
            from_student=from_student,
            to_student=to_student,
            state=changes.get("state", ChainState.ACTIVE.value),
            holder_id=changes["holder_id"],
            hop_count=new_hops,
            version=version + 1,
            completed=completes,
            scan_seq=scan_seq,
            retries=attempt,
        )

        duration_ms = (time.time() - start_time) * 1000
        log_with_context(logger, "INFO",
                         "Hand-off {} -> {} accepted{}".format(
                             from_student, to_student, ", chain completed" if completes else ""),
                         context={"session_id": session_id, "chain_id": chain_id},
                         extra_data={"duration_ms": round(duration_ms, 2), "hop_count": new_hops,
                                     "version": result.version, "retries": attempt})

        self.publisher.publish(events.ChainEvent(
            event_type=events.CHAIN_COMPLETED if completes else events.CHAIN_HANDOFF,
            session_id=session_id, chain_id=chain_id, phase=chain.phase, state=result.state,
            holder_id=to_student, version=result.version))
        return result

    def _validate_handoff(self, chain: Chain, from_student: str, to_student: str,
                          attempted_at: datetime):
        session_id = chain.session_id
        if not self.sessions.is_active(session_id):
            self._reject(SessionEnded, ScanFailureReason.SESSION_ENDED,
                         "Session {} has ended".format(session_id),
                         chain, from_student, to_student, attempted_at)

        if not chain.is_active:
            self._reject(ChainNotActive, ScanFailureReason.CHAIN_NOT_ACTIVE,
                         "Chain {} is {}".format(chain.chain_id, chain.state),
                         chain, from_student, to_student, attempted_at)

        if chain.holder_id != from_student:
            self._reject(InvalidHolder, ScanFailureReason.HOLDER_MISMATCH,
                         "{} does not hold chain {}".format(from_student, chain.chain_id),
                         chain, from_student, to_student, attempted_at)

        if to_student in self.holders(chain):
            self._reject(InvalidHolder, ScanFailureReason.REENTRY,
                         "{} already held chain {}".format(to_student, chain.chain_id),
                         chain, from_student, to_student, attempted_at)

        if not self.enrollments.is_enrolled(session_id, to_student):
            self._reject(InvalidHolder, ScanFailureReason.NOT_ENROLLED,
                         "{} is not enrolled in session {}".format(to_student, session_id),
                         chain, from_student, to_student, attempted_at)

    def _reject(self, error_cls, reason: ScanFailureReason, message: str, chain: Chain,
                from_student: str, to_student: str, attempted_at: datetime):
        """Commit a FAILED scan entry for the attempt, then raise ``error_cls``."""
        session_id, chain_id = chain.session_id, chain.chain_id
        try:
            entry = self.scan_log.append(session_id, chain_id, from_student, to_student,
                                         attempted_at, ScanOutcome.FAILED.value, reason.value)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        log_with_context(logger, "WARNING",
                         "Hand-off {} -> {} rejected: {}".format(from_student, to_student, reason.value),
                         context={"session_id": session_id, "chain_id": chain_id},
                         extra_data={"reason": reason.value, "scan_seq": entry.seq})
        raise error_cls(message, reason.value, entry=entry,
                        details={"session_id": session_id, "chain_id": chain_id,
                                 "from_student": from_student, "to_student": to_student})

    def _condition_for(self, phase: str) -> TerminalCondition:
        return self.terminal_conditions.get(_as_phase(phase), TerminalCondition())

    # ── Terminal transitions ──────────────────────────────────

    def close_chain(self, session_id: str, chain_id: str) -> Chain:
        """Complete an ACTIVE chain on the teacher's request; the current holder becomes final."""
        self.sessions.get(session_id)
        chain = self._terminate(session_id, chain_id, ChainState.COMPLETED)
        if chain is None:
            current, _ = self.chains.read(session_id, chain_id)
            raise ChainNotActive("Chain {} is {}".format(chain_id, current.state),
                                 ScanFailureReason.CHAIN_NOT_ACTIVE.value,
                                 details={"session_id": session_id, "chain_id": chain_id})
        return chain

    def abandon_chain(self, session_id: str, chain_id: str) -> Chain:
        """Break an ACTIVE chain explicitly; no further hand-offs are accepted."""
        self.sessions.get(session_id)
        chain = self._terminate(session_id, chain_id, ChainState.BROKEN, BreakReason.ABANDONED)
        if chain is None:
            current, _ = self.chains.read(session_id, chain_id)
            raise ChainNotActive("Chain {} is {}".format(chain_id, current.state),
                                 ScanFailureReason.CHAIN_NOT_ACTIVE.value,
                                 details={"session_id": session_id, "chain_id": chain_id})
        return chain

    def detect_stalled_chains(self, session_id: str, phase, now: datetime = None,
                              stall_seconds: int = None) -> List[Chain]:
        """Break ACTIVE chains of the phase that have been idle longer than the stall threshold."""
        phase = _as_phase(phase)
        self.sessions.get(session_id)
        now = to_naive_utc(now) if now is not None else self.clock()
        cutoff = now - timedelta(seconds=stall_seconds or config.STALL_SECONDS)

        stalled = []
        for chain in self.chains.list_by_session(session_id, phase=phase.value,
                                                 state=ChainState.ACTIVE.value):
            if chain.updated_at >= cutoff:
                continue
            # A conflict here means the chain just moved, so it is not stalled.
            broken = self._terminate(session_id, chain.chain_id, ChainState.BROKEN,
                                     BreakReason.STALLED, expected=chain)
            if broken is not None:
                stalled.append(broken)

        if stalled:
            log_with_context(logger, "WARNING",
                             "{} stalled {} chain(s) broken".format(len(stalled), phase.value),
                             context={"session_id": session_id},
                             extra_data={"chain_ids": [c.chain_id for c in stalled]})
        return stalled

    def end_phase_or_session(self, session_id: str, phase=None) -> EndResult:
        """
        End one phase (break its ACTIVE chains) or, without a phase, end the
        whole session: guarded ACTIVE -> ENDED transition and the break of
        every ACTIVE chain, committed as one transaction.

        Raises:
            SessionNotFound
            AlreadyEnded: the session was already ended (no side effects)
            SessionEnded: a phase end was requested on an ended session
        """
        session = self.sessions.get(session_id)

        if phase is not None:
            phase = _as_phase(phase)
            if not session.is_active:
                raise SessionEnded("Session {} has ended".format(session_id),
                                   ScanFailureReason.SESSION_ENDED.value,
                                   details={"session_id": session_id})
            try:
                broken = self._swap_all(session_id, phase, BreakReason.PHASE_ENDED)
                self.db.commit()
            except (SQLAlchemyError, ConcurrentModification):
                self.db.rollback()
                raise

            self._announce_all(broken, ChainState.BROKEN, BreakReason.PHASE_ENDED)
            log_with_context(logger, "INFO",
                             "{} phase ended, {} chain(s) broken".format(phase.value, len(broken)),
                             context={"session_id": session_id})
            self.publisher.publish(events.ChainEvent(
                event_type=events.PHASE_ENDED, session_id=session_id, phase=phase.value))
            return EndResult(session_id, phase.value, False, [c.chain_id for c in broken])

        try:
            if not self.sessions.mark_ended(session_id, self.clock()):
                self.db.rollback()
                raise AlreadyEnded(session_id)
            # In-flight hand-offs guard their compare-and-swap on the session
            # row, so none can land once this transaction commits.
            broken = self._swap_all(session_id, None, BreakReason.SESSION_ENDED)
            self.db.commit()
        except (SQLAlchemyError, ConcurrentModification):
            self.db.rollback()
            raise

        self._announce_all(broken, ChainState.BROKEN, BreakReason.SESSION_ENDED)
        log_with_context(logger, "INFO",
                         "Session ended, {} chain(s) broken".format(len(broken)),
                         context={"session_id": session_id})
        self.publisher.publish(events.ChainEvent(
            event_type=events.SESSION_ENDED, session_id=session_id))
        return EndResult(session_id, None, True, [c.chain_id for c in broken])

    def _swap_all(self, session_id: str, phase: Optional[ChainPhase], reason: BreakReason) -> List[Chain]:
        """Break every ACTIVE chain (of the phase) inside the caller's transaction."""
        broken = []
        for chain in self.chains.list_by_session(session_id, phase=phase.value if phase else None,
                                                 state=ChainState.ACTIVE.value):
            updated = self._swap_terminal(session_id, chain.chain_id, ChainState.BROKEN, reason)
            if updated is not None:
                broken.append(updated)
        return broken

    def _announce_all(self, chains: List[Chain], state: ChainState, reason: BreakReason = None):
        for chain in chains:
            self._announce_terminal(chain, state, reason)

    def _terminate(self, session_id: str, chain_id: str, state: ChainState,
                   reason: BreakReason = None, expected: Chain = None) -> Optional[Chain]:
        """Move one ACTIVE chain to ``state`` and commit; see ``_swap_terminal``."""
        try:
            updated = self._swap_terminal(session_id, chain_id, state, reason, expected)
            if updated is not None:
                self.db.commit()
        except (SQLAlchemyError, ConcurrentModification):
            self.db.rollback()
            raise

        if updated is not None:
            self._announce_terminal(updated, state, reason)
        return updated

    def _swap_terminal(self, session_id: str, chain_id: str, state: ChainState,
                       reason: BreakReason = None, expected: Chain = None) -> Optional[Chain]:
        """
        Move an ACTIVE chain to ``state`` through the compare-and-swap path,
        without committing.

        Returns the updated chain, or None if the chain was no longer ACTIVE
        (or, when ``expected`` is given, if it changed since that read).
        """
        for _ in range(TERMINAL_TRANSITION_ATTEMPTS):
            if expected is not None:
                chain, version = expected, expected.version
            else:
                chain, version = self.chains.read(session_id, chain_id)
            if not chain.is_active:
                return None

            swapped = self.chains.conditional_update(
                session_id, chain_id, version,
                state=state.value, holder_id=None, final_holder_id=chain.holder_id,
                break_reason=reason.value if reason else None,
                updated_at=self.clock())
            if swapped:
                updated, _ = self.chains.read(session_id, chain_id)
                return updated
            if expected is not None:
                return None

        raise ConcurrentModification(
            "Chain {} kept changing while being moved to {}".format(chain_id, state.value),
            ScanFailureReason.CONCURRENT_MODIFICATION.value,
            details={"session_id": session_id, "chain_id": chain_id})

    def _announce_terminal(self, chain: Chain, state: ChainState, reason: BreakReason = None):
        """Log and publish a committed terminal transition."""
        log_with_context(logger, "INFO",
                         "Chain {}{}".format(state.value.lower(),
                                             " ({})".format(reason.value) if reason else ""),
                         context={"session_id": chain.session_id, "chain_id": chain.chain_id},
                         extra_data={"final_holder": chain.final_holder_id})
        self.publisher.publish(events.ChainEvent(
            event_type=events.CHAIN_COMPLETED if state == ChainState.COMPLETED else events.CHAIN_BROKEN,
            session_id=chain.session_id, chain_id=chain.chain_id, phase=chain.phase,
            state=chain.state, holder_id=chain.final_holder_id, version=chain.version))
