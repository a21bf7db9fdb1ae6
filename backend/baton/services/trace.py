"""
Trace Reconstructor - read-side projection of chains and the scan log.

Builds auditable chain traces:
1. Per chain: every logged attempt in the order the store recorded it,
   with its outcome, plus attempt/success/failure counts and the
   current (or final) holder
2. Per snapshot: every chain of the session traced as of the snapshot
   timestamp, with session-wide sums
3. Snapshot comparison: which students appear in successful transfers up to
   each of two snapshots

Nothing here writes. A chain that was seeded but never scanned yields an
empty transfer list and zero counts.
"""

import time
from dataclasses import dataclass, asdict, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from baton.logging_config import get_logger, log_with_context
from baton.models.chain import Chain
from baton.models.enums import ScanOutcome
from baton.models.scan_log import ScanLogEntry
from baton.services.clock import to_naive_utc
from baton.services.stores import ChainStore, ScanLogStore, SessionDirectory, SnapshotDirectory

logger = get_logger("trace")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class TransferRecord:
    seq: int
    from_student: str
    to_student: str
    attempted_at: datetime
    outcome: str
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["attempted_at"] = _iso(self.attempted_at)
        return data


@dataclass
class ChainTrace:
    session_id: str
    chain_id: str
    phase: str
    chain_index: int
    state: str
    initial_holder: str
    current_holder: Optional[str]
    transfers: List[TransferRecord] = field(default_factory=list)
    total_transfers: int = 0
    successful_transfers: int = 0
    failed_transfers: int = 0
    created_at: Optional[datetime] = None
    last_update: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "chain_id": self.chain_id,
            "phase": self.phase,
            "chain_index": self.chain_index,
            "state": self.state,
            "initial_holder": self.initial_holder,
            "current_holder": self.current_holder,
            "transfers": [t.to_dict() for t in self.transfers],
            "total_transfers": self.total_transfers,
            "successful_transfers": self.successful_transfers,
            "failed_transfers": self.failed_transfers,
            "created_at": _iso(self.created_at),
            "last_update": _iso(self.last_update),
        }


@dataclass
class SnapshotTrace:
    session_id: str
    snapshot_id: str
    snapshot_index: int
    taken_at: datetime
    chains: List[ChainTrace] = field(default_factory=list)
    total_chains: int = 0
    total_transfers: int = 0
    successful_transfers: int = 0
    failed_transfers: int = 0

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "snapshot_id": self.snapshot_id,
            "snapshot_index": self.snapshot_index,
            "taken_at": _iso(self.taken_at),
            "chains": [c.to_dict() for c in self.chains],
            "total_chains": self.total_chains,
            "total_transfers": self.total_transfers,
            "successful_transfers": self.successful_transfers,
            "failed_transfers": self.failed_transfers,
        }


def build_chain_trace(chain: Chain, entries: List[ScanLogEntry]) -> ChainTrace:
    """
    Fold ordered scan log entries into a trace.

    The current holder is the receiver of the last SUCCESS entry, or the
    initial holder when no transfer succeeded.
    """
    trace = ChainTrace(
        session_id=chain.session_id,
        chain_id=chain.chain_id,
        phase=chain.phase,
        chain_index=chain.chain_index,
        state=chain.state,
        initial_holder=chain.initial_holder_id,
        current_holder=chain.initial_holder_id,
        created_at=chain.created_at,
    )

    for entry in entries:
        trace.transfers.append(TransferRecord(
            seq=entry.seq,
            from_student=entry.from_student_id,
            to_student=entry.to_student_id,
            attempted_at=entry.attempted_at,
            outcome=entry.outcome,
            reason=entry.reason,
        ))
        trace.total_transfers += 1
        if entry.outcome == ScanOutcome.SUCCESS.value:
            trace.successful_transfers += 1
            trace.current_holder = entry.to_student_id
        else:
            trace.failed_transfers += 1
        if trace.last_update is None or entry.attempted_at > trace.last_update:
            trace.last_update = entry.attempted_at

    return trace


class TraceReconstructor:
    """Read-only chain and snapshot traces over one database session."""

    def __init__(self, db: Session):
        self.db = db
        self.sessions = SessionDirectory(db)
        self.chains = ChainStore(db)
        self.scan_log = ScanLogStore(db)
        self.snapshots = SnapshotDirectory(db)

    def reconstruct_chain_trace(self, session_id: str, chain_id: str,
                                as_of: datetime = None) -> ChainTrace:
        """
        Trace one chain, optionally bounded to entries at or before ``as_of``.

        Raises:
            SessionNotFound, ChainNotFound
        """
        self.sessions.get(session_id)
        chain, _ = self.chains.read(session_id, chain_id)
        as_of = to_naive_utc(as_of) if as_of is not None else None
        entries = self.scan_log.list_by_chain(session_id, chain_id, as_of=as_of)
        trace = build_chain_trace(chain, entries)

        log_with_context(logger, "DEBUG",
                         "Chain trace built: {} attempt(s)".format(trace.total_transfers),
                         context={"session_id": session_id, "chain_id": chain_id})
        return trace

    def reconstruct_snapshot_trace(self, session_id: str, snapshot_id: str) -> SnapshotTrace:
        """
        Trace every chain of the session as of the snapshot timestamp.

        Raises:
            SessionNotFound, SnapshotNotFound
        """
        start_time = time.time()
        self.sessions.get(session_id)
        snapshot = self.snapshots.get(session_id, snapshot_id)

        entries_by_chain = {}
        for entry in self.scan_log.list_by_session(session_id, as_of=snapshot.taken_at):
            entries_by_chain.setdefault(entry.chain_id, []).append(entry)

        result = SnapshotTrace(
            session_id=session_id,
            snapshot_id=snapshot.snapshot_id,
            snapshot_index=snapshot.snapshot_index,
            taken_at=snapshot.taken_at,
        )
        for chain in self.chains.list_by_session(session_id):
            trace = build_chain_trace(chain, entries_by_chain.get(chain.chain_id, []))
            result.chains.append(trace)
            result.total_transfers += trace.total_transfers
            result.successful_transfers += trace.successful_transfers
            result.failed_transfers += trace.failed_transfers
        result.total_chains = len(result.chains)

        duration_ms = (time.time() - start_time) * 1000
        log_with_context(logger, "INFO",
                         "Snapshot trace built: {} chain(s), {} attempt(s)".format(
                             result.total_chains, result.total_transfers),
                         context={"session_id": session_id, "snapshot_id": snapshot_id},
                         extra_data={"duration_ms": round(duration_ms, 2)})
        return result

    def compare_snapshots(self, session_id: str, first_id: str, second_id: str) -> dict:
        """
        Compare who had appeared in successful transfers by each snapshot.

        A student "appears" as the initial holder of a chain created by the
        snapshot time or as the receiver of a successful transfer attempted
        by then.
        """
        self.sessions.get(session_id)
        first = self.snapshots.get(session_id, first_id)
        second = self.snapshots.get(session_id, second_id)

        first_students = self._students_as_of(session_id, first.taken_at)
        second_students = self._students_as_of(session_id, second.taken_at)

        return {
            "session_id": session_id,
            "first": {
                "snapshot_id": first.snapshot_id,
                "taken_at": _iso(first.taken_at),
                "students": sorted(first_students),
            },
            "second": {
                "snapshot_id": second.snapshot_id,
                "taken_at": _iso(second.taken_at),
                "students": sorted(second_students),
            },
            "differences": {
                "new_students": sorted(second_students - first_students),
                "missing_students": sorted(first_students - second_students),
                "common_students": sorted(first_students & second_students),
                "time_difference_seconds": (second.taken_at - first.taken_at).total_seconds(),
            },
        }

    def _students_as_of(self, session_id: str, as_of: datetime) -> set:
        students = {
            chain.initial_holder_id
            for chain in self.chains.list_by_session(session_id)
            if chain.created_at <= as_of
        }
        for entry in self.scan_log.list_by_session(session_id, outcome=ScanOutcome.SUCCESS.value,
                                                   as_of=as_of):
            students.add(entry.to_student_id)
        return students
