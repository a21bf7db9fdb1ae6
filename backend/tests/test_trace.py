from datetime import timedelta

import pytest

from baton.errors import ChainNotFound, InvalidHolder, SnapshotNotFound
from baton.services.stores import ChainStore, SnapshotDirectory
from baton.services.trace import TraceReconstructor


@pytest.fixture()
def trace(db):
    return TraceReconstructor(db)


def _snapshot(db, session_id, taken_at, label=None):
    snapshot = SnapshotDirectory(db).create(session_id, label=label, taken_at=taken_at)
    db.commit()
    return snapshot


def test_unscanned_chain_has_empty_trace(chain_engine, new_session, trace):
    sid = new_session(["A", "B"])
    chain_id = chain_engine.seed_chains(sid, "ENTRY", 1)[0].chain_id

    result = trace.reconstruct_chain_trace(sid, chain_id)

    assert result.transfers == []
    assert result.total_transfers == 0
    assert result.successful_transfers == 0
    assert result.failed_transfers == 0
    assert result.current_holder == "A"
    assert result.last_update is None


def test_trace_keeps_store_order_for_late_delivered_attempts(chain_engine, new_session, trace, clock):
    sid = new_session(["A", "B", "C"])
    chain_id = chain_engine.seed_chains(sid, "ENTRY", 1)[0].chain_id
    t0 = clock()

    chain_engine.apply_handoff(sid, chain_id, "A", "B", timestamp=t0 + timedelta(seconds=10))
    # delivered late, attempted earlier
    with pytest.raises(InvalidHolder):
        chain_engine.apply_handoff(sid, chain_id, "C", "A", timestamp=t0 + timedelta(seconds=5))

    result = trace.reconstruct_chain_trace(sid, chain_id)

    assert [t.outcome for t in result.transfers] == ["SUCCESS", "FAILED"]
    assert result.transfers[1].reason == "HOLDER_MISMATCH"
    assert result.current_holder == "B"
    assert result.total_transfers == 2
    assert result.last_update == t0 + timedelta(seconds=10)


def test_trace_holder_matches_chain_when_clocks_disagree(chain_engine, new_session, trace, db, clock):
    sid = new_session(["A", "B", "C"])
    chain_id = chain_engine.seed_chains(sid, "ENTRY", 1)[0].chain_id
    t0 = clock()

    chain_engine.apply_handoff(sid, chain_id, "A", "B", timestamp=t0 + timedelta(seconds=10))
    # B's scanner clock runs behind
    chain_engine.apply_handoff(sid, chain_id, "B", "C", timestamp=t0 + timedelta(seconds=5))

    result = trace.reconstruct_chain_trace(sid, chain_id)
    chain, _ = ChainStore(db).read(sid, chain_id)

    assert [(t.from_student, t.to_student) for t in result.transfers] == [("A", "B"), ("B", "C")]
    assert result.current_holder == "C"
    assert chain.holder_id == "C"
    assert result.last_update == t0 + timedelta(seconds=10)


def test_trace_as_of_bounds_entries(chain_engine, new_session, trace, clock):
    sid = new_session(["A", "B", "C"])
    chain_id = chain_engine.seed_chains(sid, "ENTRY", 1)[0].chain_id
    t0 = clock()
    chain_engine.apply_handoff(sid, chain_id, "A", "B", timestamp=t0 + timedelta(seconds=10))
    chain_engine.apply_handoff(sid, chain_id, "B", "C", timestamp=t0 + timedelta(seconds=20))

    result = trace.reconstruct_chain_trace(sid, chain_id, as_of=t0 + timedelta(seconds=15))

    assert result.total_transfers == 1
    assert result.current_holder == "B"


def test_unknown_chain(new_session, trace):
    sid = new_session(["A"])
    with pytest.raises(ChainNotFound):
        trace.reconstruct_chain_trace(sid, "nope")


def test_snapshot_trace_counts_entries_up_to_snapshot(chain_engine, new_session, trace, db, clock):
    sid = new_session(["A", "B", "C", "D"])
    seeded = chain_engine.seed_chains(sid, "ENTRY", 2)
    first, second = seeded[0].chain_id, seeded[1].chain_id
    t0 = clock()

    chain_engine.apply_handoff(sid, first, "A", "C", timestamp=t0 + timedelta(seconds=5))
    with pytest.raises(InvalidHolder):
        chain_engine.apply_handoff(sid, second, "A", "D", timestamp=t0 + timedelta(seconds=6))
    snapshot = _snapshot(db, sid, t0 + timedelta(seconds=10))
    chain_engine.apply_handoff(sid, second, "B", "D", timestamp=t0 + timedelta(seconds=15))

    result = trace.reconstruct_snapshot_trace(sid, snapshot.snapshot_id)

    assert result.total_chains == 2
    assert result.total_transfers == 2
    assert result.successful_transfers == 1
    assert result.failed_transfers == 1
    by_chain = {c.chain_id: c for c in result.chains}
    assert by_chain[first].current_holder == "C"
    assert by_chain[second].current_holder == "B"
    assert result.to_dict()["snapshot_index"] == 1


def test_snapshot_default_label_and_order(new_session, db, clock):
    sid = new_session(["A"])
    first = _snapshot(db, sid, clock())
    second = _snapshot(db, sid, clock.advance(30), label="after break")

    assert first.label == "Snapshot #1"
    assert second.snapshot_index == 2
    listed = SnapshotDirectory(db).list_by_session(sid)
    assert [s.snapshot_id for s in listed] == [second.snapshot_id, first.snapshot_id]


def test_unknown_snapshot(new_session, trace):
    sid = new_session(["A"])
    with pytest.raises(SnapshotNotFound):
        trace.reconstruct_snapshot_trace(sid, "missing")


def test_compare_snapshots(chain_engine, new_session, trace, db, clock):
    sid = new_session(["A", "B", "C", "D"])
    chain_id = chain_engine.seed_chains(sid, "ENTRY", 1)[0].chain_id
    t0 = clock()

    chain_engine.apply_handoff(sid, chain_id, "A", "B", timestamp=t0 + timedelta(seconds=10))
    early = _snapshot(db, sid, t0 + timedelta(seconds=15))
    chain_engine.apply_handoff(sid, chain_id, "B", "C", timestamp=t0 + timedelta(seconds=20))
    late = _snapshot(db, sid, t0 + timedelta(seconds=25))

    result = trace.compare_snapshots(sid, early.snapshot_id, late.snapshot_id)

    assert result["first"]["students"] == ["A", "B"]
    assert result["second"]["students"] == ["A", "B", "C"]
    assert result["differences"] == {
        "new_students": ["C"],
        "missing_students": [],
        "common_students": ["A", "B"],
        "time_difference_seconds": 10.0,
    }
