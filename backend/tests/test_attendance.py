import pytest
from sqlalchemy.exc import OperationalError

from baton.errors import SessionNotEnded, SessionNotFound
from baton.models.enums import AttendanceStatus
from baton.services.attendance import AttendanceResolver, resolve_status
from baton.services.stores import ChainStore, EnrollmentDirectory, ScanLogStore, SessionDirectory


@pytest.mark.parametrize("entry, exit_verified, late, expected", [
    (False, False, False, AttendanceStatus.ABSENT),
    (False, True, True, AttendanceStatus.ABSENT),
    (True, True, False, AttendanceStatus.PRESENT),
    (True, True, True, AttendanceStatus.PRESENT),
    (True, False, True, AttendanceStatus.LATE),
    (True, False, False, AttendanceStatus.PARTIAL),
])
def test_resolution_policy(entry, exit_verified, late, expected):
    assert resolve_status(entry, exit_verified, late) == expected


def _run_class(chain_engine, sid):
    """
    ENTRY: A -> B -> C (closed)
    LATE:  A -> B -> E (abandoned)
    EXIT:  A (closed)
    D never scans; F only has the enrollment exit flag.
    """
    entry_id = chain_engine.seed_chains(sid, "ENTRY", 1)[0].chain_id
    chain_engine.apply_handoff(sid, entry_id, "A", "B")
    chain_engine.apply_handoff(sid, entry_id, "B", "C")
    chain_engine.close_chain(sid, entry_id)

    late_id = chain_engine.seed_chains(sid, "LATE", 1)[0].chain_id
    chain_engine.apply_handoff(sid, late_id, "A", "B")
    chain_engine.apply_handoff(sid, late_id, "B", "E")
    chain_engine.abandon_chain(sid, late_id)

    exit_id = chain_engine.seed_chains(sid, "EXIT", 1)[0].chain_id
    chain_engine.close_chain(sid, exit_id)


def test_final_status_per_student(chain_engine, new_session, db, clock):
    sid = new_session(["A", "B", "C", "D", "E", "F"])
    _run_class(chain_engine, sid)
    EnrollmentDirectory(db).mark_exit_verified(sid, "F")
    db.commit()
    chain_engine.end_phase_or_session(sid)

    records = AttendanceResolver(db, clock=clock).compute_final_status(sid)

    statuses = {r.student_id: r.status for r in records}
    assert statuses == {
        "A": "PRESENT",
        "B": "LATE",
        "C": "PARTIAL",
        "D": "ABSENT",
        "E": "ABSENT",
        "F": "ABSENT",
    }
    facts = {r.student_id: r for r in records}
    assert facts["E"].late_participation is True
    assert facts["E"].entry_participation is False
    assert facts["F"].exit_verified is True


def test_exit_flag_counts_as_exit_verification(chain_engine, new_session, db, clock):
    sid = new_session(["A", "B"])
    entry_id = chain_engine.seed_chains(sid, "ENTRY", 1)[0].chain_id
    chain_engine.apply_handoff(sid, entry_id, "A", "B")
    EnrollmentDirectory(db).mark_exit_verified(sid, "B")
    db.commit()
    chain_engine.end_phase_or_session(sid)

    records = AttendanceResolver(db, clock=clock).compute_final_status(sid)

    assert {r.student_id: r.status for r in records} == {"A": "PARTIAL", "B": "PRESENT"}


def test_broken_exit_chain_does_not_verify_exit(chain_engine, new_session, db, clock):
    sid = new_session(["A", "B"])
    entry_id = chain_engine.seed_chains(sid, "ENTRY", 1)[0].chain_id
    chain_engine.apply_handoff(sid, entry_id, "A", "B")
    chain_engine.close_chain(sid, entry_id)
    chain_engine.seed_chains(sid, "EXIT", 1)
    # the EXIT chain is still in progress when the session ends
    chain_engine.end_phase_or_session(sid)

    records = AttendanceResolver(db, clock=clock).compute_final_status(sid)

    assert all(r.status == "PARTIAL" for r in records)


def test_requires_ended_session(new_session, db):
    sid = new_session(["A"])
    resolver = AttendanceResolver(db)

    with pytest.raises(SessionNotEnded):
        resolver.compute_final_status(sid)
    with pytest.raises(SessionNotFound):
        resolver.compute_final_status("missing")


def test_compute_is_idempotent(chain_engine, new_session, db, clock):
    sid = new_session(["A", "B"])
    chain_engine.seed_chains(sid, "ENTRY", 1)
    chain_engine.end_phase_or_session(sid)
    resolver = AttendanceResolver(db, clock=clock)
    computed_at = clock()

    assert resolver.get_final_status(sid) == []
    first = [(r.student_id, r.status, r.computed_at) for r in resolver.compute_final_status(sid)]
    clock.advance(600)
    second = [(r.student_id, r.status, r.computed_at) for r in resolver.compute_final_status(sid)]

    assert first == second
    assert ScanLogStore(db).list_by_session(sid) == []
    assert all(c.state == "BROKEN" and c.version == 2 for c in ChainStore(db).list_by_session(sid))
    assert first == [("A", "PARTIAL", computed_at), ("B", "ABSENT", computed_at)]
    assert len(resolver.get_final_status(sid)) == 2


def test_interrupted_session_end_changes_nothing(chain_engine, new_session, db, clock, events, monkeypatch):
    sid = new_session(["A", "B", "C"])
    seeded = chain_engine.seed_chains(sid, "ENTRY", 2)
    events.clear()
    original = chain_engine.chains.conditional_update
    calls = []

    def failing_update(*args, **kwargs):
        calls.append(args)
        if len(calls) == 2:
            raise OperationalError("UPDATE chains", {}, Exception("disk I/O error"))
        return original(*args, **kwargs)

    monkeypatch.setattr(chain_engine.chains, "conditional_update", failing_update)

    with pytest.raises(OperationalError):
        chain_engine.end_phase_or_session(sid)

    # the first chain's break was rolled back together with the session end
    assert SessionDirectory(db).is_active(sid)
    assert [c.state for c in ChainStore(db).list_by_session(sid)] == ["ACTIVE", "ACTIVE"]
    assert events == []

    result = chain_engine.end_phase_or_session(sid)

    assert sorted(result.broken_chain_ids) == sorted(s.chain_id for s in seeded)
    assert all(c.state == "BROKEN" for c in ChainStore(db).list_by_session(sid))
    records = AttendanceResolver(db, clock=clock).compute_final_status(sid)
    assert {r.student_id: r.status for r in records} == {"A": "PARTIAL", "B": "PARTIAL", "C": "ABSENT"}
