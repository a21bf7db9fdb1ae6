import pytest
from fastapi.testclient import TestClient

import baton.main as main
from baton.database import get_db


@pytest.fixture()
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[get_db] = override_get_db
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture()
def session_id(client):
    res = client.post("/api/sessions", json={"teacher_id": "t-9", "name": "Chemistry"})
    assert res.status_code == 201
    sid = res.json()["id"]
    for student in ["A", "B", "C"]:
        res = client.post(f"/api/sessions/{sid}/enrollments", json={"student_id": student})
        assert res.status_code == 200
    return sid


def _seed(client, session_id, phase="ENTRY", count=1):
    res = client.post(f"/api/sessions/{session_id}/chains/seed", json={"phase": phase, "count": count})
    assert res.status_code == 201
    return res.json()["chains"]


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "healthy"


def test_request_id_is_echoed(client):
    res = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert res.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


def test_session_roundtrip(client, session_id):
    res = client.get(f"/api/sessions/{session_id}")
    assert res.status_code == 200
    body = res.json()
    assert body["state"] == "ACTIVE"
    assert body["enrolled_students"] == 3

    again = client.post(f"/api/sessions/{session_id}/enrollments", json={"student_id": "A"})
    assert again.json()["created"] is False


def test_unknown_session_is_404(client):
    res = client.get("/api/sessions/nope")
    assert res.status_code == 404
    assert res.json()["error"]["code"] == "SESSION_NOT_FOUND"


def test_exit_verification_closes_with_the_session(client, session_id):
    url = f"/api/sessions/{session_id}/enrollments/A/exit-verified"
    res = client.post(url)
    assert res.status_code == 200
    assert res.json()["exit_verified"] is True

    res = client.post(f"/api/sessions/{session_id}/enrollments/Z/exit-verified")
    assert res.status_code == 404

    assert client.post(f"/api/sessions/{session_id}/end").status_code == 200

    res = client.post(f"/api/sessions/{session_id}/enrollments/B/exit-verified")
    assert res.status_code == 409
    statuses = {r["student_id"]: r for r in client.get(f"/api/sessions/{session_id}/final-status").json()["data"]}
    assert statuses["A"]["exit_verified"] is True
    assert statuses["B"]["exit_verified"] is False


def test_handoff_flow_and_trace(client, session_id):
    chain = _seed(client, session_id)[0]
    holder = chain["initial_holder"]
    others = [s for s in ["A", "B", "C"] if s != holder]

    url = f"/api/sessions/{session_id}/chains/{chain['chain_id']}/handoff"
    res = client.post(url, json={"from_student": holder, "to_student": others[0]})
    assert res.status_code == 200
    assert res.json()["version"] == 2

    res = client.post(url, json={"from_student": others[0], "to_student": holder})
    assert res.status_code == 409
    error = res.json()["error"]
    assert error["code"] == "INVALID_HOLDER"
    assert error["details"]["reason"] == "REENTRY"

    res = client.get(f"/api/sessions/{session_id}/chains/{chain['chain_id']}/trace")
    assert res.status_code == 200
    trace = res.json()
    assert trace["total_transfers"] == 2
    assert trace["successful_transfers"] == 1
    assert trace["current_holder"] == others[0]


def test_seed_validation(client, session_id):
    res = client.post(f"/api/sessions/{session_id}/chains/seed", json={"phase": "ENTRY", "count": 4})
    assert res.status_code == 409
    assert res.json()["error"]["details"] == {"requested": 4, "available": 3}

    res = client.post(f"/api/sessions/{session_id}/chains/seed", json={"phase": "ENTRY", "count": 0})
    assert res.status_code == 422


def test_list_and_close_chains(client, session_id):
    chain = _seed(client, session_id, count=2)[0]

    res = client.post(f"/api/sessions/{session_id}/chains/{chain['chain_id']}/close")
    assert res.status_code == 200
    assert res.json()["state"] == "COMPLETED"

    res = client.get(f"/api/sessions/{session_id}/chains", params={"state": "ACTIVE"})
    assert len(res.json()["data"]) == 1

    res = client.post(f"/api/sessions/{session_id}/chains/{chain['chain_id']}/close")
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "CHAIN_NOT_ACTIVE"


def test_snapshots(client, session_id):
    _seed(client, session_id)
    first = client.post(f"/api/sessions/{session_id}/snapshots", json={}).json()
    second = client.post(f"/api/sessions/{session_id}/snapshots", json={"label": "end of class"}).json()
    assert first["label"] == "Snapshot #1"

    res = client.get(f"/api/sessions/{session_id}/snapshots")
    assert [s["snapshot_id"] for s in res.json()["data"]][0] == second["snapshot_id"]

    res = client.get(f"/api/sessions/{session_id}/snapshots/{first['snapshot_id']}/trace")
    assert res.status_code == 200
    assert res.json()["total_chains"] == 1

    res = client.get(f"/api/sessions/{session_id}/snapshots/compare",
                     params={"first": first["snapshot_id"], "second": second["snapshot_id"]})
    assert res.status_code == 200
    assert "differences" in res.json()

    res = client.get(f"/api/sessions/{session_id}/snapshots/missing/trace")
    assert res.status_code == 404


def test_end_session_computes_final_attendance(client, session_id):
    res = client.post(f"/api/sessions/{session_id}/final-status")
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "SESSION_NOT_ENDED"

    chain = _seed(client, session_id)[0]

    res = client.post(f"/api/sessions/{session_id}/end")
    assert res.status_code == 200
    body = res.json()
    assert body["session_ended"] is True
    assert body["broken_chain_ids"] == [chain["chain_id"]]
    statuses = {r["student_id"]: r["status"] for r in body["final_attendance"]}
    assert statuses[chain["initial_holder"]] == "PARTIAL"
    assert sorted(statuses.values()).count("ABSENT") == 2

    res = client.post(f"/api/sessions/{session_id}/end")
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "ALREADY_ENDED"

    res = client.get(f"/api/sessions/{session_id}/final-status")
    assert len(res.json()["data"]) == 3

    res = client.post(f"/api/sessions/{session_id}/enrollments", json={"student_id": "Z"})
    assert res.status_code == 409
