"""
Snapshot API routes - named markers and the traces bounded by them.
"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from baton.database import get_db
from baton.models.snapshot import Snapshot
from baton.services.clock import to_naive_utc
from baton.services.stores import SessionDirectory, SnapshotDirectory
from baton.services.trace import TraceReconstructor
from baton.logging_config import get_logger, log_with_context

router = APIRouter()
logger = get_logger("http")


class SnapshotRequest(BaseModel):
    label: Optional[str] = Field(None, description="Human-readable name")
    taken_at: Optional[datetime] = Field(None, description="Marker time (defaults to now)")


def serialize_snapshot(snapshot: Snapshot) -> dict:
    return {
        "session_id": snapshot.session_id,
        "snapshot_id": snapshot.snapshot_id,
        "snapshot_index": snapshot.snapshot_index,
        "label": snapshot.label,
        "taken_at": snapshot.taken_at.isoformat(),
    }


@router.post("/api/sessions/{session_id}/snapshots", status_code=201)
def take_snapshot(session_id: str, request: SnapshotRequest, db: Session = Depends(get_db)):
    """Record a snapshot marker for the session."""
    SessionDirectory(db).get(session_id)
    taken_at = to_naive_utc(request.taken_at) if request.taken_at else None
    snapshot = SnapshotDirectory(db).create(session_id, label=request.label, taken_at=taken_at)
    db.commit()
    db.refresh(snapshot)

    log_with_context(logger, "INFO", "Snapshot taken",
                     context={"session_id": session_id, "snapshot_id": snapshot.snapshot_id})
    return serialize_snapshot(snapshot)


@router.get("/api/sessions/{session_id}/snapshots")
def list_snapshots(session_id: str, db: Session = Depends(get_db)):
    """List the session's snapshots, newest first."""
    SessionDirectory(db).get(session_id)
    snapshots = SnapshotDirectory(db).list_by_session(session_id)
    return {"session_id": session_id, "data": [serialize_snapshot(s) for s in snapshots]}


@router.get("/api/sessions/{session_id}/snapshots/compare")
def compare_snapshots(
    session_id: str,
    first: str = Query(..., description="Earlier snapshot id"),
    second: str = Query(..., description="Later snapshot id"),
    db: Session = Depends(get_db)
):
    """Compare which students appeared by each of two snapshots."""
    if first == second:
        raise HTTPException(status_code=400, detail="Choose two different snapshots")
    return TraceReconstructor(db).compare_snapshots(session_id, first, second)


@router.get("/api/sessions/{session_id}/snapshots/{snapshot_id}/trace")
def snapshot_trace(session_id: str, snapshot_id: str, db: Session = Depends(get_db)):
    """Every chain of the session traced as of the snapshot."""
    return TraceReconstructor(db).reconstruct_snapshot_trace(session_id, snapshot_id).to_dict()
