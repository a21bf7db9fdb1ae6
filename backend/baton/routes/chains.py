"""
Chain API routes - seeding, hand-offs, terminal transitions and traces.

Every scan from a student device lands on the hand-off endpoint. Rejected
hand-offs are already in the scan log by the time the error response is
sent.
"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from baton import config
from baton.database import get_db
from baton.models.chain import Chain
from baton.models.enums import ChainPhase, ChainState
from baton.services.chain_engine import ChainEngine
from baton.services.trace import TraceReconstructor
from baton.logging_config import get_logger, log_with_context

router = APIRouter()
logger = get_logger("http")


# ── Pydantic schemas ─────────────────────────────────────────

class SeedRequest(BaseModel):
    """Schema for seeding (or reseeding) chains."""
    phase: ChainPhase = Field(..., description="ENTRY | LATE | EXIT")
    count: int = Field(..., ge=1, le=config.MAX_CHAINS_PER_SEED, description="Number of chains")


class HandoffRequest(BaseModel):
    """Schema for a hand-off scan: the scanner reads the holder's code."""
    from_student: str = Field(..., min_length=1, description="Presenting student (current holder)")
    to_student: str = Field(..., min_length=1, description="Scanning student (next holder)")
    timestamp: Optional[datetime] = Field(None, description="Attempt time (defaults to now)")


class StallCheckRequest(BaseModel):
    phase: ChainPhase
    stall_seconds: Optional[int] = Field(None, ge=1)


def serialize_chain(chain: Chain) -> dict:
    """Serialize a Chain ORM object to a dict for API response."""
    return {
        "session_id": chain.session_id,
        "chain_id": chain.chain_id,
        "phase": chain.phase,
        "chain_index": chain.chain_index,
        "state": chain.state,
        "initial_holder": chain.initial_holder_id,
        "holder": chain.holder_id,
        "final_holder": chain.final_holder_id,
        "hop_count": chain.hop_count,
        "break_reason": chain.break_reason,
        "version": chain.version,
        "created_at": chain.created_at.isoformat() if chain.created_at else None,
        "updated_at": chain.updated_at.isoformat() if chain.updated_at else None,
    }


@router.post("/api/sessions/{session_id}/chains/seed", status_code=201)
def seed_chains(session_id: str, request: SeedRequest, db: Session = Depends(get_db)):
    """Seed chains with randomly chosen eligible students."""
    created = ChainEngine(db).seed_chains(session_id, request.phase, request.count)
    return {"session_id": session_id, "chains": [c.to_dict() for c in created]}


@router.post("/api/sessions/{session_id}/chains/reseed", status_code=201)
def reseed_chains(session_id: str, request: SeedRequest, db: Session = Depends(get_db)):
    """Seed a new round of chains for a phase (next chain index)."""
    created = ChainEngine(db).reseed_chains(session_id, request.phase, request.count)
    return {"session_id": session_id, "chains": [c.to_dict() for c in created]}


@router.get("/api/sessions/{session_id}/chains")
def list_chains(
    session_id: str,
    phase: Optional[ChainPhase] = Query(None, description="Filter by phase"),
    state: Optional[ChainState] = Query(None, description="Filter by state"),
    db: Session = Depends(get_db)
):
    """List the session's chains."""
    chains = ChainEngine(db).list_chains(session_id, phase=phase, state=state)
    return {"session_id": session_id, "data": [serialize_chain(c) for c in chains]}


@router.post("/api/sessions/{session_id}/chains/{chain_id}/handoff")
def handoff(session_id: str, chain_id: str, request: HandoffRequest, db: Session = Depends(get_db)):
    """Apply one hand-off attempt."""
    result = ChainEngine(db).apply_handoff(session_id, chain_id, request.from_student,
                                           request.to_student, request.timestamp)
    return result.to_dict()


@router.post("/api/sessions/{session_id}/chains/{chain_id}/close")
def close_chain(session_id: str, chain_id: str, db: Session = Depends(get_db)):
    """Complete an active chain; its current holder is recorded as final."""
    chain = ChainEngine(db).close_chain(session_id, chain_id)
    log_with_context(logger, "INFO", "Chain closed by teacher",
                     context={"session_id": session_id, "chain_id": chain_id})
    return serialize_chain(chain)


@router.post("/api/sessions/{session_id}/chains/{chain_id}/abandon")
def abandon_chain(session_id: str, chain_id: str, db: Session = Depends(get_db)):
    """Break an active chain."""
    chain = ChainEngine(db).abandon_chain(session_id, chain_id)
    return serialize_chain(chain)


@router.post("/api/sessions/{session_id}/chains/stalled")
def break_stalled_chains(session_id: str, request: StallCheckRequest, db: Session = Depends(get_db)):
    """Break chains of a phase that have been idle past the stall threshold."""
    stalled = ChainEngine(db).detect_stalled_chains(session_id, request.phase,
                                                    stall_seconds=request.stall_seconds)
    return {"session_id": session_id, "stalled": [serialize_chain(c) for c in stalled]}


@router.get("/api/sessions/{session_id}/chains/{chain_id}/trace")
def chain_trace(
    session_id: str,
    chain_id: str,
    as_of: Optional[datetime] = Query(None, description="Only include attempts at or before this time"),
    db: Session = Depends(get_db)
):
    """Ordered transfer trace of one chain."""
    trace = TraceReconstructor(db).reconstruct_chain_trace(session_id, chain_id, as_of=as_of)
    return trace.to_dict()
