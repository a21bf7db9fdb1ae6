"""
Session API routes - session lifecycle, enrollment and final attendance.

Provides endpoints for:
- Starting a session and reading it back
- Student enrollment and exit verification
- Ending a phase or the whole session
- Computing and reading final attendance statuses
"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from baton.database import get_db
from baton.models.enums import ChainPhase
from baton.models.session import ClassSession
from baton.services.attendance import AttendanceResolver, serialize_final_status
from baton.services.chain_engine import ChainEngine
from baton.services.clock import to_naive_utc
from baton.services.stores import EnrollmentDirectory, SessionDirectory
from baton.logging_config import get_logger, log_with_context

router = APIRouter()
logger = get_logger("http")


# ── Pydantic schemas ─────────────────────────────────────────

class CreateSessionRequest(BaseModel):
    """Schema for starting a session."""
    teacher_id: str = Field(..., min_length=1, description="Owning teacher identifier")
    name: Optional[str] = Field(None, description="Display name (course, room)")


class EnrollRequest(BaseModel):
    """Schema for a student joining a session."""
    student_id: str = Field(..., min_length=1, description="Student identifier")
    enrolled_at: Optional[datetime] = Field(None, description="Join time (defaults to now)")


def serialize_session(session: ClassSession, enrolled: int = None) -> dict:
    """Serialize a ClassSession ORM object to a dict for API response."""
    result = {
        "id": session.id,
        "teacher_id": session.teacher_id,
        "name": session.name,
        "state": session.state,
        "created_at": session.created_at.isoformat() if session.created_at else None,
        "ended_at": session.ended_at.isoformat() if session.ended_at else None,
    }
    if enrolled is not None:
        result["enrolled_students"] = enrolled
    return result


@router.post("/api/sessions", status_code=201)
def create_session(request: CreateSessionRequest, db: Session = Depends(get_db)):
    """Start a new ACTIVE session owned by a teacher."""
    session = SessionDirectory(db).create(request.teacher_id, request.name)
    db.commit()
    db.refresh(session)

    log_with_context(logger, "INFO", "Session started",
                     context={"session_id": session.id, "teacher_id": session.teacher_id})
    return serialize_session(session, enrolled=0)


@router.get("/api/sessions/{session_id}")
def get_session(session_id: str, db: Session = Depends(get_db)):
    """Get a session with its enrollment count."""
    session = SessionDirectory(db).get(session_id)
    enrolled = len(EnrollmentDirectory(db).list_enrolled(session_id))
    return serialize_session(session, enrolled=enrolled)


@router.post("/api/sessions/{session_id}/enrollments")
def enroll_student(session_id: str, request: EnrollRequest, db: Session = Depends(get_db)):
    """Enroll a student; joining twice returns the existing enrollment."""
    session = SessionDirectory(db).get(session_id)
    if not session.is_active:
        raise HTTPException(status_code=409, detail="Cannot join an ended session")

    enrolled_at = to_naive_utc(request.enrolled_at) if request.enrolled_at else None
    enrollment, created = EnrollmentDirectory(db).join(session_id, request.student_id, now=enrolled_at)
    db.commit()

    return {
        "session_id": session_id,
        "student_id": enrollment.student_id,
        "enrolled_at": enrollment.enrolled_at.isoformat(),
        "exit_verified": enrollment.exit_verified,
        "created": created,
    }


@router.post("/api/sessions/{session_id}/enrollments/{student_id}/exit-verified")
def verify_exit(session_id: str, student_id: str, db: Session = Depends(get_db)):
    """Set a student's exit-verified flag directly while the session is ACTIVE."""
    session = SessionDirectory(db).get(session_id)
    if not session.is_active:
        raise HTTPException(status_code=409, detail="Cannot verify exit in an ended session")
    enrollment = EnrollmentDirectory(db).mark_exit_verified(session_id, student_id)
    if enrollment is None:
        raise HTTPException(status_code=404, detail="Student is not enrolled in this session")
    db.commit()

    return {
        "session_id": session_id,
        "student_id": student_id,
        "exit_verified": True,
        "exit_verified_at": enrollment.exit_verified_at.isoformat() if enrollment.exit_verified_at else None,
    }


@router.post("/api/sessions/{session_id}/end")
def end_session(
    session_id: str,
    phase: Optional[ChainPhase] = Query(None, description="End only this phase"),
    db: Session = Depends(get_db)
):
    """
    End one phase (break its active chains) or the whole session.

    Ending the session breaks every active chain and computes final
    attendance in the same request.
    """
    result = ChainEngine(db).end_phase_or_session(session_id, phase)
    response = result.to_dict()

    if result.session_ended:
        records = AttendanceResolver(db).compute_final_status(session_id)
        response["final_attendance"] = [serialize_final_status(r) for r in records]

    log_with_context(logger, "INFO",
                     "End request handled ({})".format(phase.value if phase else "session"),
                     context={"session_id": session_id},
                     extra_data={"broken_chains": len(result.broken_chain_ids)})
    return response


@router.post("/api/sessions/{session_id}/final-status")
def compute_final_status(session_id: str, db: Session = Depends(get_db)):
    """Compute (or return the already computed) final statuses of an ended session."""
    records = AttendanceResolver(db).compute_final_status(session_id)
    return {"session_id": session_id, "data": [serialize_final_status(r) for r in records]}


@router.get("/api/sessions/{session_id}/final-status")
def get_final_status(session_id: str, db: Session = Depends(get_db)):
    """Read stored final statuses (empty until computed)."""
    records = AttendanceResolver(db).get_final_status(session_id)
    return {"session_id": session_id, "data": [serialize_final_status(r) for r in records]}
