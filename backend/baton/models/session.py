"""
ClassSession model - one classroom attendance session owned by a teacher.

A session starts ACTIVE and moves to ENDED exactly once. Enrollments,
chains, snapshots and final statuses all hang off the session id.
"""

import uuid
from sqlalchemy import Column, Text, DateTime, String, Index
from sqlalchemy.orm import relationship

from baton.database import Base
from baton.models.enums import SessionState
from baton.services.clock import utcnow


class ClassSession(Base):
    """
    SQLAlchemy model for the sessions table.

    Lifecycle: ACTIVE -> ENDED. The transition is a guarded update
    (``WHERE state = 'ACTIVE'``) so it happens at most once.
    """
    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()),
                doc="Unique session identifier")
    teacher_id = Column(Text, nullable=False,
                        doc="Identifier of the owning teacher")
    name = Column(Text, nullable=True,
                  doc="Optional display name (course code, room)")
    state = Column(Text, nullable=False, default=SessionState.ACTIVE.value,
                   doc="Lifecycle state: ACTIVE | ENDED")
    created_at = Column(DateTime, nullable=False, default=utcnow,
                        doc="When the session was started")
    ended_at = Column(DateTime, nullable=True,
                      doc="When the session was ended (NULL while active)")

    enrollments = relationship("Enrollment", back_populates="session")
    chains = relationship("Chain", back_populates="session")
    snapshots = relationship("Snapshot", back_populates="session")

    __table_args__ = (
        Index("ix_sessions_teacher_id", "teacher_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE.value

    def __repr__(self):
        return f"<ClassSession(id={self.id}, teacher={self.teacher_id}, state='{self.state}')>"
