"""
Enrollment model - a student's membership in one session.

Created when the student joins; the exit-verified flag is set by exit
verification (completed EXIT chain or a direct verification by the
teacher). Enrollments are never deleted while the session is active.
"""

from sqlalchemy import Column, Text, DateTime, Boolean, String, ForeignKey
from sqlalchemy.orm import relationship

from baton.database import Base
from baton.services.clock import utcnow


class Enrollment(Base):
    """SQLAlchemy model for the enrollments table, keyed by (session_id, student_id)."""
    __tablename__ = "enrollments"

    session_id = Column(String(36), ForeignKey("sessions.id"), primary_key=True,
                        doc="Session the student joined")
    student_id = Column(Text, primary_key=True,
                        doc="Student identifier")
    enrolled_at = Column(DateTime, nullable=False, default=utcnow,
                         doc="When the student joined the session")
    exit_verified = Column(Boolean, nullable=False, default=False,
                           doc="Whether the student's departure was verified")
    exit_verified_at = Column(DateTime, nullable=True,
                              doc="When exit verification happened")

    session = relationship("ClassSession", back_populates="enrollments")

    def __repr__(self):
        return f"<Enrollment(session={self.session_id}, student={self.student_id}, exit_verified={self.exit_verified})>"
