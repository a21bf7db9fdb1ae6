"""
FinalStatusRecord model - resolved attendance verdict per student.

Written exactly once per (session, student) when the session's final status
is computed; later reads return the stored rows. The derivation flags are
kept alongside the verdict so the decision can be audited.
"""

from sqlalchemy import Column, Text, DateTime, Boolean, String, ForeignKey

from baton.database import Base
from baton.services.clock import utcnow


class FinalStatusRecord(Base):
    """SQLAlchemy model for the final_statuses table."""
    __tablename__ = "final_statuses"

    session_id = Column(String(36), ForeignKey("sessions.id"), primary_key=True,
                        doc="Session the verdict belongs to")
    student_id = Column(Text, primary_key=True,
                        doc="Student identifier")
    status = Column(Text, nullable=False,
                    doc="PRESENT | LATE | PARTIAL | ABSENT")
    entry_participation = Column(Boolean, nullable=False, default=False,
                                 doc="Held any ENTRY chain")
    exit_verified = Column(Boolean, nullable=False, default=False,
                           doc="Held a COMPLETED EXIT chain or enrollment flag set")
    late_participation = Column(Boolean, nullable=False, default=False,
                                doc="Held any LATE chain")
    computed_at = Column(DateTime, nullable=False, default=utcnow,
                         doc="When the verdict was computed")

    def __repr__(self):
        return f"<FinalStatusRecord(session={self.session_id}, student={self.student_id}, status='{self.status}')>"
