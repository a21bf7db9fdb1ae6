"""
Snapshot model - a named point-in-time marker within a session.

A snapshot freezes nothing; it only bounds how much scan-log history a
trace includes when reconstructed "as of" the marker.
"""

import uuid
from sqlalchemy import Column, Text, DateTime, Integer, String, ForeignKey
from sqlalchemy.orm import relationship

from baton.database import Base


class Snapshot(Base):
    """SQLAlchemy model for the snapshots table, keyed by (session_id, snapshot_id)."""
    __tablename__ = "snapshots"

    session_id = Column(String(36), ForeignKey("sessions.id"), primary_key=True,
                        doc="Owning session")
    snapshot_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()),
                         doc="Snapshot identifier")
    snapshot_index = Column(Integer, nullable=False, default=1,
                            doc="1-based position among the session's snapshots")
    label = Column(Text, nullable=True,
                   doc="Human-readable name")
    taken_at = Column(DateTime, nullable=False,
                      doc="Marker timestamp; traces include entries at or before it")

    session = relationship("ClassSession", back_populates="snapshots")

    def __repr__(self):
        return f"<Snapshot(id={self.snapshot_id}, index={self.snapshot_index}, taken_at={self.taken_at})>"
