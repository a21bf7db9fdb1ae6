"""
Chain model - one token-passing lineage within a session and phase.

The row is a cached projection of the scan log: ``holder_id`` equals the
``to_student_id`` of the last SUCCESS entry (or the initial holder before
any transfer). Prior holders are never stored on the row; they are derived
from the log. ``version`` is the optimistic-concurrency token: every update
goes through ``WHERE version = :expected`` and increments it.

A student holds at most one ACTIVE chain per session and phase; the partial
unique index ``ux_chains_active_holder`` enforces it in the database.
"""

import uuid
from sqlalchemy import Column, Text, DateTime, Integer, String, ForeignKey, Index, text
from sqlalchemy.orm import relationship

from baton.database import Base
from baton.models.enums import ChainState
from baton.services.clock import utcnow


def generate_chain_id() -> str:
    return str(uuid.uuid4())


class Chain(Base):
    """
    SQLAlchemy model for the chains table.

    Lifecycle: ACTIVE -> COMPLETED (terminal condition reached or closed by
    the teacher) or ACTIVE -> BROKEN (abandoned, stalled, phase or session
    ended). Terminal chains have no current holder.
    """
    __tablename__ = "chains"

    session_id = Column(String(36), ForeignKey("sessions.id"), primary_key=True,
                        doc="Owning session")
    chain_id = Column(String(36), primary_key=True, default=generate_chain_id,
                      doc="Chain identifier, unique within the session")
    phase = Column(Text, nullable=False,
                   doc="ENTRY | LATE | EXIT")
    chain_index = Column(Integer, nullable=False, default=0,
                         doc="Seeding round for the phase (0 for the first seed, +1 per reseed)")
    state = Column(Text, nullable=False, default=ChainState.ACTIVE.value,
                   doc="ACTIVE | COMPLETED | BROKEN")
    initial_holder_id = Column(Text, nullable=False,
                               doc="Student the chain was seeded with")
    holder_id = Column(Text, nullable=True,
                       doc="Current holder (NULL once COMPLETED or BROKEN)")
    final_holder_id = Column(Text, nullable=True,
                             doc="Holder at the moment the chain became terminal")
    hop_count = Column(Integer, nullable=False, default=0,
                       doc="Number of successful hand-offs")
    break_reason = Column(Text, nullable=True,
                          doc="SESSION_ENDED | PHASE_ENDED | ABANDONED | STALLED when BROKEN")
    version = Column(Integer, nullable=False, default=1,
                     doc="Optimistic-concurrency token, incremented on every update")
    created_at = Column(DateTime, nullable=False, default=utcnow,
                        doc="When the chain was seeded")
    updated_at = Column(DateTime, nullable=False, default=utcnow,
                        doc="Last state change (seed, hand-off or terminal transition)")

    session = relationship("ClassSession", back_populates="chains")

    __table_args__ = (
        Index("ix_chains_session_phase_state", "session_id", "phase", "state"),
        Index("ux_chains_active_holder", "session_id", "phase", "holder_id", unique=True,
              sqlite_where=text("state = 'ACTIVE'"),
              postgresql_where=text("state = 'ACTIVE'")),
    )

    @property
    def is_active(self) -> bool:
        return self.state == ChainState.ACTIVE.value

    def __repr__(self):
        return (f"<Chain(id={self.chain_id}, phase='{self.phase}', state='{self.state}', "
                f"holder={self.holder_id}, version={self.version})>")
