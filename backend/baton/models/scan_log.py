"""
ScanLogEntry model - the append-only record of hand-off attempts.

Every hand-off attempt against an existing chain produces exactly one row,
SUCCESS or FAILED. Rows are never updated or deleted. ``seq`` is the
insertion sequence and defines the order of a chain's history;
``attempted_at`` is the caller's clock and only bounds snapshot reads.
"""

from sqlalchemy import (
    Column, Text, DateTime, Integer, String, ForeignKeyConstraint, Index
)

from baton.database import Base
from baton.services.clock import utcnow


class ScanLogEntry(Base):
    """SQLAlchemy model for the scan_log table."""
    __tablename__ = "scan_log"

    seq = Column(Integer, primary_key=True, autoincrement=True,
                 doc="Store-assigned insertion sequence")
    session_id = Column(String(36), nullable=False,
                        doc="Session of the chain")
    chain_id = Column(String(36), nullable=False,
                      doc="Chain the attempt targeted")
    from_student_id = Column(Text, nullable=False,
                             doc="Presenting student (claimed holder)")
    to_student_id = Column(Text, nullable=False,
                           doc="Scanning student (would-be next holder)")
    attempted_at = Column(DateTime, nullable=False,
                          doc="Attempt timestamp supplied by the caller")
    recorded_at = Column(DateTime, nullable=False, default=utcnow,
                         doc="When the store wrote the entry")
    outcome = Column(Text, nullable=False,
                     doc="SUCCESS | FAILED")
    reason = Column(Text, nullable=True,
                    doc="Failure reason code for FAILED entries")

    __table_args__ = (
        ForeignKeyConstraint(["session_id", "chain_id"],
                             ["chains.session_id", "chains.chain_id"]),
        Index("ix_scan_log_chain", "session_id", "chain_id", "seq"),
    )

    def __repr__(self):
        return (f"<ScanLogEntry(seq={self.seq}, chain={self.chain_id}, "
                f"{self.from_student_id}->{self.to_student_id}, outcome='{self.outcome}')>")
