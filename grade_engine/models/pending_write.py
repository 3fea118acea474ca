"""
SQLAlchemy model for grade writes queued while the remote store is unreachable.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, Index, Enum as SQLEnum
from sqlalchemy.sql import func
import enum

from grade_engine.core.database import Base


class WriteState(str, enum.Enum):
    """Lifecycle of one logical grade write."""
    PENDING = "pending"        # queued locally
    IN_FLIGHT = "in_flight"    # remote attempt running
    COMMITTED = "committed"    # acknowledged; the row is deleted
    FAILED = "failed"          # retryable, waits for the next connectivity event
    EXHAUSTED = "exhausted"    # retry budget spent, kept for manual reconciliation


class PendingWrite(Base):
    __tablename__ = "pending_grade_writes"

    # Monotonic local sequence number; drain order
    sequence = Column(Integer, primary_key=True, autoincrement=True)

    # Identity tuple
    student_id = Column(String(100), nullable=False)
    subject_id = Column(String(100), nullable=False)
    grade_period = Column(String(20), nullable=False)
    identity_key = Column(String(255), nullable=False, index=True)

    # GradeEntry payload as a plain record
    payload = Column(JSON, nullable=False)
    date_recorded = Column(DateTime(timezone=True), nullable=False)

    # Delivery state
    state = Column(SQLEnum(WriteState), nullable=False, default=WriteState.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    synced = Column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index('ix_pending_grade_writes_state_sequence', 'state', 'sequence'),
    )

    def __repr__(self) -> str:
        return f"<PendingWrite #{self.sequence} {self.identity_key} {self.state}>"
