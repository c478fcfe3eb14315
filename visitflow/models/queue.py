from sqlalchemy import Column, Integer, String, Date, DateTime, Text, UniqueConstraint, Index, Enum as SQLEnum
from sqlalchemy.sql import func
from typing import FrozenSet
import enum

from ..core.database import Base

class QueueStatus(str, enum.Enum):
    WAITING = "WAITING"
    IN_CONSULTATION = "IN_CONSULTATION"
    SKIPPED = "SKIPPED"
    COMPLETED = "COMPLETED"

class QueueEntryType(str, enum.Enum):
    APPOINTMENT = "APPOINTMENT"
    WALK_IN = "WALK_IN"

_TRANSITIONS = {
    QueueStatus.WAITING: frozenset({QueueStatus.IN_CONSULTATION, QueueStatus.SKIPPED}),
    QueueStatus.IN_CONSULTATION: frozenset({QueueStatus.COMPLETED, QueueStatus.SKIPPED}),
    # Only a recall leaves SKIPPED
    QueueStatus.SKIPPED: frozenset({QueueStatus.IN_CONSULTATION}),
    QueueStatus.COMPLETED: frozenset(),
}

def allowed_next(status: QueueStatus) -> FrozenSet[QueueStatus]:
    """Statuses a queue entry may move to from ``status``."""
    return _TRANSITIONS[QueueStatus(status)]

class QueueEntry(Base):
    __tablename__ = "queue_entries"
    __table_args__ = (
        UniqueConstraint("doctor_id", "queue_date", "queue_number", name="uq_queue_doctor_day_number"),
        Index("ix_queue_doctor_status", "doctor_id", "status"),
        Index("ix_queue_department_day", "department", "queue_date"),
    )
    
    id = Column(Integer, primary_key=True, index=True)
    queue_id = Column(String(40), unique=True, index=True, nullable=False)
    
    # At most one entry per appointment; NULL for walk-ins
    appointment_id = Column(String(40), unique=True, nullable=True)
    patient_id = Column(String(64), nullable=False, index=True)
    doctor_id = Column(String(64), nullable=False)
    department = Column(String(120), nullable=True)
    
    queue_date = Column(Date, nullable=False)
    queue_number = Column(Integer, nullable=False)
    type = Column(SQLEnum(QueueEntryType), nullable=False, default=QueueEntryType.APPOINTMENT)
    status = Column(SQLEnum(QueueStatus), nullable=False, default=QueueStatus.WAITING)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    
    # Lifecycle stamps
    queued_at = Column(DateTime, nullable=False)
    added_by = Column(String(64), nullable=True)
    called_at = Column(DateTime, nullable=True)
    called_by = Column(String(64), nullable=True)
    skipped_at = Column(DateTime, nullable=True)
    skipped_by = Column(String(64), nullable=True)
    skip_reason = Column(String(500), nullable=True)
    last_recalled_at = Column(DateTime, nullable=True)
    last_recalled_by = Column(String(64), nullable=True)
    recall_count = Column(Integer, nullable=False, default=0)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(String(64), nullable=True)
    
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    
    def __repr__(self):
        return f"<QueueEntry(queue_id='{self.queue_id}', doctor_id='{self.doctor_id}', number={self.queue_number}, status='{self.status}')>"

class QueueCounter(Base):
    """Monotonic queue number sequence per doctor and day."""
    __tablename__ = "queue_counters"
    
    doctor_id = Column(String(64), primary_key=True)
    queue_date = Column(Date, primary_key=True)
    last_number = Column(Integer, nullable=False, default=0)
    
    def __repr__(self):
        return f"<QueueCounter(doctor_id='{self.doctor_id}', date='{self.queue_date}', last={self.last_number})>"
