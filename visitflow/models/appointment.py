from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, Enum as SQLEnum
from sqlalchemy.sql import func
from datetime import timedelta
from typing import FrozenSet
import enum

from ..core.database import Base

class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    RESCHEDULED = "RESCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"

class CancelRequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"

# Statuses that hold a doctor's time
ACTIVE_STATUSES = frozenset({
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.RESCHEDULED,
    AppointmentStatus.IN_PROGRESS,
})

# Statuses from which the appointment time may still move or the patient check in
PENDING_STATUSES = frozenset({
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.RESCHEDULED,
})

_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: frozenset({
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.RESCHEDULED: frozenset({
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.IN_PROGRESS: frozenset({
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

def allowed_next(status: AppointmentStatus) -> FrozenSet[AppointmentStatus]:
    """Statuses an appointment may move to from ``status``."""
    return _TRANSITIONS[AppointmentStatus(status)]

class Appointment(Base):
    __tablename__ = "appointments"
    
    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(String(40), unique=True, index=True, nullable=False)
    
    # Directory references
    patient_id = Column(String(64), nullable=False, index=True)
    doctor_id = Column(String(64), nullable=False, index=True)
    
    # Appointment details
    appointment_date = Column(DateTime, nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False, default=30)
    status = Column(SQLEnum(AppointmentStatus), nullable=False, default=AppointmentStatus.SCHEDULED)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    
    # Visit tracking
    checked_in_at = Column(DateTime, nullable=True)
    actual_start_time = Column(DateTime, nullable=True)
    actual_end_time = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    
    # Cancellation record
    cancelled_by = Column(String(64), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    cancellation_notes = Column(Text, nullable=True)
    
    # No-show record
    no_show_by = Column(String(64), nullable=True)
    no_show_at = Column(DateTime, nullable=True)
    no_show_reason = Column(String(500), nullable=True)

    # Patient cancellation request, reviewed by staff
    cancel_request_status = Column(SQLEnum(CancelRequestStatus), nullable=True)
    cancel_request_by = Column(String(64), nullable=True)
    cancel_request_at = Column(DateTime, nullable=True)
    cancel_request_reason = Column(String(500), nullable=True)
    cancel_request_reviewed_by = Column(String(64), nullable=True)
    cancel_request_reviewed_at = Column(DateTime, nullable=True)
    cancel_request_review_notes = Column(Text, nullable=True)

    # Tracking
    created_by = Column(String(64), nullable=True)
    last_modified_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    
    @property
    def end_time(self):
        return self.appointment_date + timedelta(minutes=self.duration_minutes)
    
    @property
    def cancellation(self):
        if self.status != AppointmentStatus.CANCELLED:
            return None
        return {
            "by": self.cancelled_by,
            "at": self.cancelled_at,
            "reason": self.cancellation_reason,
            "notes": self.cancellation_notes,
        }

    @property
    def cancel_request(self):
        if self.cancel_request_status is None:
            return None
        return {
            "status": self.cancel_request_status,
            "by": self.cancel_request_by,
            "at": self.cancel_request_at,
            "reason": self.cancel_request_reason,
            "reviewed_by": self.cancel_request_reviewed_by,
            "reviewed_at": self.cancel_request_reviewed_at,
            "review_notes": self.cancel_request_review_notes,
        }

    def __repr__(self):
        return f"<Appointment(appointment_id='{self.appointment_id}', doctor_id='{self.doctor_id}', date='{self.appointment_date}', status='{self.status}')>"

class DoctorCalendar(Base):
    """Per-doctor booking lock.

    Every booking or reschedule bumps ``version`` before checking for
    overlaps, which serializes calendar writes for one doctor.
    """
    __tablename__ = "doctor_calendars"
    
    doctor_id = Column(String(64), primary_key=True)
    version = Column(Integer, nullable=False, default=0)
    
    def __repr__(self):
        return f"<DoctorCalendar(doctor_id='{self.doctor_id}', version={self.version})>"
