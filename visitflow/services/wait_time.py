from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.config import settings
from ..models.appointment import Appointment, AppointmentStatus
from ..models.queue import QueueEntry, QueueStatus
from ..schemas.queue import WaitTimeEstimate

class WaitTimeEstimator:
    """Expected wait for a doctor's queue: waiting patients times mean visit length."""

    def __init__(self, db: Session, clock: Clock):
        self.db = db
        self.clock = clock

    def average_consultation_minutes(self, doctor_id: str) -> float:
        average = self.db.query(func.avg(Appointment.duration_minutes)).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.status == AppointmentStatus.COMPLETED
        ).scalar()
        if average is None:
            return float(settings.DEFAULT_CONSULTATION_MINUTES)
        return float(average)

    def estimate(self, doctor_id: str) -> WaitTimeEstimate:
        waiting = self.db.query(QueueEntry).filter(
            QueueEntry.doctor_id == doctor_id,
            QueueEntry.queue_date == self.clock.today(),
            QueueEntry.status == QueueStatus.WAITING
        ).count()
        average = self.average_consultation_minutes(doctor_id)

        return WaitTimeEstimate(
            doctor_id=doctor_id,
            waiting_count=waiting,
            average_consultation_minutes=round(average, 2),
            estimated_minutes=round(waiting * average)
        )
