from sqlalchemy.orm import Session
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from ..core.config import settings
from ..core.exceptions import ValidationError
from ..models.appointment import Appointment, ACTIVE_STATUSES
from ..schemas.appointment import Slot

def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval overlap: ``[a0, a1)`` and ``[b0, b1)``."""
    return start_a < end_b and start_b < end_a

class SlotCalendar:
    """Read-only view of a doctor's booked time.

    Only appointments in an active status hold time; completed, cancelled
    and no-show appointments free their window.
    """

    def __init__(self, db: Session):
        self.db = db

    def active_appointments(
        self,
        doctor_id: str,
        window_start: datetime,
        window_end: datetime,
        exclude_appointment_id: Optional[str] = None
    ) -> List[Appointment]:
        """Active appointments for the doctor that overlap the window."""
        # No appointment is longer than the configured maximum, so anything
        # starting earlier than this cannot reach into the window.
        earliest_start = window_start - timedelta(minutes=settings.MAX_APPOINTMENT_MINUTES)

        query = self.db.query(Appointment).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.status.in_(list(ACTIVE_STATUSES)),
            Appointment.appointment_date < window_end,
            Appointment.appointment_date > earliest_start
        )
        if exclude_appointment_id:
            query = query.filter(Appointment.appointment_id != exclude_appointment_id)

        return [
            appointment
            for appointment in query.order_by(Appointment.appointment_date).all()
            if overlaps(appointment.appointment_date, appointment.end_time, window_start, window_end)
        ]

    def has_conflict(
        self,
        doctor_id: str,
        start: datetime,
        duration_minutes: int,
        exclude_appointment_id: Optional[str] = None
    ) -> bool:
        end = start + timedelta(minutes=duration_minutes)
        return bool(self.active_appointments(doctor_id, start, end, exclude_appointment_id))

    def generate_slots(
        self,
        doctor_id: str,
        day: date,
        slot_minutes: int = settings.SLOT_MINUTES,
        work_start_hour: int = settings.WORK_START_HOUR,
        work_end_hour: int = settings.WORK_END_HOUR
    ) -> List[Slot]:
        """Fixed-width slots across the working day, each marked available or not."""
        if slot_minutes <= 0:
            raise ValidationError("Slot length must be positive", slot_minutes=slot_minutes)
        if not 0 <= work_start_hour < work_end_hour <= 24:
            raise ValidationError(
                "Working hours are invalid",
                work_start_hour=work_start_hour,
                work_end_hour=work_end_hour
            )

        day_start = datetime.combine(day, time.min) + timedelta(hours=work_start_hour)
        day_end = datetime.combine(day, time.min) + timedelta(hours=work_end_hour)
        step = timedelta(minutes=slot_minutes)

        busy = [
            (appointment.appointment_date, appointment.end_time)
            for appointment in self.active_appointments(doctor_id, day_start, day_end)
        ]

        slots = []
        slot_start = day_start
        while slot_start < day_end:
            slot_end = slot_start + step
            available = not any(
                overlaps(busy_start, busy_end, slot_start, slot_end)
                for busy_start, busy_end in busy
            )
            slots.append(Slot(start=slot_start, end=slot_end, available=available))
            slot_start = slot_end

        return slots
