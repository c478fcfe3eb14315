from .appointment import Appointment, AppointmentStatus, CancelRequestStatus, DoctorCalendar
from .queue import QueueCounter, QueueEntry, QueueEntryType, QueueStatus

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "CancelRequestStatus",
    "DoctorCalendar",
    "QueueCounter",
    "QueueEntry",
    "QueueEntryType",
    "QueueStatus",
]
