from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple
import logging

from ..core.clock import Clock
from ..core.config import settings
from ..core.database import atomic, upsert_increment
from ..core.exceptions import (
    AppointmentConflictError, AppointmentNotFoundError, CancelRequestNotFoundError,
    DoctorNotFoundError, DuplicateRequestError, InvalidDoctorError,
    InvalidStateTransitionError, PatientNotFoundError, ValidationError
)
from ..core.identifiers import generate_appointment_id
from ..core.security import Actor
from ..models.appointment import (
    ACTIVE_STATUSES, Appointment, AppointmentStatus, CancelRequestStatus, DoctorCalendar,
    PENDING_STATUSES, allowed_next
)
from ..models.queue import QueueEntry
from ..schemas.appointment import (
    AppointmentCreate, AppointmentFilters, AppointmentStats, ReminderDispatchResult, Slot
)
from .directory import DoctorInfo
from .events import DomainEvent, EventBus, stage_event
from .notifications import WebhookNotifier
from .slot_calendar import SlotCalendar

logger = logging.getLogger(__name__)

_TRANSITION_EVENTS = {
    AppointmentStatus.CONFIRMED: "AppointmentConfirmed",
    AppointmentStatus.IN_PROGRESS: "AppointmentStarted",
    AppointmentStatus.COMPLETED: "AppointmentCompleted",
    AppointmentStatus.CANCELLED: "AppointmentCancelled",
    AppointmentStatus.NO_SHOW: "AppointmentNoShow",
}

class AppointmentService:
    """Appointment lifecycle: booking, status changes, reschedule and check-in.

    Every write to the appointment table goes through this class. Booking
    and rescheduling take the doctor's calendar lock before checking for
    overlaps, so two requests for the same doctor cannot both pass the
    check and commit overlapping windows.
    """

    def __init__(
        self,
        db: Session,
        directory,
        events: EventBus,
        clock: Clock,
        notifier: Optional[WebhookNotifier] = None
    ):
        self.db = db
        self.directory = directory
        self.events = events
        self.clock = clock
        self.notifier = notifier
        self.calendar = SlotCalendar(db)

    # Queries

    def get_appointment(self, appointment_id: str) -> Appointment:
        appointment = self.db.query(Appointment).filter(
            Appointment.appointment_id == appointment_id
        ).first()

        if not appointment:
            raise AppointmentNotFoundError(appointment_id=appointment_id)

        return appointment

    def list_appointments(self, filters: AppointmentFilters) -> Tuple[List[Appointment], int]:
        query = self.db.query(Appointment)
        if filters.doctor_id:
            query = query.filter(Appointment.doctor_id == filters.doctor_id)
        if filters.patient_id:
            query = query.filter(Appointment.patient_id == filters.patient_id)
        if filters.status:
            query = query.filter(Appointment.status == filters.status)
        if filters.start_date:
            query = query.filter(Appointment.appointment_date >= self.clock.localize(filters.start_date))
        if filters.end_date:
            query = query.filter(Appointment.appointment_date <= self.clock.localize(filters.end_date))

        total = query.count()
        items = query.order_by(Appointment.appointment_date.desc()).offset(filters.skip).limit(filters.limit).all()
        return items, total

    def get_appointment_stats(self) -> AppointmentStats:
        """Overall count, count for today, and count per status."""
        day_start = datetime.combine(self.clock.today(), time.min)

        total = self.db.query(func.count(Appointment.id)).scalar()
        today = self.db.query(func.count(Appointment.id)).filter(
            Appointment.appointment_date >= day_start,
            Appointment.appointment_date < day_start + timedelta(days=1)
        ).scalar()
        by_status = {
            status.value: count
            for status, count in self.db.query(
                Appointment.status, func.count(Appointment.id)
            ).group_by(Appointment.status).all()
        }
        return AppointmentStats(total=total, today=today, by_status=by_status)

    def available_slots(self, doctor_id: str, day: date) -> List[Slot]:
        """Working-day slots for an active doctor."""
        self.require_active_doctor(doctor_id)
        return self.calendar.generate_slots(doctor_id, day)

    # Booking

    def book_appointment(self, data: AppointmentCreate, actor: Actor) -> Appointment:
        """Book a new appointment in status SCHEDULED."""
        duration = data.duration_minutes
        if duration is None:
            duration = settings.DEFAULT_APPOINTMENT_MINUTES
        self._validate_duration(duration)
        start = self.clock.localize(data.appointment_date)

        self.require_active_doctor(data.doctor_id)
        if self.directory.get_patient(data.patient_id) is None:
            raise PatientNotFoundError(patient_id=data.patient_id)

        with atomic(self.db):
            self._lock_calendar(data.doctor_id)
            if self.calendar.has_conflict(data.doctor_id, start, duration):
                raise AppointmentConflictError(
                    doctor_id=data.doctor_id,
                    appointment_date=start.isoformat(),
                    duration_minutes=duration
                )

            appointment = Appointment(
                appointment_id=generate_appointment_id(self.clock.now()),
                patient_id=data.patient_id,
                doctor_id=data.doctor_id,
                appointment_date=start,
                duration_minutes=duration,
                status=AppointmentStatus.SCHEDULED,
                reason=data.reason,
                notes=data.notes,
                reminder_sent=False,
                created_by=actor.id,
                last_modified_by=actor.id
            )
            self.db.add(appointment)
            self.db.flush()

            self._emit("AppointmentBooked", actor.id, appointment.appointment_id, {
                "patient_id": appointment.patient_id,
                "doctor_id": appointment.doctor_id,
                "appointment_date": start.isoformat(),
                "duration_minutes": duration,
            })

        self.db.refresh(appointment)
        logger.info(
            f"Booked {appointment.appointment_id} for doctor {appointment.doctor_id} "
            f"at {appointment.appointment_date}"
        )
        return appointment

    # Status changes

    def transition(
        self,
        appointment_id: str,
        target: AppointmentStatus,
        actor: Actor,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Appointment:
        """Move an appointment to ``target`` if the transition table allows it."""
        try:
            target = AppointmentStatus(target)
        except ValueError:
            raise ValidationError(f"Unknown appointment status {target}") from None

        if target == AppointmentStatus.RESCHEDULED:
            raise InvalidStateTransitionError("Use reschedule to change the appointment time")

        with atomic(self.db):
            appointment = self.get_appointment(appointment_id)
            self._apply_transition(appointment, target, actor.id, metadata or {})

        self.db.refresh(appointment)
        logger.info(f"Appointment {appointment_id} is now {target.value}")
        return appointment

    def confirm_appointment(self, appointment_id: str, actor: Actor) -> Appointment:
        return self.transition(appointment_id, AppointmentStatus.CONFIRMED, actor)

    def start_appointment(self, appointment_id: str, actor: Actor) -> Appointment:
        return self.transition(appointment_id, AppointmentStatus.IN_PROGRESS, actor)

    def complete_appointment(self, appointment_id: str, actor: Actor, notes: Optional[str] = None) -> Appointment:
        return self.transition(appointment_id, AppointmentStatus.COMPLETED, actor, {"notes": notes})

    def cancel_appointment(
        self,
        appointment_id: str,
        actor: Actor,
        reason: str,
        notes: Optional[str] = None
    ) -> Appointment:
        return self.transition(
            appointment_id, AppointmentStatus.CANCELLED, actor, {"reason": reason, "notes": notes}
        )

    def mark_no_show(self, appointment_id: str, actor: Actor, reason: Optional[str] = None) -> Appointment:
        return self.transition(appointment_id, AppointmentStatus.NO_SHOW, actor, {"reason": reason})

    def reschedule_appointment(
        self,
        appointment_id: str,
        new_start: datetime,
        actor: Actor,
        reason: Optional[str] = None
    ) -> Appointment:
        """Move a pending appointment to a new start time.

        On conflict nothing changes: the date and status stay as they were.
        """
        new_start = self.clock.localize(new_start)

        with atomic(self.db):
            appointment = self.get_appointment(appointment_id)
            current = appointment.status
            if current not in PENDING_STATUSES:
                raise InvalidStateTransitionError(
                    f"Cannot reschedule an appointment in status {current.value}",
                    appointment_id=appointment_id,
                    current=current.value
                )
            if appointment.checked_in_at is not None:
                raise InvalidStateTransitionError(
                    "Cannot reschedule an appointment after the patient has checked in",
                    appointment_id=appointment_id,
                    current=current.value
                )

            self._lock_calendar(appointment.doctor_id)
            if self.calendar.has_conflict(
                appointment.doctor_id,
                new_start,
                appointment.duration_minutes,
                exclude_appointment_id=appointment.appointment_id
            ):
                raise AppointmentConflictError(
                    doctor_id=appointment.doctor_id,
                    appointment_date=new_start.isoformat(),
                    duration_minutes=appointment.duration_minutes
                )

            previous_start = appointment.appointment_date
            self._conditional_update(appointment, current, {
                "appointment_date": new_start,
                "status": AppointmentStatus.RESCHEDULED,
                "reminder_sent": False,
                "last_modified_by": actor.id,
            })
            self._emit("AppointmentRescheduled", actor.id, appointment_id, {
                "from": current.value,
                "to": AppointmentStatus.RESCHEDULED.value,
                "previous_date": previous_start.isoformat(),
                "appointment_date": new_start.isoformat(),
                "reason": reason,
            })

        self.db.refresh(appointment)
        logger.info(f"Rescheduled {appointment_id} from {previous_start} to {new_start}")
        return appointment

    # Cancellation requests

    def request_cancellation(self, appointment_id: str, actor: Actor, reason: str) -> Appointment:
        """Ask staff to cancel an appointment. Only one request may be pending."""
        with atomic(self.db):
            appointment = self.get_appointment(appointment_id)
            current = appointment.status
            if current not in ACTIVE_STATUSES:
                raise InvalidStateTransitionError(
                    f"Cannot request cancellation of an appointment in status {current.value}",
                    appointment_id=appointment_id,
                    current=current.value
                )
            if appointment.cancel_request_status == CancelRequestStatus.PENDING:
                raise DuplicateRequestError(
                    "A cancellation request is already pending",
                    appointment_id=appointment_id
                )

            updated = self.db.query(Appointment).filter(
                Appointment.id == appointment.id,
                Appointment.status == current,
                or_(
                    Appointment.cancel_request_status.is_(None),
                    Appointment.cancel_request_status != CancelRequestStatus.PENDING
                )
            ).update({
                "cancel_request_status": CancelRequestStatus.PENDING,
                "cancel_request_by": actor.id,
                "cancel_request_at": self.clock.now(),
                "cancel_request_reason": reason,
                "cancel_request_reviewed_by": None,
                "cancel_request_reviewed_at": None,
                "cancel_request_review_notes": None,
                "last_modified_by": actor.id,
            }, synchronize_session=False)
            if not updated:
                raise DuplicateRequestError(
                    "Appointment changed while requesting cancellation",
                    appointment_id=appointment_id
                )
            self.db.expire(appointment)

            self._emit("CancellationRequested", actor.id, appointment_id, {"reason": reason})

        self.db.refresh(appointment)
        logger.info(f"Cancellation requested for {appointment_id} by {actor.id}")
        return appointment

    def review_cancellation(
        self,
        appointment_id: str,
        actor: Actor,
        approved: bool,
        notes: Optional[str] = None
    ) -> Appointment:
        """Approve (cancelling the appointment) or decline a pending request."""
        decision = CancelRequestStatus.APPROVED if approved else CancelRequestStatus.DECLINED

        with atomic(self.db):
            appointment = self.get_appointment(appointment_id)
            if appointment.cancel_request_status != CancelRequestStatus.PENDING:
                raise CancelRequestNotFoundError(appointment_id=appointment_id)
            reason = appointment.cancel_request_reason

            updated = self.db.query(Appointment).filter(
                Appointment.id == appointment.id,
                Appointment.cancel_request_status == CancelRequestStatus.PENDING
            ).update({
                "cancel_request_status": decision,
                "cancel_request_reviewed_by": actor.id,
                "cancel_request_reviewed_at": self.clock.now(),
                "cancel_request_review_notes": notes,
            }, synchronize_session=False)
            if not updated:
                raise CancelRequestNotFoundError(appointment_id=appointment_id)
            self.db.expire(appointment)

            if approved:
                self._apply_transition(appointment, AppointmentStatus.CANCELLED, actor.id, {
                    "reason": reason,
                    "notes": notes,
                    "via": "cancel_request",
                })
            name = "CancellationRequestApproved" if approved else "CancellationRequestDeclined"
            self._emit(name, actor.id, appointment_id, {"notes": notes})

        self.db.refresh(appointment)
        logger.info(f"Cancellation request for {appointment_id} {decision.value.lower()} by {actor.id}")
        return appointment

    # Check-in

    def check_in(self, appointment_id: str, actor: Actor) -> Tuple[Appointment, QueueEntry]:
        """Check the patient in and place them in the doctor's queue."""
        from .queue_service import QueueService

        queue = QueueService(self.db, self.directory, self.events, self.clock, lifecycle=self)
        entry = queue.add_to_queue(appointment_id, actor)
        return self.get_appointment(appointment_id), entry

    def record_check_in(self, appointment: Appointment, actor_id: str) -> None:
        """Stamp arrival and confirm the appointment. Does not commit."""
        current = appointment.status
        if current not in PENDING_STATUSES:
            raise InvalidStateTransitionError(
                f"Cannot check in an appointment in status {current.value}",
                appointment_id=appointment.appointment_id,
                current=current.value
            )
        if appointment.appointment_date.date() != self.clock.today():
            raise ValidationError(
                "Appointment is not scheduled for today",
                appointment_id=appointment.appointment_id,
                appointment_date=appointment.appointment_date.isoformat()
            )

        self._conditional_update(appointment, current, {
            "checked_in_at": self.clock.now(),
            "last_modified_by": actor_id,
        })
        if current != AppointmentStatus.CONFIRMED:
            self._apply_transition(appointment, AppointmentStatus.CONFIRMED, actor_id, {"via": "check_in"})
        self._emit("AppointmentCheckedIn", actor_id, appointment.appointment_id, {
            "doctor_id": appointment.doctor_id,
            "patient_id": appointment.patient_id,
        })

    def mirror_queue_status(
        self,
        appointment_id: str,
        target: AppointmentStatus,
        actor_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Follow a queue entry's progress on its appointment. Does not commit.

        A mirror that the transition table forbids is skipped with a warning;
        it never fails the queue action that triggered it.
        """
        appointment = self.db.query(Appointment).filter(
            Appointment.appointment_id == appointment_id
        ).first()
        if appointment is None:
            logger.warning(f"Queue references missing appointment {appointment_id}")
            return
        if appointment.status == target:
            return
        if target not in allowed_next(appointment.status):
            logger.warning(
                f"Not mirroring {appointment_id} from {appointment.status.value} to {target.value}"
            )
            return

        try:
            self._apply_transition(appointment, target, actor_id, dict(metadata or {}, via="queue"))
        except InvalidStateTransitionError:
            logger.warning(f"Appointment {appointment_id} changed while mirroring {target.value}")

    # Reminders

    def send_reminder(self, appointment_id: str, actor: Optional[Actor] = None) -> Appointment:
        """Deliver a reminder; ``reminder_sent`` is only set when delivery succeeds."""
        appointment = self.get_appointment(appointment_id)
        if appointment.status not in PENDING_STATUSES:
            raise InvalidStateTransitionError(
                f"Cannot remind for an appointment in status {appointment.status.value}",
                appointment_id=appointment_id
            )
        if self.notifier is None:
            logger.warning(f"No notifier configured, reminder for {appointment_id} not sent")
            return appointment

        try:
            self.notifier.send_reminder({
                "appointment_id": appointment.appointment_id,
                "patient_id": appointment.patient_id,
                "doctor_id": appointment.doctor_id,
                "appointment_date": appointment.appointment_date.isoformat(),
            })
        except Exception:
            logger.exception(f"Reminder delivery failed for {appointment_id}")
            return appointment

        with atomic(self.db):
            self.db.query(Appointment).filter(Appointment.id == appointment.id).update(
                {"reminder_sent": True}, synchronize_session=False
            )
            self._emit("ReminderSent", actor.id if actor else None, appointment_id, {
                "patient_id": appointment.patient_id,
            })

        self.db.refresh(appointment)
        return appointment

    def send_due_reminders(self, actor: Optional[Actor] = None) -> ReminderDispatchResult:
        """Remind every pending appointment on the reminder day that has not been reminded."""
        target_day = self.clock.today() + timedelta(days=settings.REMINDER_LEAD_DAYS)
        day_start = datetime.combine(target_day, time.min)

        due = self.db.query(Appointment).filter(
            Appointment.appointment_date >= day_start,
            Appointment.appointment_date < day_start + timedelta(days=1),
            Appointment.status.in_(list(PENDING_STATUSES)),
            Appointment.reminder_sent == False
        ).order_by(Appointment.appointment_date).all()
        due_ids = [appointment.appointment_id for appointment in due]

        failed = []
        for appointment_id in due_ids:
            if not self.send_reminder(appointment_id, actor).reminder_sent:
                failed.append(appointment_id)

        logger.info(f"Sent {len(due_ids) - len(failed)} of {len(due_ids)} reminders for {target_day}")
        return ReminderDispatchResult(
            total=len(due_ids),
            successful=len(due_ids) - len(failed),
            failed=failed
        )

    # Directory checks

    def require_active_doctor(self, doctor_id: str, not_found=DoctorNotFoundError) -> DoctorInfo:
        doctor = self.directory.get_doctor(doctor_id)
        if doctor is None:
            raise not_found(doctor_id=doctor_id)
        if not doctor.is_active_doctor:
            raise InvalidDoctorError(doctor_id=doctor_id)
        return doctor

    # Internals

    def _apply_transition(
        self,
        appointment: Appointment,
        target: AppointmentStatus,
        actor_id: str,
        metadata: Dict[str, Any]
    ) -> None:
        current = appointment.status
        if target not in allowed_next(current):
            raise InvalidStateTransitionError(
                f"Cannot change appointment from {current.value} to {target.value}",
                appointment_id=appointment.appointment_id,
                current=current.value,
                target=target.value
            )
        if target == AppointmentStatus.NO_SHOW and appointment.checked_in_at is not None:
            raise InvalidStateTransitionError(
                "A checked-in patient cannot be marked as no-show",
                appointment_id=appointment.appointment_id,
                current=current.value,
                target=target.value
            )

        now = self.clock.now()
        values = {"status": target, "last_modified_by": actor_id}
        if target == AppointmentStatus.IN_PROGRESS:
            values["actual_start_time"] = now
        elif target == AppointmentStatus.COMPLETED:
            values["actual_end_time"] = now
            values["completed_at"] = now
            if metadata.get("notes"):
                values["notes"] = metadata["notes"]
        elif target == AppointmentStatus.CANCELLED:
            values.update({
                "cancelled_by": actor_id,
                "cancelled_at": now,
                "cancellation_reason": metadata.get("reason"),
                "cancellation_notes": metadata.get("notes"),
            })
        elif target == AppointmentStatus.NO_SHOW:
            values.update({
                "no_show_by": actor_id,
                "no_show_at": now,
                "no_show_reason": metadata.get("reason"),
            })

        appointment_id = appointment.appointment_id
        self._conditional_update(appointment, current, values)
        self._emit(_TRANSITION_EVENTS[target], actor_id, appointment_id, {
            "from": current.value,
            "to": target.value,
            **{key: value for key, value in metadata.items() if value is not None},
        })

    def _conditional_update(
        self,
        appointment: Appointment,
        expected_status: AppointmentStatus,
        values: Dict[str, Any]
    ) -> None:
        """Write ``values`` only if the row is still in ``expected_status``."""
        updated = self.db.query(Appointment).filter(
            Appointment.id == appointment.id,
            Appointment.status == expected_status
        ).update(values, synchronize_session=False)

        if not updated:
            raise InvalidStateTransitionError(
                "Appointment status changed concurrently",
                appointment_id=appointment.appointment_id
            )
        self.db.expire(appointment)

    def _lock_calendar(self, doctor_id: str) -> None:
        upsert_increment(self.db, DoctorCalendar, {"doctor_id": doctor_id}, "version")

    def _validate_duration(self, duration: int) -> None:
        if not settings.MIN_APPOINTMENT_MINUTES <= duration <= settings.MAX_APPOINTMENT_MINUTES:
            raise ValidationError(
                f"Duration must be between {settings.MIN_APPOINTMENT_MINUTES} "
                f"and {settings.MAX_APPOINTMENT_MINUTES} minutes",
                duration_minutes=duration
            )

    def _emit(self, name: str, actor_id: Optional[str], entity_id: str, metadata: Dict[str, Any]) -> None:
        stage_event(self.db, self.events, DomainEvent(
            name=name,
            actor_id=actor_id,
            entity_id=entity_id,
            timestamp=self.clock.now(),
            metadata=metadata
        ))
