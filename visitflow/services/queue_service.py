from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import date
from typing import Any, Dict, List, Optional, Tuple
import logging

from ..core.clock import Clock
from ..core.database import atomic, upsert_increment
from ..core.exceptions import (
    InvalidDoctorError, PatientNotFoundError, QueueDoctorNotFoundError,
    QueueDuplicateError, QueueEmptyError, QueueEntryNotFoundError,
    QueueInvalidStateError
)
from ..core.identifiers import generate_queue_id
from ..core.security import Actor
from ..models.appointment import AppointmentStatus
from ..models.queue import QueueCounter, QueueEntry, QueueEntryType, QueueStatus, allowed_next
from ..schemas.queue import QueueFilters, QueueStat
from .appointment_service import AppointmentService
from .events import DomainEvent, EventBus, stage_event

logger = logging.getLogger(__name__)

class QueueService:
    """Same-day patient queue per doctor.

    Queue numbers come from a per-(doctor, day) counter incremented in the
    same transaction as the insert. Every status change is a conditional
    update on the expected current status, so two consoles racing on the
    same entry (or on "call next") cannot both succeed.
    """

    def __init__(
        self,
        db: Session,
        directory,
        events: EventBus,
        clock: Clock,
        lifecycle: Optional[AppointmentService] = None
    ):
        self.db = db
        self.directory = directory
        self.events = events
        self.clock = clock
        self.lifecycle = lifecycle or AppointmentService(db, directory, events, clock)

    # Queries

    def get_entry(self, queue_id: str) -> QueueEntry:
        entry = self.db.query(QueueEntry).filter(QueueEntry.queue_id == queue_id).first()
        if not entry:
            raise QueueEntryNotFoundError(queue_id=queue_id)
        return entry

    def get_queue(self, filters: QueueFilters) -> Tuple[List[QueueEntry], int, Dict[str, int]]:
        """Entries matching ``filters`` in service order, the total, and counts by status."""
        query = self._filtered(filters)
        total = query.count()
        entries = query.order_by(
            QueueEntry.queue_date, QueueEntry.queue_number, QueueEntry.queued_at
        ).offset(filters.skip).limit(filters.limit).all()

        summary = {
            status.value: count
            for status, count in query.with_entities(
                QueueEntry.status, func.count(QueueEntry.id)
            ).group_by(QueueEntry.status).all()
        }
        return entries, total, summary

    def get_today_queue(self, filters: QueueFilters) -> Tuple[List[QueueEntry], int, Dict[str, int]]:
        return self.get_queue(filters.model_copy(update={"queue_date": self.clock.today()}))

    def get_current_patient(self, doctor_id: str) -> Optional[QueueEntry]:
        """The entry the doctor most recently started attending today, if any."""
        return self.db.query(QueueEntry).filter(
            QueueEntry.doctor_id == doctor_id,
            QueueEntry.queue_date == self.clock.today(),
            QueueEntry.status == QueueStatus.IN_CONSULTATION
        ).order_by(
            func.coalesce(QueueEntry.last_recalled_at, QueueEntry.called_at).desc()
        ).first()

    def get_queue_stats(self, filters: QueueFilters) -> Tuple[List[QueueStat], int]:
        rows = self._filtered(filters).with_entities(
            QueueEntry.doctor_id, QueueEntry.status, func.count(QueueEntry.id)
        ).group_by(QueueEntry.doctor_id, QueueEntry.status).order_by(
            QueueEntry.doctor_id, QueueEntry.status
        ).all()

        stats = [
            QueueStat(doctor_id=doctor_id, status=status, count=count)
            for doctor_id, status, count in rows
        ]
        return stats, sum(stat.count for stat in stats)

    def next_queue_number(self, doctor_id: str, day: date) -> int:
        """Number the next entry for (doctor, day) will receive. Read-only."""
        counter = self.db.query(QueueCounter).filter(
            QueueCounter.doctor_id == doctor_id,
            QueueCounter.queue_date == day
        ).first()
        return (counter.last_number if counter else 0) + 1

    # Admission

    def add_to_queue(self, appointment_id: str, actor: Actor) -> QueueEntry:
        """Check in a booked appointment and queue its patient."""
        appointment = self.lifecycle.get_appointment(appointment_id)
        doctor = self.directory.get_doctor(appointment.doctor_id)

        with atomic(self.db):
            if self.db.query(QueueEntry.id).filter(QueueEntry.appointment_id == appointment_id).first():
                raise QueueDuplicateError(appointment_id=appointment_id)

            self.lifecycle.record_check_in(appointment, actor.id)
            entry = self._enqueue(
                doctor_id=appointment.doctor_id,
                patient_id=appointment.patient_id,
                department=doctor.department if doctor else None,
                entry_type=QueueEntryType.APPOINTMENT,
                appointment_id=appointment_id,
                reason=appointment.reason,
                actor_id=actor.id
            )

        self.db.refresh(entry)
        logger.info(f"Checked in {appointment_id} as #{entry.queue_number} for doctor {entry.doctor_id}")
        return entry

    def add_walk_in(
        self,
        patient_id: str,
        doctor_id: str,
        actor: Actor,
        reason: Optional[str] = None
    ) -> QueueEntry:
        """Queue a patient who arrived without an appointment."""
        doctor = self._require_doctor(doctor_id)
        if self.directory.get_patient(patient_id) is None:
            raise PatientNotFoundError(patient_id=patient_id)

        with atomic(self.db):
            entry = self._enqueue(
                doctor_id=doctor_id,
                patient_id=patient_id,
                department=doctor.department,
                entry_type=QueueEntryType.WALK_IN,
                appointment_id=None,
                reason=reason,
                actor_id=actor.id
            )

        self.db.refresh(entry)
        logger.info(f"Walk-in {patient_id} queued as #{entry.queue_number} for doctor {doctor_id}")
        return entry

    # Service actions

    def call_next(self, doctor_id: str, actor: Actor) -> QueueEntry:
        """Claim today's lowest-numbered waiting entry for the doctor."""
        self._require_doctor(doctor_id)
        today = self.clock.today()

        with atomic(self.db):
            while True:
                candidate = self.db.query(QueueEntry).filter(
                    QueueEntry.doctor_id == doctor_id,
                    QueueEntry.queue_date == today,
                    QueueEntry.status == QueueStatus.WAITING
                ).order_by(QueueEntry.queue_number, QueueEntry.queued_at).first()

                if candidate is None:
                    raise QueueEmptyError(doctor_id=doctor_id)

                claimed = self.db.query(QueueEntry).filter(
                    QueueEntry.id == candidate.id,
                    QueueEntry.status == QueueStatus.WAITING
                ).update({
                    "status": QueueStatus.IN_CONSULTATION,
                    "called_at": self.clock.now(),
                    "called_by": actor.id,
                }, synchronize_session=False)
                if claimed:
                    break
                logger.info(f"Queue entry {candidate.queue_id} was claimed by another console, retrying")

            self.db.expire(candidate)
            if candidate.appointment_id:
                self.lifecycle.mirror_queue_status(
                    candidate.appointment_id, AppointmentStatus.IN_PROGRESS, actor.id
                )
            self._emit("QueueEntryCalled", actor.id, candidate, {"from": QueueStatus.WAITING.value})

        self.db.refresh(candidate)
        logger.info(f"Doctor {doctor_id} called #{candidate.queue_number} ({candidate.queue_id})")
        return candidate

    def skip_patient(self, queue_id: str, actor: Actor, reason: Optional[str] = None) -> QueueEntry:
        """Set an entry aside; remaining entries keep their numbers."""
        with atomic(self.db):
            entry = self.get_entry(queue_id)
            previous = self._transition(entry, QueueStatus.SKIPPED, {
                "skipped_at": self.clock.now(),
                "skipped_by": actor.id,
                "skip_reason": reason,
            })
            self._emit("QueueEntrySkipped", actor.id, entry, {"from": previous.value, "reason": reason})

        self.db.refresh(entry)
        logger.info(f"Skipped queue entry {queue_id}")
        return entry

    def recall_patient(self, queue_id: str, actor: Actor) -> QueueEntry:
        """Bring a skipped entry straight back into consultation."""
        with atomic(self.db):
            entry = self.get_entry(queue_id)
            if entry.status != QueueStatus.SKIPPED:
                raise QueueInvalidStateError(
                    "Only skipped patients can be recalled",
                    queue_id=queue_id,
                    current=entry.status.value
                )
            self._transition(entry, QueueStatus.IN_CONSULTATION, {
                "recall_count": QueueEntry.recall_count + 1,
                "last_recalled_at": self.clock.now(),
                "last_recalled_by": actor.id,
            })
            if entry.appointment_id:
                self.lifecycle.mirror_queue_status(
                    entry.appointment_id, AppointmentStatus.IN_PROGRESS, actor.id
                )
            self._emit("QueueEntryRecalled", actor.id, entry, {
                "from": QueueStatus.SKIPPED.value,
                "recall_count": entry.recall_count,
            })

        self.db.refresh(entry)
        logger.info(f"Recalled queue entry {queue_id} (recall #{entry.recall_count})")
        return entry

    def complete_patient(self, queue_id: str, actor: Actor, notes: Optional[str] = None) -> QueueEntry:
        """Finish the consultation and close the linked appointment."""
        with atomic(self.db):
            entry = self.get_entry(queue_id)
            self._transition(entry, QueueStatus.COMPLETED, {
                "completed_at": self.clock.now(),
                "completed_by": actor.id,
                "notes": notes,
            })
            if entry.appointment_id:
                self.lifecycle.mirror_queue_status(
                    entry.appointment_id, AppointmentStatus.COMPLETED, actor.id, {"notes": notes}
                )
            self._emit("QueueEntryCompleted", actor.id, entry, {"from": QueueStatus.IN_CONSULTATION.value})

        self.db.refresh(entry)
        logger.info(f"Completed queue entry {queue_id}")
        return entry

    # Internals

    def _enqueue(
        self,
        doctor_id: str,
        patient_id: str,
        department: Optional[str],
        entry_type: QueueEntryType,
        appointment_id: Optional[str],
        reason: Optional[str],
        actor_id: str
    ) -> QueueEntry:
        today = self.clock.today()
        queue_number = upsert_increment(
            self.db, QueueCounter, {"doctor_id": doctor_id, "queue_date": today}, "last_number"
        )

        entry = QueueEntry(
            queue_id=generate_queue_id(),
            appointment_id=appointment_id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            department=department,
            queue_date=today,
            queue_number=queue_number,
            type=entry_type,
            status=QueueStatus.WAITING,
            reason=reason,
            queued_at=self.clock.now(),
            added_by=actor_id,
            recall_count=0
        )
        self.db.add(entry)
        try:
            self.db.flush()
        except IntegrityError as exc:
            # The appointment was queued by a concurrent check-in
            raise QueueDuplicateError(appointment_id=appointment_id) from exc

        self._emit("QueueEntryAdded", actor_id, entry, {"type": entry_type.value})
        return entry

    def _transition(self, entry: QueueEntry, target: QueueStatus, values: Dict[str, Any]) -> QueueStatus:
        current = entry.status
        if target not in allowed_next(current):
            raise QueueInvalidStateError(
                f"Cannot move queue entry from {current.value} to {target.value}",
                queue_id=entry.queue_id,
                current=current.value,
                target=target.value
            )

        updated = self.db.query(QueueEntry).filter(
            QueueEntry.id == entry.id,
            QueueEntry.status == current
        ).update({"status": target, **values}, synchronize_session=False)
        if not updated:
            raise QueueInvalidStateError("Queue entry changed concurrently", queue_id=entry.queue_id)

        self.db.expire(entry)
        return current

    def _require_doctor(self, doctor_id: str):
        doctor = self.directory.get_doctor(doctor_id)
        if doctor is None:
            raise QueueDoctorNotFoundError(doctor_id=doctor_id)
        if not doctor.is_active_doctor:
            raise InvalidDoctorError(doctor_id=doctor_id)
        return doctor

    def _filtered(self, filters: QueueFilters):
        query = self.db.query(QueueEntry)
        if filters.doctor_id:
            query = query.filter(QueueEntry.doctor_id == filters.doctor_id)
        if filters.department:
            query = query.filter(QueueEntry.department == filters.department)
        if filters.queue_date:
            query = query.filter(QueueEntry.queue_date == filters.queue_date)
        if filters.status:
            query = query.filter(QueueEntry.status == filters.status)
        if filters.type:
            query = query.filter(QueueEntry.type == filters.type)
        return query

    def _emit(self, name: str, actor_id: str, entry: QueueEntry, metadata: Dict[str, Any]) -> None:
        stage_event(self.db, self.events, DomainEvent(
            name=name,
            actor_id=actor_id,
            entity_id=entry.queue_id,
            timestamp=self.clock.now(),
            metadata={
                "doctor_id": entry.doctor_id,
                "patient_id": entry.patient_id,
                "appointment_id": entry.appointment_id,
                "queue_number": entry.queue_number,
                "queue_date": entry.queue_date.isoformat(),
                "status": entry.status.value,
                **metadata,
            }
        ))
