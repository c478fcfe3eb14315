import pytest
from datetime import date, datetime

from sqlalchemy import insert, update

from visitflow.core.exceptions import (
    AppointmentConflictError, InvalidDoctorError, PatientNotFoundError,
    QueueDoctorNotFoundError, QueueDuplicateError, QueueEmptyError,
    QueueEntryNotFoundError, QueueInvalidStateError
)
from visitflow.models.appointment import AppointmentStatus
from visitflow.models.queue import QueueCounter, QueueEntry, QueueEntryType, QueueStatus, allowed_next
from visitflow.schemas.appointment import AppointmentCreate
from visitflow.schemas.queue import QueueFilters

def book(appointments, actor, hour, minute=0, patient_id="pat-1", doctor_id="doc-1"):
    return appointments.book_appointment(
        AppointmentCreate(
            patient_id=patient_id,
            doctor_id=doctor_id,
            appointment_date=datetime(2024, 5, 6, hour, minute),
            duration_minutes=30
        ),
        actor
    )

class TestTransitionTable:

    def test_completed_is_terminal(self):
        assert allowed_next(QueueStatus.COMPLETED) == frozenset()

    def test_skipped_only_returns_to_consultation(self):
        """A skipped entry never goes back to waiting."""
        assert allowed_next(QueueStatus.SKIPPED) == frozenset({QueueStatus.IN_CONSULTATION})

class TestVisitScenario:

    def test_end_to_end_visit(self, appointments, queue, receptionist, doctor, clock):
        """Booking, check-in, walk-in, call, skip, recall and completion in one morning."""
        p1 = book(appointments, receptionist, 9, 0, patient_id="pat-1")
        assert p1.status == AppointmentStatus.SCHEDULED

        with pytest.raises(AppointmentConflictError):
            book(appointments, receptionist, 9, 15, patient_id="pat-2")

        clock.current = datetime(2024, 5, 6, 8, 45)
        _, first = appointments.check_in(p1.appointment_id, receptionist)
        assert first.queue_number == 1
        assert first.status == QueueStatus.WAITING

        clock.current = datetime(2024, 5, 6, 8, 50)
        walk_in = queue.add_walk_in("pat-3", "doc-1", receptionist, reason="Rash")
        assert walk_in.queue_number == 2
        assert walk_in.type == QueueEntryType.WALK_IN
        assert walk_in.status == QueueStatus.WAITING

        clock.current = datetime(2024, 5, 6, 9, 0)
        called = queue.call_next("doc-1", doctor)
        assert called.queue_id == first.queue_id
        assert called.status == QueueStatus.IN_CONSULTATION
        assert appointments.get_appointment(p1.appointment_id).status == AppointmentStatus.IN_PROGRESS

        clock.current = datetime(2024, 5, 6, 9, 5)
        skipped = queue.skip_patient(first.queue_id, doctor, reason="Sent for blood test")
        assert skipped.status == QueueStatus.SKIPPED

        clock.current = datetime(2024, 5, 6, 9, 6)
        called = queue.call_next("doc-1", doctor)
        assert called.queue_id == walk_in.queue_id
        assert called.status == QueueStatus.IN_CONSULTATION

        clock.current = datetime(2024, 5, 6, 9, 30)
        recalled = queue.recall_patient(first.queue_id, doctor)
        assert recalled.status == QueueStatus.IN_CONSULTATION
        assert recalled.recall_count == 1

        clock.current = datetime(2024, 5, 6, 9, 45)
        completed = queue.complete_patient(first.queue_id, doctor, notes="Results normal")
        assert completed.status == QueueStatus.COMPLETED
        assert completed.completed_by == "doc-1"
        assert appointments.get_appointment(p1.appointment_id).status == AppointmentStatus.COMPLETED

class TestNumbering:

    def test_numbers_increase_per_doctor(self, queue, receptionist):
        """Each doctor's queue counts from one independently."""
        numbers = [
            queue.add_walk_in(patient_id, doctor_id, receptionist).queue_number
            for patient_id, doctor_id in [
                ("pat-1", "doc-1"), ("pat-2", "doc-2"), ("pat-3", "doc-1"), ("pat-4", "doc-1")
            ]
        ]
        assert numbers == [1, 1, 2, 3]

    def test_numbering_restarts_each_day(self, queue, receptionist, clock):
        """A new day starts a new sequence."""
        queue.add_walk_in("pat-1", "doc-1", receptionist)
        queue.add_walk_in("pat-2", "doc-1", receptionist)

        clock.current = datetime(2024, 5, 7, 8, 0)
        entry = queue.add_walk_in("pat-3", "doc-1", receptionist)

        assert entry.queue_number == 1
        assert entry.queue_date == date(2024, 5, 7)

    def test_numbers_are_not_reused(self, queue, receptionist, doctor):
        """Completing or skipping entries never frees their number."""
        first = queue.add_walk_in("pat-1", "doc-1", receptionist)
        queue.call_next("doc-1", doctor)
        queue.complete_patient(first.queue_id, doctor)

        assert queue.add_walk_in("pat-2", "doc-1", receptionist).queue_number == 2

    def test_next_queue_number_is_read_only(self, queue, receptionist):
        """Peeking at the next number does not consume it."""
        assert queue.next_queue_number("doc-1", date(2024, 5, 6)) == 1
        assert queue.next_queue_number("doc-1", date(2024, 5, 6)) == 1

        queue.add_walk_in("pat-1", "doc-1", receptionist)
        assert queue.next_queue_number("doc-1", date(2024, 5, 6)) == 2
        assert queue.add_walk_in("pat-2", "doc-1", receptionist).queue_number == 2

class TestAdmission:

    def test_add_to_queue(self, appointments, queue, receptionist):
        """Queueing an appointment checks the patient in."""
        appointment = book(appointments, receptionist, 10)
        entry = queue.add_to_queue(appointment.appointment_id, receptionist)

        assert entry.type == QueueEntryType.APPOINTMENT
        assert entry.patient_id == "pat-1"
        assert entry.added_by == "rec-1"
        assert entry.reason is None
        assert appointments.get_appointment(appointment.appointment_id).checked_in_at is not None

    def test_duplicate_add(self, appointments, queue, receptionist):
        appointment = book(appointments, receptionist, 10)
        queue.add_to_queue(appointment.appointment_id, receptionist)

        with pytest.raises(QueueDuplicateError):
            queue.add_to_queue(appointment.appointment_id, receptionist)

    def test_duplicate_does_not_consume_number(self, appointments, queue, receptionist):
        """A rejected duplicate leaves the sequence where it was."""
        appointment = book(appointments, receptionist, 10)
        queue.add_to_queue(appointment.appointment_id, receptionist)
        with pytest.raises(QueueDuplicateError):
            queue.add_to_queue(appointment.appointment_id, receptionist)

        assert queue.add_walk_in("pat-2", "doc-1", receptionist).queue_number == 2

    def test_walk_in_unknown_doctor(self, queue, receptionist):
        with pytest.raises(QueueDoctorNotFoundError):
            queue.add_walk_in("pat-1", "doc-404", receptionist)

    def test_walk_in_inactive_doctor(self, queue, receptionist):
        with pytest.raises(InvalidDoctorError):
            queue.add_walk_in("pat-1", "doc-retired", receptionist)

    def test_walk_in_unknown_patient(self, queue, receptionist):
        with pytest.raises(PatientNotFoundError):
            queue.add_walk_in("pat-404", "doc-1", receptionist)

    def test_walk_in_department_from_directory(self, queue, receptionist):
        entry = queue.add_walk_in("pat-1", "doc-2", receptionist)
        assert entry.department == "Dermatology"

class TestCallNext:

    def test_serves_lowest_number_first(self, queue, receptionist, doctor):
        """Waiting entries are called in queue-number order."""
        entries = [queue.add_walk_in(p, "doc-1", receptionist) for p in ("pat-1", "pat-2", "pat-3")]

        called = [queue.call_next("doc-1", doctor).queue_id for _ in entries]

        assert called == [entry.queue_id for entry in entries]

    def test_stamps_caller(self, queue, receptionist, doctor, clock):
        queue.add_walk_in("pat-1", "doc-1", receptionist)
        clock.current = datetime(2024, 5, 6, 9, 12)

        called = queue.call_next("doc-1", doctor)

        assert called.called_at == datetime(2024, 5, 6, 9, 12)
        assert called.called_by == "doc-1"

    def test_empty_queue(self, queue, receptionist, doctor):
        """Calling with nobody waiting fails and leaves other doctors alone."""
        other = queue.add_walk_in("pat-1", "doc-2", receptionist)

        with pytest.raises(QueueEmptyError):
            queue.call_next("doc-1", doctor)

        assert queue.get_entry(other.queue_id).status == QueueStatus.WAITING

    def test_only_todays_queue(self, queue, receptionist, doctor, clock):
        """Yesterday's leftovers are not called today."""
        clock.current = datetime(2024, 5, 5, 16, 0)
        leftover = queue.add_walk_in("pat-1", "doc-1", receptionist)

        clock.current = datetime(2024, 5, 6, 9, 0)
        with pytest.raises(QueueEmptyError):
            queue.call_next("doc-1", doctor)

        assert queue.get_entry(leftover.queue_id).status == QueueStatus.WAITING

    def test_skipped_entries_are_passed_over(self, queue, receptionist, doctor):
        first = queue.add_walk_in("pat-1", "doc-1", receptionist)
        second = queue.add_walk_in("pat-2", "doc-1", receptionist)
        queue.skip_patient(first.queue_id, receptionist, reason="Stepped out")

        assert queue.call_next("doc-1", doctor).queue_id == second.queue_id

    def test_unknown_doctor(self, queue, doctor):
        with pytest.raises(QueueDoctorNotFoundError):
            queue.call_next("doc-404", doctor)

    def test_notifies_patient(self, queue, receptionist, doctor, notifier):
        """The notification service hears about each call."""
        entry = queue.add_walk_in("pat-1", "doc-1", receptionist)
        queue.call_next("doc-1", doctor)

        assert notifier.queue_calls[0]["queue_id"] == entry.queue_id
        assert notifier.queue_calls[0]["queue_number"] == 1

class TestSkipRecallComplete:

    def test_skip_recall_complete_cycle(self, queue, receptionist, doctor):
        """Skip, recall, complete ends COMPLETED with one recall."""
        entry = queue.add_walk_in("pat-1", "doc-1", receptionist)
        queue.skip_patient(entry.queue_id, receptionist, reason="Not present")
        queue.recall_patient(entry.queue_id, doctor)
        completed = queue.complete_patient(entry.queue_id, doctor)

        assert completed.status == QueueStatus.COMPLETED
        assert completed.recall_count == 1

    def test_skip_stamps(self, queue, receptionist, clock):
        entry = queue.add_walk_in("pat-1", "doc-1", receptionist)
        clock.current = datetime(2024, 5, 6, 9, 40)

        skipped = queue.skip_patient(entry.queue_id, receptionist, reason="Went to pharmacy")

        assert skipped.skipped_at == datetime(2024, 5, 6, 9, 40)
        assert skipped.skipped_by == "rec-1"
        assert skipped.skip_reason == "Went to pharmacy"
        assert skipped.queue_number == 1

    def test_recall_twice_fails(self, queue, receptionist, doctor):
        """Recalling an entry already in consultation is rejected."""
        entry = queue.add_walk_in("pat-1", "doc-1", receptionist)
        queue.skip_patient(entry.queue_id, receptionist)
        queue.recall_patient(entry.queue_id, doctor)

        with pytest.raises(QueueInvalidStateError):
            queue.recall_patient(entry.queue_id, doctor)

    def test_recall_waiting_fails(self, queue, receptionist, doctor):
        entry = queue.add_walk_in("pat-1", "doc-1", receptionist)
        with pytest.raises(QueueInvalidStateError):
            queue.recall_patient(entry.queue_id, doctor)

    def test_repeated_skip_and_recall(self, queue, receptionist, doctor):
        """An entry may be skipped and recalled any number of times."""
        entry = queue.add_walk_in("pat-1", "doc-1", receptionist)
        for _ in range(3):
            queue.skip_patient(entry.queue_id, doctor)
            recalled = queue.recall_patient(entry.queue_id, doctor)

        assert recalled.recall_count == 3
        assert recalled.last_recalled_by == "doc-1"

    def test_complete_waiting_fails(self, queue, receptionist, doctor):
        """Only patients being attended can be completed."""
        entry = queue.add_walk_in("pat-1", "doc-1", receptionist)
        with pytest.raises(QueueInvalidStateError):
            queue.complete_patient(entry.queue_id, doctor)
        assert queue.get_entry(entry.queue_id).status == QueueStatus.WAITING

    def test_skip_completed_fails(self, queue, receptionist, doctor):
        entry = queue.add_walk_in("pat-1", "doc-1", receptionist)
        queue.call_next("doc-1", doctor)
        queue.complete_patient(entry.queue_id, doctor)

        with pytest.raises(QueueInvalidStateError):
            queue.skip_patient(entry.queue_id, doctor)

    def test_unknown_entry(self, queue, doctor):
        with pytest.raises(QueueEntryNotFoundError):
            queue.skip_patient("Q-00000000", doctor)

    def test_recall_from_waiting_skip_starts_appointment(self, appointments, queue, receptionist, doctor):
        """Recalling a patient skipped before being called starts their appointment."""
        appointment = book(appointments, receptionist, 9)
        _, entry = appointments.check_in(appointment.appointment_id, receptionist)
        queue.skip_patient(entry.queue_id, receptionist)
        assert appointments.get_appointment(appointment.appointment_id).status == AppointmentStatus.CONFIRMED

        queue.recall_patient(entry.queue_id, doctor)

        assert appointments.get_appointment(appointment.appointment_id).status == AppointmentStatus.IN_PROGRESS

    def test_mirror_skipped_when_appointment_cancelled(self, appointments, queue, receptionist, doctor):
        """Completing the entry still succeeds if the appointment was cancelled meanwhile."""
        appointment = book(appointments, receptionist, 9)
        _, entry = appointments.check_in(appointment.appointment_id, receptionist)
        queue.call_next("doc-1", doctor)
        appointments.cancel_appointment(appointment.appointment_id, receptionist, "Transferred to ER")

        completed = queue.complete_patient(entry.queue_id, doctor)

        assert completed.status == QueueStatus.COMPLETED
        assert appointments.get_appointment(appointment.appointment_id).status == AppointmentStatus.CANCELLED

    def test_queue_audit_trail(self, queue, receptionist, doctor, audit_sink):
        entry = queue.add_walk_in("pat-1", "doc-1", receptionist)
        queue.call_next("doc-1", doctor)
        queue.complete_patient(entry.queue_id, doctor)

        assert audit_sink.actions == ["QueueEntryAdded", "QueueEntryCalled", "QueueEntryCompleted"]
        assert all(record.entity_id == entry.queue_id for record in audit_sink.records)
        assert audit_sink.records[1].actor_id == "doc-1"

class TestQueueViews:

    def test_get_queue_with_summary(self, queue, receptionist, doctor):
        """The list is ordered by number and summarised by status."""
        first = queue.add_walk_in("pat-1", "doc-1", receptionist)
        queue.add_walk_in("pat-2", "doc-1", receptionist)
        queue.add_walk_in("pat-3", "doc-2", receptionist)
        queue.call_next("doc-1", doctor)

        entries, total, summary = queue.get_queue(QueueFilters(doctor_id="doc-1"))

        assert total == 2
        assert [entry.queue_number for entry in entries] == [1, 2]
        assert entries[0].queue_id == first.queue_id
        assert summary == {"IN_CONSULTATION": 1, "WAITING": 1}

    def test_filter_by_department_and_type(self, appointments, queue, receptionist):
        appointment = book(appointments, receptionist, 9)
        queue.add_to_queue(appointment.appointment_id, receptionist)
        queue.add_walk_in("pat-2", "doc-1", receptionist)
        queue.add_walk_in("pat-3", "doc-2", receptionist)

        _, total, _ = queue.get_queue(QueueFilters(department="Cardiology"))
        assert total == 2

        entries, total, _ = queue.get_queue(QueueFilters(type=QueueEntryType.WALK_IN))
        assert total == 2
        assert {entry.patient_id for entry in entries} == {"pat-2", "pat-3"}

    def test_today_queue(self, queue, receptionist, clock):
        clock.current = datetime(2024, 5, 5, 10, 0)
        queue.add_walk_in("pat-1", "doc-1", receptionist)
        clock.current = datetime(2024, 5, 6, 10, 0)
        today = queue.add_walk_in("pat-2", "doc-1", receptionist)

        entries, total, _ = queue.get_today_queue(QueueFilters())

        assert total == 1
        assert entries[0].queue_id == today.queue_id

    def test_current_patient(self, queue, receptionist, doctor, clock):
        """The most recently started consultation is the current patient."""
        assert queue.get_current_patient("doc-1") is None

        first = queue.add_walk_in("pat-1", "doc-1", receptionist)
        second = queue.add_walk_in("pat-2", "doc-1", receptionist)
        clock.current = datetime(2024, 5, 6, 9, 0)
        queue.call_next("doc-1", doctor)
        assert queue.get_current_patient("doc-1").queue_id == first.queue_id

        queue.skip_patient(first.queue_id, doctor)
        clock.current = datetime(2024, 5, 6, 9, 10)
        queue.call_next("doc-1", doctor)
        assert queue.get_current_patient("doc-1").queue_id == second.queue_id

        clock.current = datetime(2024, 5, 6, 9, 20)
        queue.recall_patient(first.queue_id, doctor)
        assert queue.get_current_patient("doc-1").queue_id == first.queue_id

    def test_stats(self, queue, receptionist, doctor):
        queue.add_walk_in("pat-1", "doc-1", receptionist)
        queue.add_walk_in("pat-2", "doc-1", receptionist)
        queue.add_walk_in("pat-3", "doc-2", receptionist)
        queue.call_next("doc-1", doctor)

        stats, total = queue.get_queue_stats(QueueFilters())

        assert total == 3
        assert {(stat.doctor_id, stat.status, stat.count) for stat in stats} == {
            ("doc-1", QueueStatus.IN_CONSULTATION, 1),
            ("doc-1", QueueStatus.WAITING, 1),
            ("doc-2", QueueStatus.WAITING, 1),
        }

class TestConcurrentConsoles:

    def test_call_next_moves_on_when_candidate_is_taken(self, queue, receptionist, doctor, interleave):
        """If another console claims the lowest entry first, the next one is served."""
        first = queue.add_walk_in("pat-1", "doc-1", receptionist)
        second = queue.add_walk_in("pat-2", "doc-1", receptionist)
        first_id, second_id = first.queue_id, second.queue_id
        fired = interleave(QueueEntry, lambda connection: connection.execute(
            update(QueueEntry)
            .where(QueueEntry.queue_id == first_id)
            .values(status=QueueStatus.IN_CONSULTATION, called_by="doc-2")
        ))

        called = queue.call_next("doc-1", doctor)

        assert fired
        assert called.queue_id == second_id
        assert called.called_by == "doc-1"
        taken = queue.get_entry(first_id)
        assert taken.status == QueueStatus.IN_CONSULTATION
        assert taken.called_by == "doc-2"

    def test_call_next_empty_after_losing_only_candidate(self, queue, receptionist, doctor, interleave):
        entry = queue.add_walk_in("pat-1", "doc-1", receptionist)
        queue_id = entry.queue_id
        fired = interleave(QueueEntry, lambda connection: connection.execute(
            update(QueueEntry)
            .where(QueueEntry.queue_id == queue_id)
            .values(status=QueueStatus.IN_CONSULTATION, called_by="doc-2")
        ))

        with pytest.raises(QueueEmptyError):
            queue.call_next("doc-1", doctor)

        assert fired

    def test_concurrent_check_in_is_duplicate(self, appointments, queue, receptionist, audit_sink, interleave):
        """A check-in racing another for the same appointment fails and consumes no number."""
        appointment = book(appointments, receptionist, 9)
        appointment_id = appointment.appointment_id
        fired = interleave(QueueCounter, lambda connection: connection.execute(
            insert(QueueEntry).values(
                queue_id="Q-RACE0001",
                appointment_id=appointment_id,
                patient_id="pat-1",
                doctor_id="doc-1",
                queue_date=date(2024, 5, 6),
                queue_number=99,
                type=QueueEntryType.APPOINTMENT,
                status=QueueStatus.WAITING,
                queued_at=datetime(2024, 5, 6, 7, 30),
                recall_count=0
            )
        ), on="insert")

        with pytest.raises(QueueDuplicateError) as exc_info:
            queue.add_to_queue(appointment_id, receptionist)

        assert fired
        assert exc_info.value.error_code == "QUEUE_DUPLICATE"
        assert queue.next_queue_number("doc-1", date(2024, 5, 6)) == 1
        unchanged = appointments.get_appointment(appointment_id)
        assert unchanged.status == AppointmentStatus.SCHEDULED
        assert unchanged.checked_in_at is None
        assert audit_sink.actions == ["AppointmentBooked"]

    def test_skip_loses_to_concurrent_completion(self, queue, receptionist, doctor, audit_sink, interleave):
        """A status change committed after the entry was read wins."""
        entry = queue.add_walk_in("pat-1", "doc-1", receptionist)
        queue.call_next("doc-1", doctor)
        queue_id = entry.queue_id
        fired = interleave(QueueEntry, lambda connection: connection.execute(
            update(QueueEntry)
            .where(QueueEntry.queue_id == queue_id)
            .values(status=QueueStatus.COMPLETED, completed_by="doc-1")
        ))

        with pytest.raises(QueueInvalidStateError, match="changed concurrently"):
            queue.skip_patient(queue_id, receptionist)

        assert fired
        assert "QueueEntrySkipped" not in audit_sink.actions
