import os
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set testing environment before the application is imported
os.environ["TESTING"] = "1"
os.environ["TEST_DATABASE_URL"] = "sqlite:///./test.db"

from visitflow import models  # noqa: F401  register tables
from visitflow.api.deps import get_clock, get_directory, get_event_bus, get_notifier
from visitflow.core.clock import Clock
from visitflow.core.database import Base, get_db
from visitflow.core.security import Actor, UserRole, create_actor_token
from visitflow.main import app
from visitflow.services.appointment_service import AppointmentService
from visitflow.services.audit import AuditRecorder
from visitflow.services.directory import DoctorInfo, PatientInfo
from visitflow.services.events import EventBus
from visitflow.services.notifications import NotificationDispatcher
from visitflow.services.queue_service import QueueService
from visitflow.services.wait_time import WaitTimeEstimator

# One shared in-memory database per test run
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Monday morning before clinic opens
CLINIC_MORNING = datetime(2024, 5, 6, 7, 30)

class FixedClock(Clock):
    """Clock that only moves when a test moves it."""

    def __init__(self, current: datetime):
        super().__init__("UTC")
        self.current = current

    def now(self) -> datetime:
        return self.current

class FakeDirectory:
    def __init__(self):
        self.doctors = {}
        self.patients = {}
        self.lookups = []

    def add_doctor(self, doctor_id, active=True, role="doctor", department="General Medicine"):
        self.doctors[doctor_id] = DoctorInfo(
            id=doctor_id, role=role, active=active, full_name=f"Dr. {doctor_id}", department=department
        )

    def add_patient(self, patient_id):
        self.patients[patient_id] = PatientInfo(id=patient_id, full_name=f"Patient {patient_id}")

    def get_doctor(self, doctor_id):
        self.lookups.append(("doctor", doctor_id))
        return self.doctors.get(doctor_id)

    def get_patient(self, patient_id):
        self.lookups.append(("patient", patient_id))
        return self.patients.get(patient_id)

    def close(self):
        pass

class RecordingNotifier:
    def __init__(self):
        self.reminders = []
        self.queue_calls = []
        self.bookings = []
        self.fail_reminders = False

    def send_reminder(self, appointment):
        if self.fail_reminders:
            raise RuntimeError("SMTP relay refused connection")
        self.reminders.append(appointment)

    def notify_queue_called(self, queue_entry):
        self.queue_calls.append(queue_entry)

    def notify_appointment_booked(self, appointment):
        self.bookings.append(appointment)

    def close(self):
        pass

class RecordingSink:
    def __init__(self):
        self.records = []

    def write(self, record):
        self.records.append(record)

    @property
    def actions(self):
        return [record.action for record in self.records]

@pytest.fixture
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)

@pytest.fixture
def db(tables):
    session = TestingSessionLocal()
    yield session
    session.close()

@pytest.fixture
def interleave(db):
    """Run a competing write just before the session's next UPDATE (or INSERT) on a model.

    The write goes through the session's own connection, so it is visible to
    the UPDATE exactly as a change committed by another console would be.
    """
    listeners = []

    def install(model, write, on="update"):
        fired = []

        def before_statement(orm_execute_state):
            if fired or not getattr(orm_execute_state, f"is_{on}"):
                return
            if orm_execute_state.bind_mapper is None or orm_execute_state.bind_mapper.class_ is not model:
                return
            fired.append(True)
            write(orm_execute_state.session.connection())

        event.listen(db, "do_orm_execute", before_statement)
        listeners.append(before_statement)
        return fired

    yield install

    for listener in listeners:
        event.remove(db, "do_orm_execute", listener)

@pytest.fixture
def clock():
    return FixedClock(CLINIC_MORNING)

@pytest.fixture
def directory():
    directory = FakeDirectory()
    directory.add_doctor("doc-1", department="Cardiology")
    directory.add_doctor("doc-2", department="Dermatology")
    directory.add_doctor("doc-retired", active=False)
    directory.add_doctor("nurse-1", role="nurse")
    for patient_id in ("pat-1", "pat-2", "pat-3", "pat-4"):
        directory.add_patient(patient_id)
    return directory

@pytest.fixture
def notifier():
    return RecordingNotifier()

@pytest.fixture
def audit_sink():
    return RecordingSink()

@pytest.fixture
def events(audit_sink, notifier):
    # Inline delivery so subscribers run before the service call returns
    bus = EventBus()
    AuditRecorder(audit_sink).register(bus)
    NotificationDispatcher(notifier).register(bus)
    return bus

@pytest.fixture
def appointments(db, directory, events, clock, notifier):
    return AppointmentService(db, directory, events, clock, notifier)

@pytest.fixture
def queue(appointments):
    return QueueService(
        appointments.db, appointments.directory, appointments.events, appointments.clock,
        lifecycle=appointments
    )

@pytest.fixture
def estimator(db, clock):
    return WaitTimeEstimator(db, clock)

@pytest.fixture
def receptionist():
    return Actor(id="rec-1", role=UserRole.RECEPTIONIST)

@pytest.fixture
def doctor():
    return Actor(id="doc-1", role=UserRole.DOCTOR)

@pytest.fixture
def client(tables, directory, events, clock, notifier):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_directory] = lambda: directory
    app.dependency_overrides[get_event_bus] = lambda: events
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_notifier] = lambda: notifier

    yield TestClient(app, base_url="http://testserver")

    app.dependency_overrides.clear()

def auth_headers(actor_id: str, role: UserRole) -> dict:
    return {"Authorization": f"Bearer {create_actor_token(actor_id, role)}"}

@pytest.fixture
def reception_headers():
    return auth_headers("rec-1", UserRole.RECEPTIONIST)

@pytest.fixture
def doctor_headers():
    return auth_headers("doc-1", UserRole.DOCTOR)

@pytest.fixture
def admin_headers():
    return auth_headers("admin-1", UserRole.ADMIN)

@pytest.fixture
def patient_headers():
    return auth_headers("pat-1", UserRole.PATIENT)
