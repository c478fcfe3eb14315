from fastapi import APIRouter, Depends, Query, status
from datetime import date, datetime
from typing import Optional

from ...core.security import Actor, AuthorizationError, UserRole
from ...api.deps import (
    BOOKING, CLINICAL, FRONT_DESK,
    get_appointment_service, get_current_actor, require_role
)
from ...models.appointment import Appointment, AppointmentStatus
from ...services.appointment_service import AppointmentService
from ...schemas.appointment import (
    AppointmentCancel, AppointmentComplete, AppointmentCreate, AppointmentFilters,
    AppointmentListResponse, AppointmentNoShow, AppointmentReschedule,
    AppointmentResponse, AppointmentStats, AppointmentStatusUpdate, AvailableSlotsResponse,
    CancelRequestCreate, CancelRequestReview, CheckInResponse, ReminderDispatchResult
)
from ...schemas.queue import QueueEntryResponse

router = APIRouter(prefix="/appointments", tags=["Appointments"])

# Endpoints are plain functions so FastAPI runs the blocking database and
# directory calls in its worker threadpool.

def _check_owner(actor: Actor, appointment: Appointment) -> None:
    """Patients may only act on their own appointments."""
    if actor.role == UserRole.PATIENT and appointment.patient_id != actor.id:
        raise AuthorizationError("Access denied to this appointment")

@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(
    data: AppointmentCreate,
    actor: Actor = Depends(require_role(BOOKING)),
    service: AppointmentService = Depends(get_appointment_service)
):
    """Book an appointment if the doctor is free for the whole window."""
    appointment = service.book_appointment(data, actor)
    return AppointmentResponse.model_validate(appointment)

@router.get("", response_model=AppointmentListResponse)
def list_appointments(
    doctor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    status: Optional[AppointmentStatus] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service)
):
    """List appointments, newest first. Patients only see their own."""
    if actor.role == UserRole.PATIENT:
        patient_id = actor.id

    filters = AppointmentFilters(
        doctor_id=doctor_id,
        patient_id=patient_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
        skip=skip,
        limit=limit
    )
    items, total = service.list_appointments(filters)
    return AppointmentListResponse(
        items=[AppointmentResponse.model_validate(item) for item in items],
        total=total,
        skip=skip,
        limit=limit
    )

@router.post("/reminders/dispatch", response_model=ReminderDispatchResult)
def dispatch_reminders(
    actor: Actor = Depends(require_role([UserRole.ADMIN])),
    service: AppointmentService = Depends(get_appointment_service)
):
    """Send reminders for tomorrow's appointments that have not had one."""
    return service.send_due_reminders(actor)

@router.get("/stats", response_model=AppointmentStats)
def get_appointment_stats(
    _: Actor = Depends(require_role([UserRole.ADMIN])),
    service: AppointmentService = Depends(get_appointment_service)
):
    """Appointment counts overall, for today, and by status."""
    return service.get_appointment_stats()

@router.get("/doctors/{doctor_id}/slots", response_model=AvailableSlotsResponse)
def get_available_slots(
    doctor_id: str,
    date: date,
    _: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service)
):
    """Working-day slots for a doctor, each flagged available or booked."""
    slots = service.available_slots(doctor_id, date)
    return AvailableSlotsResponse(doctor_id=doctor_id, day=date, slots=slots)

@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service)
):
    appointment = service.get_appointment(appointment_id)
    _check_owner(actor, appointment)
    return AppointmentResponse.model_validate(appointment)

@router.patch("/{appointment_id}/status", response_model=AppointmentResponse)
def update_status(
    appointment_id: str,
    data: AppointmentStatusUpdate,
    actor: Actor = Depends(require_role(FRONT_DESK)),
    service: AppointmentService = Depends(get_appointment_service)
):
    """Apply a status transition (confirm, start, complete, cancel, no-show)."""
    appointment = service.transition(
        appointment_id,
        data.status,
        actor,
        {"reason": data.reason, "notes": data.notes}
    )
    return AppointmentResponse.model_validate(appointment)

@router.post("/{appointment_id}/reschedule", response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: str,
    data: AppointmentReschedule,
    actor: Actor = Depends(require_role(BOOKING)),
    service: AppointmentService = Depends(get_appointment_service)
):
    appointment = service.reschedule_appointment(
        appointment_id, data.appointment_date, actor, data.reason
    )
    return AppointmentResponse.model_validate(appointment)

@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: str,
    data: AppointmentCancel,
    actor: Actor = Depends(require_role(BOOKING)),
    service: AppointmentService = Depends(get_appointment_service)
):
    appointment = service.cancel_appointment(appointment_id, actor, data.reason, data.notes)
    return AppointmentResponse.model_validate(appointment)

@router.post("/{appointment_id}/check-in", response_model=CheckInResponse)
def check_in(
    appointment_id: str,
    actor: Actor = Depends(require_role(FRONT_DESK)),
    service: AppointmentService = Depends(get_appointment_service)
):
    """Check the patient in and add them to today's queue."""
    appointment, entry = service.check_in(appointment_id, actor)
    return CheckInResponse(
        appointment=AppointmentResponse.model_validate(appointment),
        queue_entry=QueueEntryResponse.model_validate(entry)
    )

@router.post("/{appointment_id}/complete", response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: str,
    data: AppointmentComplete,
    actor: Actor = Depends(require_role(CLINICAL)),
    service: AppointmentService = Depends(get_appointment_service)
):
    appointment = service.complete_appointment(appointment_id, actor, data.notes)
    return AppointmentResponse.model_validate(appointment)

@router.post("/{appointment_id}/no-show", response_model=AppointmentResponse)
def mark_no_show(
    appointment_id: str,
    data: AppointmentNoShow,
    actor: Actor = Depends(require_role(FRONT_DESK)),
    service: AppointmentService = Depends(get_appointment_service)
):
    appointment = service.mark_no_show(appointment_id, actor, data.reason)
    return AppointmentResponse.model_validate(appointment)

@router.post("/{appointment_id}/reminder", response_model=AppointmentResponse)
def send_reminder(
    appointment_id: str,
    actor: Actor = Depends(require_role(FRONT_DESK)),
    service: AppointmentService = Depends(get_appointment_service)
):
    """Send a reminder now. ``reminder_sent`` stays false if delivery failed."""
    return AppointmentResponse.model_validate(service.send_reminder(appointment_id, actor))

@router.post("/{appointment_id}/cancel-request", response_model=AppointmentResponse)
def request_cancellation(
    appointment_id: str,
    data: CancelRequestCreate,
    actor: Actor = Depends(require_role(BOOKING)),
    service: AppointmentService = Depends(get_appointment_service)
):
    """Ask the front desk to cancel an appointment."""
    _check_owner(actor, service.get_appointment(appointment_id))
    appointment = service.request_cancellation(appointment_id, actor, data.reason)
    return AppointmentResponse.model_validate(appointment)

@router.post("/{appointment_id}/cancel-request/review", response_model=AppointmentResponse)
def review_cancellation(
    appointment_id: str,
    data: CancelRequestReview,
    actor: Actor = Depends(require_role(FRONT_DESK)),
    service: AppointmentService = Depends(get_appointment_service)
):
    """Approve or decline a pending cancellation request."""
    appointment = service.review_cancellation(appointment_id, actor, data.approved, data.notes)
    return AppointmentResponse.model_validate(appointment)
