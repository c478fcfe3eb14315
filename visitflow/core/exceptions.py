"""
Domain errors raised by the scheduling services.

Each error carries a taxonomy ``category`` used by the API layer to pick a
transport status, and a finer ``error_code`` for clients.
"""
from typing import Any, Dict, Optional


class ErrorCategory:
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    DUPLICATE_REQUEST = "DUPLICATE_REQUEST"
    QUEUE_EMPTY = "QUEUE_EMPTY"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class SchedulingError(Exception):
    category: str = ErrorCategory.VALIDATION
    error_code: str = "VALIDATION_FAILED"
    default_message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)


# Not found
class NotFoundError(SchedulingError):
    category = ErrorCategory.NOT_FOUND
    error_code = "NOT_FOUND"
    default_message = "Resource not found"

class AppointmentNotFoundError(NotFoundError):
    error_code = "APPOINTMENT_NOT_FOUND"
    default_message = "Appointment not found"

class DoctorNotFoundError(NotFoundError):
    error_code = "DOCTOR_NOT_FOUND"
    default_message = "Doctor not found"

class PatientNotFoundError(NotFoundError):
    error_code = "PATIENT_NOT_FOUND"
    default_message = "Patient not found"

class QueueEntryNotFoundError(NotFoundError):
    error_code = "QUEUE_ENTRY_NOT_FOUND"
    default_message = "Queue entry not found"

class QueueDoctorNotFoundError(NotFoundError):
    error_code = "QUEUE_DOCTOR_NOT_FOUND"
    default_message = "Doctor not found for queue"


# Validation
class ValidationError(SchedulingError):
    category = ErrorCategory.VALIDATION
    error_code = "VALIDATION_FAILED"
    default_message = "Invalid request"

class InvalidDoctorError(ValidationError):
    error_code = "INVALID_DOCTOR"
    default_message = "Doctor is not an active doctor"

class CancelRequestNotFoundError(ValidationError):
    error_code = "CANCEL_REQUEST_NOT_FOUND"
    default_message = "No pending cancellation request to review"


# Conflicts and state
class AppointmentConflictError(SchedulingError):
    category = ErrorCategory.CONFLICT
    error_code = "APPOINTMENT_CONFLICT"
    default_message = "Doctor already has an appointment in this window"

class InvalidStateTransitionError(SchedulingError):
    category = ErrorCategory.INVALID_STATE_TRANSITION
    error_code = "INVALID_STATE"
    default_message = "Status change is not allowed"

class QueueInvalidStateError(InvalidStateTransitionError):
    error_code = "QUEUE_INVALID_STATE"
    default_message = "Queue entry cannot change to this status"

class DuplicateRequestError(SchedulingError):
    category = ErrorCategory.DUPLICATE_REQUEST
    error_code = "DUPLICATE_REQUEST"
    default_message = "Request was already processed"

class QueueDuplicateError(DuplicateRequestError):
    error_code = "QUEUE_DUPLICATE"
    default_message = "Appointment is already in the queue"

class QueueEmptyError(SchedulingError):
    category = ErrorCategory.QUEUE_EMPTY
    error_code = "QUEUE_EMPTY"
    default_message = "No patients waiting in the queue"


# Collaborators
class ServiceUnavailableError(SchedulingError):
    category = ErrorCategory.SERVICE_UNAVAILABLE
    error_code = "DIRECTORY_UNAVAILABLE"
    default_message = "Directory service is unavailable"
