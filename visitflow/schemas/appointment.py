from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from ..models.appointment import AppointmentStatus, CancelRequestStatus
from .queue import QueueEntryResponse

class AppointmentCreate(BaseModel):
    patient_id: str = Field(..., min_length=1, max_length=64)
    doctor_id: str = Field(..., min_length=1, max_length=64)
    appointment_date: datetime
    duration_minutes: Optional[int] = None
    reason: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)

class AppointmentReschedule(BaseModel):
    appointment_date: datetime
    reason: Optional[str] = Field(None, max_length=500)

class AppointmentCancel(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)

class AppointmentComplete(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)

class AppointmentNoShow(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class CancelRequestCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)

class CancelRequestReview(BaseModel):
    approved: bool
    notes: Optional[str] = Field(None, max_length=1000)

class AppointmentStatusUpdate(BaseModel):
    status: AppointmentStatus
    reason: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)

class CancellationInfo(BaseModel):
    by: Optional[str] = None
    at: Optional[datetime] = None
    reason: Optional[str] = None
    notes: Optional[str] = None

class CancelRequestInfo(BaseModel):
    status: CancelRequestStatus
    by: Optional[str] = None
    at: Optional[datetime] = None
    reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None

class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    appointment_id: str
    patient_id: str
    doctor_id: str
    appointment_date: datetime
    end_time: datetime
    duration_minutes: int
    status: AppointmentStatus
    reason: Optional[str] = None
    notes: Optional[str] = None
    cancellation: Optional[CancellationInfo] = None
    cancel_request: Optional[CancelRequestInfo] = None
    checked_in_at: Optional[datetime] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reminder_sent: bool = False
    created_by: Optional[str] = None

class AppointmentFilters(BaseModel):
    doctor_id: Optional[str] = None
    patient_id: Optional[str] = None
    status: Optional[AppointmentStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    skip: int = Field(0, ge=0)
    limit: int = Field(10, ge=1, le=100)

class AppointmentListResponse(BaseModel):
    items: List[AppointmentResponse]
    total: int
    skip: int
    limit: int

class Slot(BaseModel):
    start: datetime
    end: datetime
    available: bool

class AvailableSlotsResponse(BaseModel):
    doctor_id: str
    day: date
    slots: List[Slot]

class CheckInResponse(BaseModel):
    appointment: AppointmentResponse
    queue_entry: QueueEntryResponse

class ReminderDispatchResult(BaseModel):
    total: int
    successful: int
    failed: List[str] = Field(default_factory=list)

class AppointmentStats(BaseModel):
    total: int
    today: int
    by_status: Dict[str, int] = Field(default_factory=dict)
