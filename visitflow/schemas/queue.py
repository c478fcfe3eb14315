from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from typing import Dict, List, Optional

from ..models.queue import QueueEntryType, QueueStatus

class AddToQueueRequest(BaseModel):
    appointment_id: str = Field(..., min_length=1, max_length=40)

class WalkInRequest(BaseModel):
    patient_id: str = Field(..., min_length=1, max_length=64)
    doctor_id: str = Field(..., min_length=1, max_length=64)
    reason: Optional[str] = Field(None, max_length=500)

class SkipRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class CompleteRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)

class QueueEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    queue_id: str
    appointment_id: Optional[str] = None
    patient_id: str
    doctor_id: str
    department: Optional[str] = None
    queue_date: date
    queue_number: int
    type: QueueEntryType
    status: QueueStatus
    reason: Optional[str] = None
    notes: Optional[str] = None
    queued_at: datetime
    called_at: Optional[datetime] = None
    called_by: Optional[str] = None
    skipped_at: Optional[datetime] = None
    skipped_by: Optional[str] = None
    skip_reason: Optional[str] = None
    last_recalled_at: Optional[datetime] = None
    last_recalled_by: Optional[str] = None
    recall_count: int = 0
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None

class QueueFilters(BaseModel):
    doctor_id: Optional[str] = None
    department: Optional[str] = None
    queue_date: Optional[date] = None
    status: Optional[QueueStatus] = None
    type: Optional[QueueEntryType] = None
    skip: int = Field(0, ge=0)
    limit: int = Field(20, ge=1, le=100)

class QueueListResponse(BaseModel):
    entries: List[QueueEntryResponse]
    total: int
    skip: int
    limit: int
    summary: Dict[str, int]

class QueueStat(BaseModel):
    doctor_id: str
    status: QueueStatus
    count: int

class QueueStatsResponse(BaseModel):
    stats: List[QueueStat]
    total: int

class WaitTimeEstimate(BaseModel):
    doctor_id: str
    waiting_count: int
    average_consultation_minutes: float
    estimated_minutes: int
