from fastapi import APIRouter, Depends, Query, status
from datetime import date
from typing import Optional

from ...core.security import Actor, UserRole
from ...api.deps import (
    CLINICAL, FRONT_DESK,
    get_current_actor, get_queue_service, get_wait_time_estimator, require_role
)
from ...models.queue import QueueEntryType, QueueStatus
from ...services.queue_service import QueueService
from ...services.wait_time import WaitTimeEstimator
from ...schemas.queue import (
    AddToQueueRequest, CompleteRequest, QueueEntryResponse, QueueFilters,
    QueueListResponse, QueueStatsResponse, SkipRequest, WaitTimeEstimate,
    WalkInRequest
)

router = APIRouter(prefix="/queue", tags=["Queue"])

def queue_filters(
    doctor_id: Optional[str] = None,
    department: Optional[str] = None,
    queue_date: Optional[date] = Query(None, alias="date"),
    status: Optional[QueueStatus] = None,
    type: Optional[QueueEntryType] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100)
) -> QueueFilters:
    return QueueFilters(
        doctor_id=doctor_id,
        department=department,
        queue_date=queue_date,
        status=status,
        type=type,
        skip=skip,
        limit=limit
    )

def _list_response(result, filters: QueueFilters) -> QueueListResponse:
    entries, total, summary = result
    return QueueListResponse(
        entries=[QueueEntryResponse.model_validate(entry) for entry in entries],
        total=total,
        skip=filters.skip,
        limit=filters.limit,
        summary=summary
    )

@router.get("", response_model=QueueListResponse)
def get_queue(
    filters: QueueFilters = Depends(queue_filters),
    _: Actor = Depends(require_role(FRONT_DESK)),
    service: QueueService = Depends(get_queue_service)
):
    """Queue entries in service order with a per-status summary."""
    return _list_response(service.get_queue(filters), filters)

@router.get("/today", response_model=QueueListResponse)
def get_today_queue(
    filters: QueueFilters = Depends(queue_filters),
    _: Actor = Depends(require_role(FRONT_DESK)),
    service: QueueService = Depends(get_queue_service)
):
    return _list_response(service.get_today_queue(filters), filters)

@router.get("/stats", response_model=QueueStatsResponse)
def get_queue_stats(
    filters: QueueFilters = Depends(queue_filters),
    _: Actor = Depends(require_role([UserRole.ADMIN])),
    service: QueueService = Depends(get_queue_service)
):
    stats, total = service.get_queue_stats(filters)
    return QueueStatsResponse(stats=stats, total=total)

@router.get("/current/{doctor_id}", response_model=Optional[QueueEntryResponse])
def get_current_patient(
    doctor_id: str,
    _: Actor = Depends(require_role(CLINICAL)),
    service: QueueService = Depends(get_queue_service)
):
    """The patient the doctor is attending now, or null."""
    entry = service.get_current_patient(doctor_id)
    return QueueEntryResponse.model_validate(entry) if entry else None

@router.get("/wait-time/{doctor_id}", response_model=WaitTimeEstimate)
def get_estimated_wait_time(
    doctor_id: str,
    _: Actor = Depends(get_current_actor),
    estimator: WaitTimeEstimator = Depends(get_wait_time_estimator)
):
    return estimator.estimate(doctor_id)

@router.post("/add", response_model=QueueEntryResponse, status_code=status.HTTP_201_CREATED)
def add_to_queue(
    data: AddToQueueRequest,
    actor: Actor = Depends(require_role(FRONT_DESK)),
    service: QueueService = Depends(get_queue_service)
):
    """Queue a booked appointment (check-in from the queue desk)."""
    return QueueEntryResponse.model_validate(service.add_to_queue(data.appointment_id, actor))

@router.post("/walk-in", response_model=QueueEntryResponse, status_code=status.HTTP_201_CREATED)
def add_walk_in(
    data: WalkInRequest,
    actor: Actor = Depends(require_role(FRONT_DESK)),
    service: QueueService = Depends(get_queue_service)
):
    entry = service.add_walk_in(data.patient_id, data.doctor_id, actor, data.reason)
    return QueueEntryResponse.model_validate(entry)

@router.post("/{doctor_id}/next", response_model=QueueEntryResponse)
def call_next(
    doctor_id: str,
    actor: Actor = Depends(require_role(CLINICAL)),
    service: QueueService = Depends(get_queue_service)
):
    """Call the next waiting patient for the doctor."""
    return QueueEntryResponse.model_validate(service.call_next(doctor_id, actor))

@router.patch("/{queue_id}/skip", response_model=QueueEntryResponse)
def skip_patient(
    queue_id: str,
    data: SkipRequest,
    actor: Actor = Depends(require_role(CLINICAL)),
    service: QueueService = Depends(get_queue_service)
):
    return QueueEntryResponse.model_validate(service.skip_patient(queue_id, actor, data.reason))

@router.patch("/{queue_id}/recall", response_model=QueueEntryResponse)
def recall_patient(
    queue_id: str,
    actor: Actor = Depends(require_role(CLINICAL)),
    service: QueueService = Depends(get_queue_service)
):
    return QueueEntryResponse.model_validate(service.recall_patient(queue_id, actor))

@router.patch("/{queue_id}/complete", response_model=QueueEntryResponse)
def complete_queue_entry(
    queue_id: str,
    data: CompleteRequest,
    actor: Actor = Depends(require_role([UserRole.DOCTOR])),
    service: QueueService = Depends(get_queue_service)
):
    return QueueEntryResponse.model_validate(service.complete_patient(queue_id, actor, data.notes))
