from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from typing import List

from ..core.clock import Clock
from ..core.config import settings
from ..core.database import get_db, get_redis
from ..core.security import (
    security, verify_token, AuthenticationError,
    AuthorizationError, UserRole, TokenPayload, Actor
)
from ..services.appointment_service import AppointmentService
from ..services.audit import AuditRecorder, RedisAuditSink
from ..services.directory import DirectoryClient
from ..services.events import EventBus
from ..services.notifications import NotificationDispatcher, WebhookNotifier
from ..services.queue_service import QueueService
from ..services.wait_time import WaitTimeEstimator

async def get_current_user_token(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """Extract and verify JWT token from Authorization header."""
    token = credentials.credentials

    # Verify token
    token_payload = verify_token(token)
    if not token_payload:
        raise AuthenticationError("Invalid or expired token")

    # Check if token is access token
    if token_payload.token_type != "access":
        raise AuthenticationError("Invalid token type")

    return token_payload

async def get_current_actor(
    token_payload: TokenPayload = Depends(get_current_user_token)
) -> Actor:
    """Identify the caller from the verified token."""
    if not token_payload.sub:
        raise AuthenticationError("Invalid token payload")

    try:
        role = UserRole(token_payload.role)
    except ValueError:
        raise AuthenticationError("Unknown role in token") from None

    return Actor(id=token_payload.sub, role=role)

# Role-based access control dependencies
def require_role(allowed_roles: List[UserRole]):
    """Create a dependency that requires specific user roles."""
    async def role_checker(
        actor: Actor = Depends(get_current_actor)
    ) -> Actor:
        if actor.role not in allowed_roles and actor.role != UserRole.ADMIN:
            raise AuthorizationError(
                f"Access denied. Required roles: {[role.value for role in allowed_roles]}"
            )
        return actor

    return role_checker

FRONT_DESK = [UserRole.RECEPTIONIST, UserRole.NURSE, UserRole.DOCTOR]
CLINICAL = [UserRole.DOCTOR, UserRole.NURSE]
BOOKING = [UserRole.RECEPTIONIST, UserRole.NURSE, UserRole.DOCTOR, UserRole.PATIENT]

# Collaborators
@lru_cache()
def get_directory() -> DirectoryClient:
    """Directory client shared by all requests."""
    return DirectoryClient(settings.DIRECTORY_URL, timeout=settings.DIRECTORY_TIMEOUT)

@lru_cache()
def get_notifier() -> WebhookNotifier:
    return WebhookNotifier(settings.NOTIFICATION_URL, timeout=settings.NOTIFICATION_TIMEOUT)

@lru_cache()
def get_event_bus() -> EventBus:
    """Event bus with audit and notification subscribers attached."""
    executor = None
    if settings.EVENT_WORKERS > 0:
        executor = ThreadPoolExecutor(
            max_workers=settings.EVENT_WORKERS,
            thread_name_prefix="visitflow-events"
        )
    bus = EventBus(executor=executor)
    AuditRecorder(RedisAuditSink(get_redis(), settings.AUDIT_STREAM)).register(bus)
    NotificationDispatcher(get_notifier()).register(bus)
    return bus

@lru_cache()
def get_clock() -> Clock:
    return Clock(settings.TIMEZONE)

# Services
def get_appointment_service(
    db: Session = Depends(get_db),
    directory = Depends(get_directory),
    events: EventBus = Depends(get_event_bus),
    clock: Clock = Depends(get_clock),
    notifier: WebhookNotifier = Depends(get_notifier)
) -> AppointmentService:
    return AppointmentService(db, directory, events, clock, notifier)

def get_queue_service(
    appointments: AppointmentService = Depends(get_appointment_service)
) -> QueueService:
    return QueueService(
        appointments.db,
        appointments.directory,
        appointments.events,
        appointments.clock,
        lifecycle=appointments
    )

def get_wait_time_estimator(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
) -> WaitTimeEstimator:
    return WaitTimeEstimator(db, clock)
