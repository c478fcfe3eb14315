"""
In-process domain events.

Services stage events on the SQLAlchemy session while they work. Staged
events are handed to the bus only after the session commits and are
dropped on rollback, so subscribers never see a change that did not
persist. Subscriber failures are logged and never reach the caller.
"""
from collections import defaultdict
from concurrent.futures import Executor
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from pydantic import BaseModel, Field
from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

PENDING_EVENTS_KEY = "visitflow.pending_events"

class DomainEvent(BaseModel):
    name: str
    actor_id: Optional[str] = None
    entity_id: str
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

Handler = Callable[[DomainEvent], None]

class EventBus:
    ALL = "*"
    
    def __init__(self, executor: Optional[Executor] = None):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._executor = executor
    
    def subscribe(self, name: str, handler: Handler) -> None:
        """Register ``handler`` for events called ``name`` (``ALL`` for every event)."""
        self._handlers[name].append(handler)
    
    def publish(self, domain_event: DomainEvent) -> None:
        handlers = self._handlers.get(domain_event.name, []) + self._handlers.get(self.ALL, [])
        for handler in handlers:
            if self._executor is not None:
                self._executor.submit(self._deliver, handler, domain_event)
            else:
                self._deliver(handler, domain_event)
    
    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
    
    def _deliver(self, handler: Handler, domain_event: DomainEvent) -> None:
        try:
            handler(domain_event)
        except Exception:
            logger.exception(
                "Event handler %s failed for %s (%s)",
                getattr(handler, "__qualname__", handler),
                domain_event.name,
                domain_event.entity_id,
            )

def stage_event(db: Session, bus: EventBus, domain_event: DomainEvent) -> None:
    """Queue ``domain_event`` for publication when ``db`` commits."""
    db.info.setdefault(PENDING_EVENTS_KEY, []).append((bus, domain_event))

@sa_event.listens_for(Session, "after_commit")
def _publish_pending(session: Session) -> None:
    for bus, domain_event in session.info.pop(PENDING_EVENTS_KEY, []):
        bus.publish(domain_event)

@sa_event.listens_for(Session, "after_soft_rollback")
def _discard_pending(session: Session, previous_transaction) -> None:
    if not previous_transaction.nested:
        session.info.pop(PENDING_EVENTS_KEY, None)
