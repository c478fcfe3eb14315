from datetime import datetime
from typing import Any, Dict, Optional
import logging

from pydantic import BaseModel, Field

from .events import DomainEvent, EventBus

logger = logging.getLogger(__name__)

class AuditRecord(BaseModel):
    action: str
    actor_id: Optional[str] = None
    entity_id: str
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)
    
    @classmethod
    def from_event(cls, domain_event: DomainEvent) -> "AuditRecord":
        return cls(
            action=domain_event.name,
            actor_id=domain_event.actor_id,
            entity_id=domain_event.entity_id,
            timestamp=domain_event.timestamp,
            metadata=domain_event.metadata,
        )

class RedisAuditSink:
    """Appends audit records to a Redis stream."""
    
    def __init__(self, redis_client, stream: str):
        self.redis = redis_client
        self.stream = stream
    
    def write(self, record: AuditRecord) -> None:
        self.redis.xadd(self.stream, {"record": record.model_dump_json()})

class AuditRecorder:
    """Writes one audit record for every committed domain event."""
    
    def __init__(self, sink):
        self.sink = sink
    
    def register(self, bus: EventBus) -> None:
        bus.subscribe(EventBus.ALL, self.record)
    
    def record(self, domain_event: DomainEvent) -> None:
        self.sink.write(AuditRecord.from_event(domain_event))
        logger.debug(f"Audited {domain_event.name} on {domain_event.entity_id}")
