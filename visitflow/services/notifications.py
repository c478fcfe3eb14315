from typing import Any, Dict, Optional
import logging

import httpx

from .events import DomainEvent, EventBus

logger = logging.getLogger(__name__)

class WebhookNotifier:
    """Delivers patient and staff notifications to the notification service.

    Without a base URL delivery is disabled and messages are only logged.
    """
    
    def __init__(
        self,
        base_url: Optional[str],
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None
    ):
        if client is None and base_url:
            client = httpx.Client(base_url=base_url, timeout=timeout)
        self._client = client
    
    def send_reminder(self, appointment: Dict[str, Any]) -> None:
        self._post("/reminders", appointment)
    
    def notify_queue_called(self, queue_entry: Dict[str, Any]) -> None:
        self._post("/queue-called", queue_entry)
    
    def notify_appointment_booked(self, appointment: Dict[str, Any]) -> None:
        self._post("/appointment-booked", appointment)
    
    def close(self) -> None:
        if self._client is not None:
            self._client.close()
    
    def _post(self, path: str, payload: Dict[str, Any]) -> None:
        if self._client is None:
            logger.info(f"Notification delivery disabled, dropping {path}")
            return
        response = self._client.post(path, json=payload)
        response.raise_for_status()

class NotificationDispatcher:
    """Turns committed scheduling events into notifications."""
    
    def __init__(self, notifier: WebhookNotifier):
        self.notifier = notifier
    
    def register(self, bus: EventBus) -> None:
        bus.subscribe("AppointmentBooked", self.on_appointment_booked)
        bus.subscribe("QueueEntryCalled", self.on_queue_called)
        bus.subscribe("QueueEntryRecalled", self.on_queue_called)
    
    def on_appointment_booked(self, domain_event: DomainEvent) -> None:
        self.notifier.notify_appointment_booked(
            {"appointment_id": domain_event.entity_id, **domain_event.metadata}
        )
    
    def on_queue_called(self, domain_event: DomainEvent) -> None:
        self.notifier.notify_queue_called(
            {"queue_id": domain_event.entity_id, **domain_event.metadata}
        )
