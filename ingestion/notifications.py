"""
Notification port.

The retry subsystem emits events when an entity lands in the dead-letter
queue and when alert thresholds are breached. Delivery formatting
(email, chat) lives outside this project; a webhook notifier posts the raw
event as JSON.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional
import logging

import httpx
from pydantic import BaseModel, Field

from core.config import settings

logger = logging.getLogger(__name__)


class NotificationEvent(BaseModel):
    """Alert payload"""
    event_type: str  # dlq_entry_created | alert_threshold_breached
    severity: str = "warning"
    organization_id: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Notifier(ABC):
    @abstractmethod
    async def notify(self, event: NotificationEvent) -> bool:
        """Deliver an event; return False when delivery failed."""


class LoggingNotifier(Notifier):
    """Writes events to the application log."""

    async def notify(self, event: NotificationEvent) -> bool:
        level = logging.ERROR if event.severity in ("error", "critical") else logging.WARNING
        logger.log(level, f"[{event.event_type}] {event.organization_id}: {event.message}")
        return True


class WebhookNotifier(Notifier):
    """POSTs events as JSON to a webhook endpoint."""

    def __init__(self, url: str, timeout: Optional[float] = None, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS
        self._client = client

    async def notify(self, event: NotificationEvent) -> bool:
        payload = event.model_dump(mode="json")
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery failed for {event.event_type}: {e}")
            return False
        return True


def build_notifier() -> Notifier:
    """Webhook notifier when configured, logging otherwise."""
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotifier(settings.NOTIFICATION_WEBHOOK_URL)
    return LoggingNotifier()
