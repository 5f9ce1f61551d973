"""
Notifier
========
Publishes loop events to external sinks.

Events: wait_short, wait_long, first_failure, fix_committed, complete,
stopped. Sinks never raise into the loop; a failed webhook is logged.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from fleetloop.core.config import NOTIFY_WEBHOOK_URL

logger = logging.getLogger(__name__)

EVENT_WAIT_SHORT = "wait_short"
EVENT_WAIT_LONG = "wait_long"
EVENT_FIRST_FAILURE = "first_failure"
EVENT_FIX_COMMITTED = "fix_committed"
EVENT_COMPLETE = "complete"
EVENT_STOPPED = "stopped"


class NotificationEvent(BaseModel):
    kind: str
    project: str
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = {}


class LoggingNotifier:
    async def publish(self, event: NotificationEvent) -> None:
        logger.info("[notify:%s] %s: %s", event.kind, event.project, event.message)


class WebhookNotifier:
    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self.url = url
        self.timeout = timeout

    async def publish(self, event: NotificationEvent) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=event.model_dump(mode="json"))
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Webhook notification %s for %s failed: %s", event.kind, event.project, exc)


class Notifier:
    """Fan-out to every configured sink."""

    def __init__(self, sinks: Optional[List] = None, webhook_url: str = NOTIFY_WEBHOOK_URL) -> None:
        if sinks is None:
            sinks = [LoggingNotifier()]
            if webhook_url:
                sinks.append(WebhookNotifier(webhook_url))
        self.sinks = sinks

    async def publish(self, kind: str, project: str, message: str, **data: Any) -> NotificationEvent:
        event = NotificationEvent(kind=kind, project=project, message=message, data=data)
        for sink in self.sinks:
            await sink.publish(event)
        return event
