import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from monitoring.alerts import AlertWebhook


logger = logging.getLogger(__name__)


class NotificationLevel(Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class NotificationEvent:
    event_type: str
    level: NotificationLevel
    title: str
    message: str
    market: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    dedupe_key: Optional[str] = None
    source_service: str = 'trade-executor'


def minute_key(now: Optional[datetime] = None) -> str:
    moment = now or datetime.now(timezone.utc)
    return moment.strftime('%Y%m%d%H%M')


class Notifier:
    """Records notification events for delivery and mirrors warnings to the alert webhook.

    Delivery itself belongs to a separate service that drains ``notification_events``.
    A duplicate ``dedupe_key`` is reported by the store and ignored here.
    """

    def __init__(self, store, webhook: Optional[AlertWebhook] = None):
        self.store = store
        self.webhook = webhook

    async def send(self, event: NotificationEvent) -> bool:
        inserted = await self.store.insert_notification(event)
        if not inserted:
            logger.debug("Notification %s deduplicated (%s)", event.event_type, event.dedupe_key)
            return False
        log_fn = logger.error if event.level is NotificationLevel.ERROR else logger.info
        log_fn("[%s] %s: %s", event.event_type, event.title, event.message)
        if self.webhook is not None and event.level is not NotificationLevel.INFO:
            await self.webhook.send_alert(
                event.event_type,
                f"{event.title}: {event.message}",
                'critical' if event.level is NotificationLevel.ERROR else 'warning',
                json.loads(json.dumps(event.payload, default=str)),
            )
        return True
