"""
Change notifications for favourited events.

The engine only reports *that* a canonical event changed in a way its
followers care about. Audience selection and delivery belong to the
notification service on the other end of ``ChangeNotifier``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from event_catalog.configs.settings import Settings, get_settings
from event_catalog.ingestion.errors import NotificationDeliveryError
from event_catalog.schemas.changes import EventChanges
from event_catalog.schemas.event import CanonicalEvent

logger = logging.getLogger(__name__)

NOTIFICATION_TYPE = "favourite_update"


def build_notification(event: CanonicalEvent, changes: EventChanges) -> Dict[str, Any]:
    """
    Build the favourite-update payload for a changed event.

    A price drop takes precedence over a textual update.
    """
    if changes.price_dropped and changes.price_drop:
        title = "Price Drop on Favourited Event"
        message = f"{event.title} is now ${changes.price_drop:.2f} cheaper!"
        relevance = 1.0
    elif changes.significant_update:
        title = "Update on Favourited Event"
        message = f"{event.title}: {changes.significant_update}"
        relevance = 0.8
    else:
        raise ValueError(f"No notifiable changes for event {event.event_id}")

    return {
        "type": NOTIFICATION_TYPE,
        "eventId": event.event_id,
        "title": title,
        "message": message,
        "relevanceScore": relevance,
        "changes": changes.model_dump(mode="json"),
        "event": {
            "title": event.title,
            "startDate": event.start_date.isoformat(),
            "venue": event.venue.name,
            "sources": list(event.sources),
        },
    }


class ChangeNotifier(ABC):
    """Receives at most one call per merged or refreshed event per batch."""

    @abstractmethod
    def on_significant_change(self, event: CanonicalEvent, changes: EventChanges) -> None:
        """Report a price drop or significant update on ``event``."""

    def close(self) -> None:
        """Release any held resources."""


class LoggingNotifier(ChangeNotifier):
    """Write notifications to the log instead of delivering them."""

    def __init__(self, level: int = logging.INFO):
        self.level = level
        self.sent: list[Dict[str, Any]] = []

    def on_significant_change(self, event: CanonicalEvent, changes: EventChanges) -> None:
        payload = build_notification(event, changes)
        self.sent.append(payload)
        logger.log(
            self.level,
            f"[{payload['type']}] {payload['title']}: {payload['message']}",
            extra={"event_id": event.event_id, "payload": payload},
        )


class WebhookNotifier(ChangeNotifier):
    """POST each notification as JSON to the notification service."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "WebhookNotifier":
        settings = settings or get_settings()
        if settings.NOTIFY_WEBHOOK_URL is None:
            raise ValueError("NOTIFY_WEBHOOK_URL is not configured")
        return cls(
            settings.NOTIFY_WEBHOOK_URL.get_secret_value(),
            timeout=settings.NOTIFY_TIMEOUT_SECONDS,
        )

    def on_significant_change(self, event: CanonicalEvent, changes: EventChanges) -> None:
        payload = build_notification(event, changes)
        try:
            response = self._client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(
                f"Webhook delivery failed for {event.event_id}: {e}"
            ) from e
        logger.debug(f"Delivered {payload['type']} for {event.event_id}")

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
