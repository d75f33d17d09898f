"""
Notification sinks for subscription expiry alerts.

Delivery is fire-and-forget: dispatch_notification() logs a failed delivery
and returns False, it never raises and never rolls back the transition that
produced the event.
"""

import logging
from typing import Callable, List, Optional, Protocol

import httpx

from .errors import NotificationDeliveryFailed
from .models import NotificationEvent

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 5.0


class NotificationSink(Protocol):
    def send(self, event: NotificationEvent) -> None:
        ...


class LoggingNotificationSink:
    """Default sink when no webhook is configured."""

    def send(self, event: NotificationEvent) -> None:
        logger.info("Subscription notification", extra=event.to_payload())


class CollectingNotificationSink:
    """Keeps events in memory; useful for admin dashboards and tests."""

    def __init__(self) -> None:
        self.events: List[NotificationEvent] = []

    def send(self, event: NotificationEvent) -> None:
        self.events.append(event)


class CallableNotificationSink:
    def __init__(self, callback: Callable[[NotificationEvent], None]) -> None:
        self._callback = callback

    def send(self, event: NotificationEvent) -> None:
        self._callback(event)


class WebhookNotificationSink:
    """POSTs the event payload as JSON to an operator-configured URL."""

    def __init__(
        self,
        url: str,
        *,
        client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
    ) -> None:
        if not url:
            raise ValueError("webhook url is required")
        self._url = url
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, event: NotificationEvent) -> None:
        try:
            response = self._client.post(self._url, json=event.to_payload())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationDeliveryFailed(event.tenant_id, event.trigger.value, exc) from exc

    def close(self) -> None:
        self._client.close()


def build_sink(webhook_url: Optional[str]) -> NotificationSink:
    if webhook_url:
        return WebhookNotificationSink(webhook_url)
    return LoggingNotificationSink()


def dispatch_notification(sink: NotificationSink, event: NotificationEvent) -> bool:
    """Send an event; on any sink failure log it and report False."""
    try:
        sink.send(event)
        return True
    except NotificationDeliveryFailed as exc:
        logger.error(
            "Notification delivery failed",
            extra={"tenant_id": event.tenant_id, "trigger": event.trigger.value, "error": str(exc.cause)},
        )
    except Exception as exc:
        logger.error(
            "Notification sink raised unexpectedly",
            extra={"tenant_id": event.tenant_id, "trigger": event.trigger.value, "error": str(exc)},
        )
    return False
