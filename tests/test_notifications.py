from __future__ import annotations

import json
from datetime import timedelta

import fakeredis
import httpx
import pytest

from subscriptions.errors import NotificationDeliveryFailed
from subscriptions.ledger import NotificationLedger
from subscriptions.models import NotificationEvent, NotificationTrigger, SubscriptionStatus
from subscriptions.notifications import (
    LoggingNotificationSink,
    WebhookNotificationSink,
    build_sink,
    dispatch_notification,
)


@pytest.fixture
def event(t0):
    return NotificationEvent(
        tenant_id="clinic-1",
        trigger=NotificationTrigger.GRACE_STARTED,
        occurred_at=t0,
        status=SubscriptionStatus.GRACE,
        period_end=t0,
        days_remaining=0,
    )


def test_webhook_posts_event_payload(event):
    received = []

    def _handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(204)

    sink = WebhookNotificationSink(
        "https://hooks.example.test/subscriptions",
        client=httpx.Client(transport=httpx.MockTransport(_handler)),
    )

    assert dispatch_notification(sink, event) is True
    assert received == [event.to_payload()]
    assert received[0]["trigger"] == "grace_started"


def test_webhook_error_status_is_reported_not_raised(event):
    sink = WebhookNotificationSink(
        "https://hooks.example.test/subscriptions",
        client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503))),
    )

    with pytest.raises(NotificationDeliveryFailed):
        sink.send(event)
    assert dispatch_notification(sink, event) is False


def test_build_sink_defaults_to_logging():
    assert isinstance(build_sink(None), LoggingNotificationSink)
    assert isinstance(build_sink("https://hooks.example.test/x"), WebhookNotificationSink)


def test_logging_sink_logs_payload(event, caplog):
    with caplog.at_level("INFO", logger="subscriptions.notifications"):
        LoggingNotificationSink().send(event)

    assert "Subscription notification" in caplog.text


def test_ledger_claims_once_with_redis(t0):
    ledger = NotificationLedger.with_client(fakeredis.FakeRedis(decode_responses=True))
    key = NotificationLedger.key("clinic-1", "expiring_soon", 7, t0)

    assert ledger.claim(key) is True
    assert ledger.claim(key) is False
    ledger.release(key)
    assert ledger.claim(key) is True


def test_ledger_in_memory_fallback_expires_claims(t0):
    ledger = NotificationLedger(redis_url="", ttl_seconds=-1)
    key = NotificationLedger.key("clinic-1", "expiring_soon", 3, t0)

    assert ledger.claim(key) is True
    assert ledger.claim(key) is True


def test_ledger_key_is_scoped_to_period(t0):
    first = NotificationLedger.key("clinic-1", "expiring_soon", 7, t0)
    renewed = NotificationLedger.key("clinic-1", "expiring_soon", 7, t0 + timedelta(days=30))

    assert first != renewed
    with pytest.raises(ValueError):
        NotificationLedger.key(" ", "expiring_soon", 7, t0)


def test_unreachable_redis_falls_back_to_memory(t0):
    ledger = NotificationLedger(redis_url="redis://127.0.0.1:1/0")
    key = NotificationLedger.key("clinic-1", "locked_out", 0, t0)

    assert ledger.claim(key) is True
    assert ledger.claim(key) is False
