from __future__ import annotations

import threading
from datetime import timedelta

import fakeredis
import pytest

from subscriptions.errors import NotificationDeliveryFailed, VersionConflictError
from subscriptions.ledger import NotificationLedger
from subscriptions.models import LifecycleEvent, NotificationTrigger, SubscriptionStatus
from subscriptions.notifications import CallableNotificationSink, CollectingNotificationSink
from subscriptions.renewal import RenewalWorkflow
from subscriptions.scanner import SCANNER_ACTOR_ID, ExpiryScanner, days_remaining
from subscriptions.store import InMemorySubscriptionStore


class _RacingStore(InMemorySubscriptionStore):
    """Simulates a renewal committing between the scanner's read and its write."""

    def compare_and_swap(self, tenant_id, expected_version, new_record, history=None):
        current = self.get(tenant_id)
        raise VersionConflictError(tenant_id, expected_version, current.version + 1)


@pytest.fixture
def sink():
    return CollectingNotificationSink()


@pytest.fixture
def ledger():
    return NotificationLedger(redis_url="")


@pytest.fixture
def scanner(store, sink, settings, ledger, t0):
    return ExpiryScanner(store, sink, settings=settings, ledger=ledger, clock=lambda: t0)


def _triggers(sink):
    return [(e.tenant_id, e.trigger) for e in sink.events]


def test_days_remaining_rounds_up_and_floors_at_zero(t0):
    assert days_remaining(t0 + timedelta(hours=1), t0) == 1
    assert days_remaining(t0 + timedelta(days=3), t0) == 3
    assert days_remaining(t0 - timedelta(days=1), t0) == 0


def test_trial_expires_without_grace(scanner, store, sink, catalog, settings, t0):
    RenewalWorkflow(store, catalog, settings=settings).onboard("clinic-1", "basic", now=t0)

    stats = scanner.run_once(now=t0 + timedelta(days=14, seconds=1))

    record = store.get("clinic-1")
    assert record.status == SubscriptionStatus.EXPIRED
    assert record.grace_end is None
    assert stats.transitions == 1
    assert _triggers(sink) == [("clinic-1", NotificationTrigger.LOCKED_OUT)]


def test_active_moves_to_grace_then_expired(scanner, store, sink, make_subscription, t0):
    store.create(make_subscription(period_end=t0))

    scanner.run_once(now=t0 + timedelta(days=1))
    in_grace = store.get("clinic-1")
    assert in_grace.status == SubscriptionStatus.GRACE
    assert in_grace.grace_end == t0 + timedelta(days=5)

    scanner.run_once(now=t0 + timedelta(days=5, seconds=1))
    assert store.get("clinic-1").status == SubscriptionStatus.EXPIRED

    assert _triggers(sink) == [
        ("clinic-1", NotificationTrigger.GRACE_STARTED),
        ("clinic-1", NotificationTrigger.LOCKED_OUT),
    ]
    history = store.list_history("clinic-1")
    assert [h.event for h in history] == [LifecycleEvent.TIME_PASSES, LifecycleEvent.TIME_PASSES]
    assert history[0].actor_id == SCANNER_ACTOR_ID


def test_repeated_scans_are_idempotent(scanner, store, sink, make_subscription, t0):
    store.create(make_subscription(period_end=t0))
    at = t0 + timedelta(days=2)

    scanner.run_once(now=at)
    second = scanner.run_once(now=at)

    assert second.transitions == 0
    assert store.get("clinic-1").version == 2
    assert len(sink.events) == 1


def test_expired_records_are_not_rescanned(scanner, store, make_subscription, t0):
    store.create(make_subscription(period_end=t0))
    scanner.run_once(now=t0 + timedelta(days=10))

    stats = scanner.run_once(now=t0 + timedelta(days=11))

    assert stats.candidates == 0


def test_expiring_soon_warning_sent_once_per_window(scanner, store, sink, make_subscription, t0):
    store.create(make_subscription(period_end=t0 + timedelta(days=6)))

    scanner.run_once(now=t0)
    scanner.run_once(now=t0 + timedelta(hours=1))
    scanner.run_once(now=t0 + timedelta(days=4))

    warnings = [e for e in sink.events if e.trigger == NotificationTrigger.EXPIRING_SOON]
    assert [e.days_remaining for e in warnings] == [6, 2]
    record = store.get("clinic-1")
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.version == 1


def test_no_warning_outside_windows(scanner, store, sink, make_subscription, t0):
    store.create(make_subscription(period_end=t0 + timedelta(days=8)))

    stats = scanner.run_once(now=t0)

    assert stats.candidates == 0
    assert sink.events == []


def test_warning_dedup_survives_across_scanner_instances(store, settings, make_subscription, t0):
    client = fakeredis.FakeRedis(decode_responses=True)
    store.create(make_subscription(period_end=t0 + timedelta(days=2)))
    first_sink, second_sink = CollectingNotificationSink(), CollectingNotificationSink()

    ExpiryScanner(store, first_sink, settings=settings, ledger=NotificationLedger.with_client(client)).run_once(now=t0)
    ExpiryScanner(store, second_sink, settings=settings, ledger=NotificationLedger.with_client(client)).run_once(now=t0)

    assert len(first_sink.events) == 1
    assert second_sink.events == []
    assert len(client.keys("subscriptions:notified:v1:*")) == 1


def test_failed_warning_is_retried_next_scan(store, settings, ledger, make_subscription, t0):
    store.create(make_subscription(period_end=t0 + timedelta(days=2)))
    delivered = []
    fail = {"on": True}

    def _deliver(event):
        if fail["on"]:
            raise NotificationDeliveryFailed(event.tenant_id, event.trigger.value, ConnectionError("down"))
        delivered.append(event)

    scanner = ExpiryScanner(store, CallableNotificationSink(_deliver), settings=settings, ledger=ledger)

    first = scanner.run_once(now=t0)
    fail["on"] = False
    second = scanner.run_once(now=t0 + timedelta(minutes=5))

    assert first.notifications_failed == 1
    assert first.warnings_sent == 0
    assert second.warnings_sent == 1
    assert len(delivered) == 1


def test_notification_failure_keeps_transition(store, settings, ledger, make_subscription, t0):
    def _broken(event):
        raise RuntimeError("sink bug")

    store.create(make_subscription(period_end=t0))
    scanner = ExpiryScanner(store, CallableNotificationSink(_broken), settings=settings, ledger=ledger)

    stats = scanner.run_once(now=t0 + timedelta(days=1))

    assert stats.transitions == 1
    assert stats.notifications_failed == 1
    assert store.get("clinic-1").status == SubscriptionStatus.GRACE


def test_lost_compare_and_swap_skips_tenant(settings, sink, ledger, make_subscription, t0):
    store = _RacingStore()
    store.create(make_subscription(period_end=t0))
    scanner = ExpiryScanner(store, sink, settings=settings, ledger=ledger)

    stats = scanner.run_once(now=t0 + timedelta(days=1))

    assert stats.conflicts_skipped == 1
    assert stats.transitions == 0
    assert stats.errors == 0
    assert sink.events == []


def test_pages_through_all_candidates(scanner, store, make_subscription, t0):
    for i in range(5):
        store.create(make_subscription(f"c-{i}", period_end=t0 - timedelta(hours=i + 1)))

    stats = scanner.run_once(now=t0)

    assert stats.transitions == 5
    assert all(r.status == SubscriptionStatus.GRACE for r in store.iter_all())


def test_stop_event_halts_between_tenants(scanner, store, make_subscription, t0):
    store.create(make_subscription("c-a", period_end=t0 - timedelta(hours=2)))
    store.create(make_subscription("c-b", period_end=t0 - timedelta(hours=1)))
    stop = threading.Event()
    original = scanner.scan_tenant

    def _scan_then_stop(record, now, stats):
        original(record, now, stats)
        stop.set()

    scanner.scan_tenant = _scan_then_stop
    stats = scanner.run_once(now=t0, stop_event=stop)

    assert stats.stopped_early is True
    assert stats.transitions == 1
    assert store.get("c-a").status == SubscriptionStatus.GRACE
    assert store.get("c-b").status == SubscriptionStatus.ACTIVE

    resumed = scanner.run_once(now=t0, start_after=stats.last_cursor)
    assert resumed.transitions == 1
    assert store.get("c-b").status == SubscriptionStatus.GRACE


def test_run_forever_exits_when_stopped(scanner):
    stop = threading.Event()
    stop.set()

    scanner.run_forever(interval_seconds=1, stop_event=stop)
