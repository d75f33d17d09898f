from __future__ import annotations

from datetime import timedelta

import pytest

from subscriptions.errors import SubscriptionNotFoundError
from subscriptions.models import SubscriptionStatus
from subscriptions.service import SubscriptionQueryService


@pytest.fixture
def queries(store, catalog, settings, t0):
    return SubscriptionQueryService(store, catalog, settings=settings, clock=lambda: t0)


def test_status_is_derived_at_read_time(queries, store, make_subscription, t0):
    store.create(make_subscription(period_end=t0 - timedelta(days=1)))

    snapshot = queries.get_status("clinic-1")

    assert snapshot.status == SubscriptionStatus.GRACE
    assert snapshot.grace_end == t0 + timedelta(days=4)
    assert store.get("clinic-1").status == SubscriptionStatus.ACTIVE


def test_status_for_unknown_tenant_raises(queries):
    with pytest.raises(SubscriptionNotFoundError):
        queries.get_status("nobody")


def test_validation_without_subscription(queries):
    result = queries.validate("nobody")

    assert result.is_valid is False
    assert result.status is None
    assert result.message == "No active subscription found"


def test_validation_flags_expiring_soon(queries, store, make_subscription, t0):
    store.create(make_subscription(period_end=t0 + timedelta(days=2, hours=1)))

    result = queries.validate("clinic-1")

    assert result.is_valid is True
    assert result.is_expiring_soon is True
    assert result.days_remaining == 3
    assert result.plan_name == "Pro"
    assert result.message == "Subscription expires in 3 days"


def test_validation_of_trial(queries, store, make_subscription, t0):
    store.create(make_subscription(
        plan_id="basic", period_end=t0 + timedelta(days=10), is_trial=True, status=SubscriptionStatus.TRIALING,
    ))

    result = queries.validate("clinic-1")

    assert result.is_trial is True
    assert result.message == "Trial period - 10 days remaining"


def test_validation_of_expired(queries, store, make_subscription, t0):
    store.create(make_subscription(period_end=t0 - timedelta(days=20)))

    result = queries.validate("clinic-1")

    assert result.is_valid is False
    assert result.status == SubscriptionStatus.EXPIRED
    assert result.days_remaining == 0


def test_expiring_soon_lists_active_and_trialing_only(queries, store, make_subscription, t0):
    store.create(make_subscription("c-urgent", period_end=t0 + timedelta(days=2)))
    store.create(make_subscription("c-later", period_end=t0 + timedelta(days=6)))
    store.create(make_subscription("c-grace", period_end=t0 - timedelta(days=1)))
    store.create(make_subscription("c-far", period_end=t0 + timedelta(days=20)))

    items = queries.list_expiring_soon(7)

    assert [i.tenant_id for i in items] == ["c-urgent", "c-later"]
    assert [i.urgent for i in items] == [True, False]


def test_expiring_soon_requires_positive_days(queries):
    with pytest.raises(ValueError):
        queries.list_expiring_soon(0)


def test_stats_count_derived_statuses_and_active_revenue(queries, store, make_subscription, t0):
    store.create(make_subscription("c-active", period_end=t0 + timedelta(days=20)))
    store.create(make_subscription("c-soon", period_end=t0 + timedelta(days=2)))
    store.create(make_subscription(
        "c-trial", plan_id="basic", period_end=t0 + timedelta(days=10),
        is_trial=True, status=SubscriptionStatus.TRIALING,
    ))
    store.create(make_subscription("c-expired", period_end=t0 - timedelta(days=30)))
    store.create(make_subscription("c-cancelled", cancelled_at=t0 - timedelta(days=1)))

    stats = queries.get_stats()

    assert stats.total_subscriptions == 5
    assert stats.by_status["active"] == 2
    assert stats.by_status["trialing"] == 1
    assert stats.by_status["expired"] == 1
    assert stats.by_status["cancelled"] == 1
    assert stats.expiring_soon == 1
    assert stats.revenue_monthly_cents == 2 * 9900
    assert stats.by_plan == {"pro": 2, "basic": 1}


def test_stats_by_plan_counts_every_entitled_tenant(queries, store, make_subscription, t0):
    store.create(make_subscription("c-active", period_end=t0 + timedelta(days=20)))
    store.create(make_subscription("c-grace", period_end=t0 - timedelta(days=1)))
    store.create(make_subscription("c-comp", plan_id="basic", period_end=t0 - timedelta(days=60), overridden=True))
    store.create(make_subscription("c-expired", plan_id="basic", period_end=t0 - timedelta(days=30)))

    stats = queries.get_stats()

    assert stats.by_status["grace"] == 1
    assert stats.by_status["overridden"] == 1
    assert stats.by_plan == {"pro": 2, "basic": 1}
    assert stats.revenue_monthly_cents == 9900


def test_history_for_unknown_tenant_raises(queries):
    with pytest.raises(SubscriptionNotFoundError):
        queries.get_history("nobody")
