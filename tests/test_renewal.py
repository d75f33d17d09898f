from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from subscriptions.errors import (
    ContentionError,
    InvalidTransitionError,
    PlanNotFoundError,
    SubscriptionExistsError,
    VersionConflictError,
)
from subscriptions.models import LifecycleEvent, SubscriptionStatus
from subscriptions.renewal import RenewalRequest, RenewalWorkflow
from subscriptions.store import InMemorySubscriptionStore


class _BarrierStore(InMemorySubscriptionStore):
    """Holds the first `parties` reads until all of them have read the same version."""

    def __init__(self, parties: int = 2) -> None:
        super().__init__()
        self._barrier = threading.Barrier(parties, timeout=5)
        self._reads = 0
        self._reads_lock = threading.Lock()
        self._parties = parties

    def get(self, tenant_id):
        record = super().get(tenant_id)
        with self._reads_lock:
            self._reads += 1
            gated = self._reads <= self._parties
        if gated:
            self._barrier.wait()
        return record


class _AlwaysConflictingStore(InMemorySubscriptionStore):
    def __init__(self) -> None:
        super().__init__()
        self.attempts = 0

    def compare_and_swap(self, tenant_id, expected_version, new_record, history=None):
        self.attempts += 1
        raise VersionConflictError(tenant_id, expected_version, expected_version + 1)


@pytest.fixture
def workflow(store, catalog, settings, t0):
    return RenewalWorkflow(store, catalog, settings=settings, clock=lambda: t0)


def test_onboard_creates_trial_with_history(workflow, store, t0):
    record = workflow.onboard("clinic-1", "basic", actor_id="admin-1")

    assert record.status == SubscriptionStatus.TRIALING
    assert store.get("clinic-1") == record
    history = store.list_history("clinic-1")
    assert len(history) == 1
    assert history[0].event == LifecycleEvent.CREATED
    assert history[0].actor_id == "admin-1"


def test_onboard_twice_is_rejected(workflow):
    workflow.onboard("clinic-1", "pro")

    with pytest.raises(SubscriptionExistsError):
        workflow.onboard("clinic-1", "pro")


def test_onboard_unknown_plan(workflow):
    with pytest.raises(PlanNotFoundError):
        workflow.onboard("clinic-1", "platinum")


def test_renewal_in_grace_extends_from_now(workflow, store, make_subscription, t0):
    store.create(make_subscription(period_end=t0 - timedelta(days=2)))

    saved = workflow.renew(RenewalRequest(
        tenant_id="clinic-1",
        plan_id="pro",
        payment_reference="INV-2026-001",
        payment_method="bank_transfer",
        amount_paid_cents=9900,
        actor_id="admin-1",
    ))

    assert saved.status == SubscriptionStatus.ACTIVE
    assert saved.period_end == t0 + timedelta(days=30)
    assert saved.version == 2
    entry = store.list_history("clinic-1")[0]
    assert entry.event == LifecycleEvent.RENEWAL
    assert entry.old_status == SubscriptionStatus.GRACE
    assert entry.payment_method == "bank_transfer"
    assert entry.amount_paid_cents == 9900


def test_renewal_can_change_plan_and_period(workflow, store, make_subscription, t0):
    store.create(make_subscription(plan_id="basic", period_end=t0 - timedelta(days=40)))

    saved = workflow.renew(RenewalRequest(tenant_id="clinic-1", plan_id="pro", period_days=365))

    assert saved.plan_id == "pro"
    assert saved.period_end == t0 + timedelta(days=365)


def test_renewal_request_validation():
    with pytest.raises(ValueError):
        RenewalRequest(tenant_id="clinic-1", plan_id="pro", period_days=0)
    with pytest.raises(ValueError):
        RenewalRequest(tenant_id=" ", plan_id="pro")
    with pytest.raises(ValueError):
        RenewalRequest(tenant_id="clinic-1", plan_id="pro", amount_paid_cents=-5)


def test_confirm_payment_ends_trial(workflow, store, t0):
    workflow.onboard("clinic-1", "basic", now=t0 - timedelta(days=3))

    saved = workflow.confirm_payment("clinic-1", payment_reference="INV-9", amount_paid_cents=4900)

    assert saved.status == SubscriptionStatus.ACTIVE
    assert saved.is_trial is False
    assert saved.period_start == t0
    assert saved.period_end == t0 + timedelta(days=30)


def test_invalid_event_leaves_store_untouched(workflow, store, make_subscription):
    store.create(make_subscription())

    with pytest.raises(InvalidTransitionError):
        workflow.clear_override("clinic-1")

    assert store.get("clinic-1").version == 1
    assert store.list_history("clinic-1") == []


def test_cancel_and_override_cycle(workflow, store, make_subscription):
    store.create(make_subscription())

    assert workflow.cancel("clinic-1", actor_id="admin-1").status == SubscriptionStatus.CANCELLED
    assert workflow.set_override("clinic-1", notes="goodwill").status == SubscriptionStatus.OVERRIDDEN
    assert workflow.clear_override("clinic-1").status == SubscriptionStatus.CANCELLED
    assert store.get("clinic-1").version == 4


def test_concurrent_renewals_apply_sequentially(catalog, settings, make_subscription, t0):
    store = _BarrierStore(parties=2)
    store.create(make_subscription(period_end=t0 - timedelta(days=1)))
    workflow = RenewalWorkflow(store, catalog, settings=settings, clock=lambda: t0)
    results, errors = [], []

    def _renew():
        try:
            results.append(workflow.renew(RenewalRequest(tenant_id="clinic-1", plan_id="pro")))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_renew) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert sorted(r.version for r in results) == [2, 3]
    final = store.get("clinic-1")
    assert final.version == 3
    assert final.period_end == t0 + timedelta(days=60)
    assert [h.version for h in store.list_history("clinic-1")] == [3, 2]


def test_persistent_conflicts_raise_contention(catalog, settings, make_subscription, t0):
    store = _AlwaysConflictingStore()
    store.create(make_subscription(period_end=t0 - timedelta(days=1)))
    workflow = RenewalWorkflow(store, catalog, settings=settings, clock=lambda: t0)

    with pytest.raises(ContentionError) as exc_info:
        workflow.renew(RenewalRequest(tenant_id="clinic-1", plan_id="pro"))

    assert exc_info.value.attempts == settings.max_write_attempts
    assert store.attempts == settings.max_write_attempts
    assert store.get("clinic-1").version == 1
