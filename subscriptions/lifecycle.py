"""
Subscription lifecycle state machine.

derive_status is the source of truth: a pure function of
(period_end, grace_end, cancelled_at, overridden, is_trial) and the current
time. The stored status is only a cache of its result. transition() is the
only way to produce a changed record; it never touches storage.

TRANSITIONS (event -> new status):
- time_passes:        re-derive; entering grace pins grace_end
- payment_confirmed:  trialing/grace -> active, period restarts at now
- renewal:            trialing/active/grace/expired/cancelled -> active,
                      period extends from max(now, period_end)
- cancel:             trialing/active/grace/expired -> cancelled
- override_set:       any non-overridden -> overridden
- override_cleared:   overridden -> status re-derived from period fields

Boundaries are inclusive: at now == period_end (or grace_end) the period
has already elapsed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .errors import InvalidTransitionError
from .models import (
    LifecycleEvent,
    Plan,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
)

RENEWABLE_STATUSES = frozenset({
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.CANCELLED,
})
PAYABLE_STATUSES = frozenset({SubscriptionStatus.TRIALING, SubscriptionStatus.GRACE})
CANCELLABLE_STATUSES = frozenset({
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE,
    SubscriptionStatus.EXPIRED,
})


@dataclass(frozen=True)
class TransitionResult:
    previous: Subscription
    record: Subscription
    event: LifecycleEvent
    # status the event was applied from; None means the stored one
    derived: Optional[SubscriptionStatus] = None

    @property
    def changed(self) -> bool:
        return self.record.version != self.previous.version

    @property
    def status_changed(self) -> bool:
        return self.record.status != self.previous.status

    def history_entry(
        self,
        *,
        actor_id: Optional[str] = None,
        payment_reference: Optional[str] = None,
        payment_method: Optional[str] = None,
        amount_paid_cents: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> SubscriptionHistoryEntry:
        return SubscriptionHistoryEntry(
            tenant_id=self.record.tenant_id,
            event=self.event,
            old_status=self.derived or self.previous.status,
            new_status=self.record.status,
            old_period_end=self.previous.period_end,
            new_period_end=self.record.period_end,
            plan_id=self.record.plan_id,
            version=self.record.version,
            occurred_at=self.record.last_evaluated_at,
            actor_id=actor_id,
            payment_reference=payment_reference,
            payment_method=payment_method,
            amount_paid_cents=amount_paid_cents,
            notes=notes,
        )


def effective_grace_end(record: Subscription, grace_period: timedelta) -> Optional[datetime]:
    """Grace deadline for a paid period, or None when there is no grace window."""
    if record.grace_end is not None:
        return record.grace_end
    if record.is_trial or grace_period <= timedelta(0):
        return None
    return record.period_end + grace_period


def _derive_from_period(record: Subscription, now: datetime, grace_period: timedelta) -> SubscriptionStatus:
    if record.cancelled_at is not None:
        return SubscriptionStatus.CANCELLED
    if now < record.period_end:
        return SubscriptionStatus.TRIALING if record.is_trial else SubscriptionStatus.ACTIVE
    # trials have no grace period
    grace_end = effective_grace_end(record, grace_period)
    if grace_end is not None and now < grace_end:
        return SubscriptionStatus.GRACE
    return SubscriptionStatus.EXPIRED


def derive_status(record: Subscription, now: datetime, *, grace_period: timedelta) -> SubscriptionStatus:
    """Compute the current status. Pure: never mutates the record."""
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    if record.overridden:
        return SubscriptionStatus.OVERRIDDEN
    return _derive_from_period(record, now, grace_period)


def new_subscription(tenant_id: str, plan: Plan, now: datetime) -> Subscription:
    """Initial record at onboarding: trialing when the plan has a trial, else active."""
    is_trial = plan.trial_days > 0
    period = plan.trial_period if is_trial else plan.billing_period
    return Subscription(
        tenant_id=tenant_id,
        plan_id=plan.plan_id,
        status=SubscriptionStatus.TRIALING if is_trial else SubscriptionStatus.ACTIVE,
        period_start=now,
        period_end=now + period,
        is_trial=is_trial,
        last_evaluated_at=now,
        created_at=now,
        version=1,
    )


def transition(
    record: Subscription,
    event: LifecycleEvent,
    *,
    now: datetime,
    grace_period: timedelta,
    plan: Optional[Plan] = None,
    period_length: Optional[timedelta] = None,
) -> TransitionResult:
    """
    Apply an event to a record and return the next record.

    Raises InvalidTransitionError when the event is not valid for the freshly
    derived status; the input record is never modified. A time_passes event
    that changes nothing returns the record unchanged (same version).
    """
    event = LifecycleEvent(event)
    current = derive_status(record, now, grace_period=grace_period)

    if event == LifecycleEvent.TIME_PASSES:
        return _time_passes(record, current, now, grace_period)

    if event == LifecycleEvent.PAYMENT_CONFIRMED:
        if current not in PAYABLE_STATUSES:
            raise InvalidTransitionError(record.tenant_id, current.value, event.value)
        paid_plan = _require_plan(plan, record, current, event)
        length = period_length or paid_plan.billing_period
        return _commit(record, event, now, grace_period, current, {
            "plan_id": paid_plan.plan_id,
            "period_start": now,
            "period_end": now + length,
            "is_trial": False,
            "grace_end": None,
        })

    if event == LifecycleEvent.RENEWAL:
        if current not in RENEWABLE_STATUSES:
            raise InvalidTransitionError(
                record.tenant_id, current.value, event.value,
                detail="clear the override before renewing",
            )
        new_plan = _require_plan(plan, record, current, event)
        length = period_length or new_plan.billing_period
        if length <= timedelta(0):
            raise ValueError("period_length must be positive")
        # paid time left on the current period is kept; trial time is not
        anchor = now if record.is_trial else max(now, record.period_end)
        period_start = now if anchor == now else record.period_start
        return _commit(record, event, now, grace_period, current, {
            "plan_id": new_plan.plan_id,
            "period_start": period_start,
            "period_end": anchor + length,
            "is_trial": False,
            "grace_end": None,
            "cancelled_at": None,
        })

    if event == LifecycleEvent.CANCEL:
        if current not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError(record.tenant_id, current.value, event.value)
        return _commit(record, event, now, grace_period, current, {"cancelled_at": now})

    if event == LifecycleEvent.OVERRIDE_SET:
        if current == SubscriptionStatus.OVERRIDDEN:
            raise InvalidTransitionError(
                record.tenant_id, current.value, event.value, detail="override already set",
            )
        return _commit(record, event, now, grace_period, current, {"overridden": True})

    if event == LifecycleEvent.OVERRIDE_CLEARED:
        if current != SubscriptionStatus.OVERRIDDEN:
            raise InvalidTransitionError(record.tenant_id, current.value, event.value)
        return _commit(record, event, now, grace_period, current, {"overridden": False})

    raise InvalidTransitionError(record.tenant_id, current.value, event.value)


def _require_plan(
    plan: Optional[Plan],
    record: Subscription,
    current: SubscriptionStatus,
    event: LifecycleEvent,
) -> Plan:
    if plan is None:
        raise InvalidTransitionError(
            record.tenant_id, current.value, event.value, detail="a plan is required",
        )
    return plan


def _time_passes(
    record: Subscription,
    current: SubscriptionStatus,
    now: datetime,
    grace_period: timedelta,
) -> TransitionResult:
    changes = {}
    pin_grace = record.grace_end is None and (
        current == SubscriptionStatus.GRACE
        # grace skipped entirely (no scan ran inside the window); pinned for the audit trail
        or (current == SubscriptionStatus.EXPIRED and record.cancelled_at is None)
    )
    if pin_grace:
        grace_end = effective_grace_end(record, grace_period)
        if grace_end is not None:
            changes["grace_end"] = grace_end

    if current == record.status and not changes:
        return TransitionResult(previous=record, record=record, event=LifecycleEvent.TIME_PASSES)
    return _commit(record, LifecycleEvent.TIME_PASSES, now, grace_period, record.status, changes)


def _commit(
    record: Subscription,
    event: LifecycleEvent,
    now: datetime,
    grace_period: timedelta,
    derived: SubscriptionStatus,
    changes: dict,
) -> TransitionResult:
    updated = record.evolve(**changes)
    status = derive_status(updated, now, grace_period=grace_period)
    updated = updated.evolve(
        status=status,
        version=record.version + 1,
        last_evaluated_at=now,
    )
    return TransitionResult(previous=record, record=updated, event=event, derived=derived)
