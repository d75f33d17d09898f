"""
Renewal workflow and administrative lifecycle events.

Every operation follows the same read -> transition -> compare-and-swap
loop, retried on VersionConflictError up to settings.max_write_attempts and
then surfaced as ContentionError. A failed attempt leaves the stored record
exactly as it was.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .catalog import PlanCatalog
from .errors import ContentionError, VersionConflictError
from .lifecycle import new_subscription, transition
from .models import LifecycleEvent, Plan, Subscription, SubscriptionHistoryEntry
from .settings import LifecycleSettings
from .store import SubscriptionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenewalRequest:
    tenant_id: str
    plan_id: str
    period_days: Optional[int] = None
    payment_reference: Optional[str] = None
    payment_method: Optional[str] = None
    amount_paid_cents: Optional[int] = None
    notes: Optional[str] = None
    actor_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not str(self.tenant_id).strip():
            raise ValueError("tenant_id is required")
        if not str(self.plan_id).strip():
            raise ValueError("plan_id is required")
        if self.period_days is not None and self.period_days <= 0:
            raise ValueError("period_days must be positive")
        if self.amount_paid_cents is not None and self.amount_paid_cents < 0:
            raise ValueError("amount_paid_cents must not be negative")


class RenewalWorkflow:

    def __init__(
        self,
        store: SubscriptionStore,
        catalog: PlanCatalog,
        *,
        settings: Optional[LifecycleSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.settings = settings or LifecycleSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def onboard(
        self,
        tenant_id: str,
        plan_id: str,
        *,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Create the tenant's one subscription (trialing if the plan has a trial)."""
        plan = self.catalog.get_plan(plan_id)
        now = now or self._clock()
        record = new_subscription(tenant_id, plan, now)
        history = SubscriptionHistoryEntry(
            tenant_id=record.tenant_id,
            event=LifecycleEvent.CREATED,
            new_status=record.status,
            new_period_end=record.period_end,
            plan_id=record.plan_id,
            version=record.version,
            occurred_at=now,
            actor_id=actor_id,
        )
        self.store.create(record, history=history)
        logger.info(
            "Subscription created",
            extra={"tenant_id": record.tenant_id, "plan_id": plan.plan_id, "status": record.status.value},
        )
        return record

    def renew(self, request: RenewalRequest, *, now: Optional[datetime] = None) -> Subscription:
        """
        Extend or change a subscription. The new period runs from
        max(now, old period_end), so renewing early or during grace never
        loses paid time.
        """
        plan = self.catalog.get_plan(request.plan_id)
        period_length = timedelta(days=request.period_days) if request.period_days else None
        return self._apply(
            request.tenant_id,
            LifecycleEvent.RENEWAL,
            now=now,
            plan_for=lambda record: plan,
            period_length=period_length,
            actor_id=request.actor_id,
            payment_reference=request.payment_reference,
            payment_method=request.payment_method,
            amount_paid_cents=request.amount_paid_cents,
            notes=request.notes,
        )

    def confirm_payment(
        self,
        tenant_id: str,
        *,
        payment_reference: Optional[str] = None,
        payment_method: Optional[str] = None,
        amount_paid_cents: Optional[int] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Billing confirmed a payment for the current plan (trialing or grace -> active)."""
        return self._apply(
            tenant_id,
            LifecycleEvent.PAYMENT_CONFIRMED,
            now=now,
            plan_for=lambda record: self.catalog.get_plan(record.plan_id),
            actor_id=actor_id,
            payment_reference=payment_reference,
            payment_method=payment_method,
            amount_paid_cents=amount_paid_cents,
        )

    def cancel(
        self,
        tenant_id: str,
        *,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        return self._apply(tenant_id, LifecycleEvent.CANCEL, now=now, actor_id=actor_id, notes=notes)

    def set_override(
        self,
        tenant_id: str,
        *,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        return self._apply(tenant_id, LifecycleEvent.OVERRIDE_SET, now=now, actor_id=actor_id, notes=notes)

    def clear_override(
        self,
        tenant_id: str,
        *,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        return self._apply(tenant_id, LifecycleEvent.OVERRIDE_CLEARED, now=now, actor_id=actor_id, notes=notes)

    def _apply(
        self,
        tenant_id: str,
        event: LifecycleEvent,
        *,
        now: Optional[datetime] = None,
        plan_for: Optional[Callable[[Subscription], Plan]] = None,
        period_length: Optional[timedelta] = None,
        **history_fields,
    ) -> Subscription:
        attempts = self.settings.max_write_attempts
        for attempt in range(1, attempts + 1):
            record = self.store.get(tenant_id)
            at = now or self._clock()
            result = transition(
                record,
                event,
                now=at,
                grace_period=self.settings.grace_period,
                plan=plan_for(record) if plan_for else None,
                period_length=period_length,
            )
            try:
                saved = self.store.compare_and_swap(
                    tenant_id,
                    record.version,
                    result.record,
                    history=result.history_entry(**history_fields),
                )
            except VersionConflictError:
                logger.warning(
                    "Concurrent subscription write, retrying",
                    extra={"tenant_id": tenant_id, "event": event.value, "attempt": attempt},
                )
                continue

            logger.info(
                "Subscription transition committed",
                extra={
                    "tenant_id": tenant_id,
                    "event": event.value,
                    "old_status": result.previous.status.value,
                    "new_status": saved.status.value,
                    "version": saved.version,
                },
            )
            return saved

        logger.error(
            "Subscription write contention, giving up",
            extra={"tenant_id": tenant_id, "event": event.value, "attempts": attempts},
        )
        raise ContentionError(tenant_id, attempts)
