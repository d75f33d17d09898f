"""
Read-only query surface: status for UI display, validation summary,
expiring-soon listing for admins, aggregate statistics and history.

Every answer is re-derived from the stored period fields at the time of the
call; nothing here writes.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .catalog import PlanCatalog
from .errors import PlanNotFoundError, SubscriptionNotFoundError
from .lifecycle import derive_status, effective_grace_end
from .models import (
    ENTITLED_STATUSES,
    StatusSnapshot,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
)
from .scanner import days_remaining
from .settings import LifecycleSettings
from .store import SubscriptionStore

logger = logging.getLogger(__name__)

URGENT_DAYS = 3


@dataclass(frozen=True)
class SubscriptionValidation:
    is_valid: bool
    status: Optional[SubscriptionStatus]
    days_remaining: int
    end_date: Optional[datetime]
    plan_name: Optional[str]
    is_expiring_soon: bool
    is_trial: bool
    message: str

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "status": self.status.value if self.status else None,
            "days_remaining": self.days_remaining,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "plan_name": self.plan_name,
            "is_expiring_soon": self.is_expiring_soon,
            "is_trial": self.is_trial,
            "message": self.message,
        }


@dataclass(frozen=True)
class ExpiringSubscription:
    tenant_id: str
    plan_id: str
    plan_name: str
    status: SubscriptionStatus
    period_end: datetime
    days_remaining: int

    @property
    def urgent(self) -> bool:
        return self.days_remaining <= URGENT_DAYS

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "plan_id": self.plan_id,
            "plan_name": self.plan_name,
            "status": self.status.value,
            "period_end": self.period_end.isoformat(),
            "days_remaining": self.days_remaining,
            "urgent": self.urgent,
        }


@dataclass
class SubscriptionStats:
    total_subscriptions: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    expiring_soon: int = 0
    revenue_monthly_cents: int = 0
    revenue_yearly_cents: int = 0
    by_plan: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_subscriptions": self.total_subscriptions,
            "by_status": dict(self.by_status),
            "expiring_soon": self.expiring_soon,
            "revenue_monthly_cents": self.revenue_monthly_cents,
            "revenue_yearly_cents": self.revenue_yearly_cents,
            "by_plan": dict(self.by_plan),
        }


class SubscriptionQueryService:

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

    def _status(self, record: Subscription, now: datetime) -> SubscriptionStatus:
        return derive_status(record, now, grace_period=self.settings.grace_period)

    def _plan_name(self, plan_id: str) -> str:
        try:
            return self.catalog.get_plan(plan_id).display_name
        except PlanNotFoundError:
            return plan_id

    def get_status(self, tenant_id: str, *, now: Optional[datetime] = None) -> StatusSnapshot:
        """Raises SubscriptionNotFoundError when the tenant was never onboarded."""
        now = now or self._clock()
        record = self.store.get(tenant_id)
        status = self._status(record, now)
        grace_end = effective_grace_end(record, self.settings.grace_period) \
            if status == SubscriptionStatus.GRACE else record.grace_end
        return StatusSnapshot(
            tenant_id=record.tenant_id,
            status=status,
            plan_id=record.plan_id,
            period_end=record.period_end,
            grace_end=grace_end,
            is_trial=record.is_trial,
        )

    def validate(self, tenant_id: str, *, now: Optional[datetime] = None) -> SubscriptionValidation:
        now = now or self._clock()
        try:
            record = self.store.get(tenant_id)
        except SubscriptionNotFoundError:
            return SubscriptionValidation(
                is_valid=False,
                status=None,
                days_remaining=0,
                end_date=None,
                plan_name=None,
                is_expiring_soon=False,
                is_trial=False,
                message="No active subscription found",
            )

        status = self._status(record, now)
        remaining = days_remaining(record.period_end, now)
        is_valid = status in ENTITLED_STATUSES
        is_expiring_soon = (
            status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
            and record.period_end - now <= self.settings.warning_lookahead
        )
        plural = "" if remaining == 1 else "s"

        if status == SubscriptionStatus.OVERRIDDEN:
            message = "Access granted by administrator"
        elif status == SubscriptionStatus.GRACE:
            grace_end = effective_grace_end(record, self.settings.grace_period)
            left = days_remaining(grace_end, now) if grace_end else 0
            message = f"Payment overdue - access ends in {left} day{'' if left == 1 else 's'}"
        elif not is_valid:
            message = f"Subscription is {status.value}"
        elif is_expiring_soon:
            message = f"Subscription expires in {remaining} day{plural}"
        elif status == SubscriptionStatus.TRIALING:
            message = f"Trial period - {remaining} day{plural} remaining"
        else:
            message = f"Active - {remaining} day{plural} remaining"

        return SubscriptionValidation(
            is_valid=is_valid,
            status=status,
            days_remaining=remaining,
            end_date=record.period_end,
            plan_name=self._plan_name(record.plan_id),
            is_expiring_soon=is_expiring_soon,
            is_trial=status == SubscriptionStatus.TRIALING,
            message=message,
        )

    def list_expiring_soon(self, days: int = 7, *, now: Optional[datetime] = None) -> List[ExpiringSubscription]:
        """Active or trialing subscriptions ending within `days`, soonest first."""
        if days <= 0:
            raise ValueError("days must be positive")
        now = now or self._clock()
        expiring: List[ExpiringSubscription] = []
        for record in self.store.list_expiring_before(
            now + timedelta(days=days), page_size=self.settings.scan_page_size,
        ):
            status = self._status(record, now)
            if status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
                continue
            expiring.append(ExpiringSubscription(
                tenant_id=record.tenant_id,
                plan_id=record.plan_id,
                plan_name=self._plan_name(record.plan_id),
                status=status,
                period_end=record.period_end,
                days_remaining=days_remaining(record.period_end, now),
            ))
        return expiring

    def get_stats(self, *, now: Optional[datetime] = None) -> SubscriptionStats:
        now = now or self._clock()
        stats = SubscriptionStats(by_status={s.value: 0 for s in SubscriptionStatus})
        for record in self.store.iter_all(page_size=self.settings.scan_page_size):
            status = self._status(record, now)
            stats.total_subscriptions += 1
            stats.by_status[status.value] += 1
            if (
                status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
                and record.period_end - now <= self.settings.warning_lookahead
            ):
                stats.expiring_soon += 1
            if status not in ENTITLED_STATUSES:
                continue
            stats.by_plan[record.plan_id] = stats.by_plan.get(record.plan_id, 0) + 1
            try:
                plan = self.catalog.get_plan(record.plan_id)
            except PlanNotFoundError:
                logger.warning(
                    "Stats skipped revenue for unknown plan",
                    extra={"tenant_id": record.tenant_id, "plan_id": record.plan_id},
                )
                continue
            if status == SubscriptionStatus.ACTIVE:
                stats.revenue_monthly_cents += plan.price_monthly_cents or 0
                stats.revenue_yearly_cents += plan.price_yearly_cents or 0
        return stats

    def get_history(self, tenant_id: str, limit: int = 10) -> List[SubscriptionHistoryEntry]:
        if limit <= 0:
            raise ValueError("limit must be positive")
        self.store.get(tenant_id)
        return self.store.list_history(tenant_id, limit=limit)
