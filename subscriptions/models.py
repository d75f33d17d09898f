from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


class SubscriptionStatus(str, Enum):
    """Lifecycle status values. The stored value is a cache of derive_status."""

    TRIALING = "trialing"
    ACTIVE = "active"
    GRACE = "grace"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    OVERRIDDEN = "overridden"


# Statuses in which the tenant may use the product at all
ENTITLED_STATUSES = frozenset({
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE,
    SubscriptionStatus.OVERRIDDEN,
})


class LifecycleEvent(str, Enum):
    """Events accepted by the lifecycle state machine."""

    CREATED = "created"  # history only
    TIME_PASSES = "time_passes"
    PAYMENT_CONFIRMED = "payment_confirmed"
    RENEWAL = "renewal"
    CANCEL = "cancel"
    OVERRIDE_SET = "override_set"
    OVERRIDE_CLEARED = "override_cleared"


class DenyReason(str, Enum):
    NO_SUBSCRIPTION = "NoSubscription"
    SUBSCRIPTION_EXPIRED = "SubscriptionExpired"
    SUBSCRIPTION_CANCELLED = "SubscriptionCancelled"
    GRACE_RESTRICTED = "GraceRestricted"
    FEATURE_NOT_IN_PLAN = "FeatureNotInPlan"
    QUOTA_NOT_IN_PLAN = "QuotaNotInPlan"
    QUOTA_EXCEEDED = "QuotaExceeded"
    PLAN_UNAVAILABLE = "PlanUnavailable"
    EVALUATION_FAILED = "EvaluationFailed"


class NotificationTrigger(str, Enum):
    EXPIRING_SOON = "expiring_soon"
    GRACE_STARTED = "grace_started"
    LOCKED_OUT = "locked_out"


@dataclass(frozen=True)
class Plan:
    """Plan definition from config/plans.json. Never mutated once deployed."""

    plan_id: str
    display_name: str
    features: Tuple[str, ...]
    billing_period_days: int
    trial_days: int = 0
    full_service_features: FrozenSet[str] = frozenset()
    limits: Mapping[str, Optional[int]] = field(default_factory=dict)
    price_monthly_cents: Optional[int] = None
    price_yearly_cents: Optional[int] = None
    sort_order: int = 0

    def __post_init__(self) -> None:
        plan_id = self.plan_id.strip()
        if not plan_id:
            raise ValueError("plan_id is required")
        if self.billing_period_days <= 0:
            raise ValueError(f"plan '{plan_id}' billing_period_days must be positive")
        if self.trial_days < 0:
            raise ValueError(f"plan '{plan_id}' trial_days must not be negative")
        features = tuple(dict.fromkeys(f.strip() for f in self.features if f.strip()))
        unknown = set(self.full_service_features) - set(features)
        if unknown:
            raise ValueError(
                f"plan '{plan_id}' full_service_features not in features: {sorted(unknown)}"
            )
        object.__setattr__(self, "plan_id", plan_id)
        object.__setattr__(self, "features", features)
        object.__setattr__(self, "full_service_features", frozenset(self.full_service_features))
        object.__setattr__(self, "limits", MappingProxyType(dict(self.limits)))

    @property
    def billing_period(self) -> timedelta:
        return timedelta(days=self.billing_period_days)

    @property
    def trial_period(self) -> timedelta:
        return timedelta(days=self.trial_days)

    def has_feature(self, feature_key: str) -> bool:
        return str(feature_key).strip() in self.features

    def is_full_service_only(self, feature_key: str) -> bool:
        return str(feature_key).strip() in self.full_service_features


@dataclass(frozen=True)
class Subscription:
    """
    The single current subscription record of a tenant.

    status is a cache of derive_status(record, now); version increases by one
    on every committed transition and guards compare-and-swap writes.
    """

    tenant_id: str
    plan_id: str
    status: SubscriptionStatus
    period_start: datetime
    period_end: datetime
    last_evaluated_at: datetime
    version: int = 1
    is_trial: bool = False
    grace_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    overridden: bool = False
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        tenant_id = str(self.tenant_id).strip()
        if not tenant_id:
            raise ValueError("tenant_id is required")
        for name in ("period_start", "period_end", "last_evaluated_at"):
            if getattr(self, name).tzinfo is None:
                raise ValueError(f"{name} must be timezone-aware")
        if self.period_start > self.period_end:
            raise ValueError("period_start must not be after period_end")
        if self.grace_end is not None and self.grace_end <= self.period_end:
            raise ValueError("grace_end must be after period_end")
        if self.version < 1:
            raise ValueError("version must be positive")
        object.__setattr__(self, "tenant_id", tenant_id)
        object.__setattr__(self, "status", SubscriptionStatus(self.status))

    def evolve(self, **changes: Any) -> "Subscription":
        return replace(self, **changes)


@dataclass(frozen=True)
class EntitlementDecision:
    """Ephemeral result of a guard check; never persisted."""

    allowed: bool
    tenant_id: str
    checked: str
    status: Optional[SubscriptionStatus] = None
    reason: Optional[DenyReason] = None
    plan_id: Optional[str] = None
    grace_end: Optional[datetime] = None
    limit: Optional[int] = None
    usage: Optional[int] = None

    @property
    def is_degraded(self) -> bool:
        return self.allowed and self.status == SubscriptionStatus.GRACE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "tenant_id": self.tenant_id,
            "checked": self.checked,
            "status": self.status.value if self.status else None,
            "reason": self.reason.value if self.reason else None,
            "plan_id": self.plan_id,
            "grace_end": self.grace_end.isoformat() if self.grace_end else None,
            "limit": self.limit,
            "usage": self.usage,
        }


@dataclass(frozen=True)
class NotificationEvent:
    tenant_id: str
    trigger: NotificationTrigger
    occurred_at: datetime
    status: SubscriptionStatus
    period_end: datetime
    grace_end: Optional[datetime] = None
    days_remaining: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "trigger": self.trigger.value,
            "occurred_at": self.occurred_at.isoformat(),
            "status": self.status.value,
            "period_end": self.period_end.isoformat(),
            "grace_end": self.grace_end.isoformat() if self.grace_end else None,
            "days_remaining": self.days_remaining,
        }


@dataclass(frozen=True)
class SubscriptionHistoryEntry:
    """Audit record of one committed transition."""

    tenant_id: str
    event: LifecycleEvent
    new_status: SubscriptionStatus
    new_period_end: datetime
    plan_id: str
    version: int
    occurred_at: datetime
    old_status: Optional[SubscriptionStatus] = None
    old_period_end: Optional[datetime] = None
    actor_id: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_method: Optional[str] = None
    amount_paid_cents: Optional[int] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class StatusSnapshot:
    """Read-only status for UI display."""

    tenant_id: str
    status: SubscriptionStatus
    plan_id: str
    period_end: datetime
    grace_end: Optional[datetime]
    is_trial: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "plan_id": self.plan_id,
            "period_end": self.period_end.isoformat(),
            "grace_end": self.grace_end.isoformat() if self.grace_end else None,
            "is_trial": self.is_trial,
        }
