"""
Entitlement guard: the synchronous check run by every protected operation.

Status is re-derived from the record on every call; the stored status is
never trusted. The guard only reads. It never writes to the store, so the
hot path takes no locks and has no side effects besides logging.

ENFORCEMENT:
- no subscription:   deny (NoSubscription)
- expired/cancelled: deny
- grace:             allow, except features the plan marks full-service only
- trialing/active/overridden: allow per plan features and quotas
- any failure while evaluating, or a limited quota with no usage
  resolver configured: deny (fail closed)
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple, Union

from .catalog import PlanCatalog
from .directory import TenantDirectory
from .errors import PlanNotFoundError, SubscriptionNotFoundError
from .lifecycle import effective_grace_end, derive_status
from .models import DenyReason, EntitlementDecision, Plan, Subscription, SubscriptionStatus
from .settings import LifecycleSettings
from .store import SubscriptionStore

logger = logging.getLogger(__name__)

UsageResolver = Callable[[str, str], int]

_LOCKED_OUT = {
    SubscriptionStatus.EXPIRED: DenyReason.SUBSCRIPTION_EXPIRED,
    SubscriptionStatus.CANCELLED: DenyReason.SUBSCRIPTION_CANCELLED,
}


class EntitlementGuard:

    def __init__(
        self,
        store: SubscriptionStore,
        catalog: PlanCatalog,
        *,
        settings: Optional[LifecycleSettings] = None,
        usage_resolver: Optional[UsageResolver] = None,
        directory: Optional[TenantDirectory] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.settings = settings or LifecycleSettings()
        self._usage_resolver = usage_resolver
        self._directory = directory
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def check_feature(
        self,
        tenant_id: str,
        feature_key: str,
        *,
        now: Optional[datetime] = None,
    ) -> EntitlementDecision:
        feature_key = str(feature_key).strip()
        evaluated = self._evaluate(tenant_id, feature_key, now)
        if isinstance(evaluated, EntitlementDecision):
            return evaluated
        record, status, plan = evaluated

        if not plan.has_feature(feature_key):
            return self._deny(tenant_id, feature_key, DenyReason.FEATURE_NOT_IN_PLAN, record, status)
        if status == SubscriptionStatus.GRACE and plan.is_full_service_only(feature_key):
            return self._deny(tenant_id, feature_key, DenyReason.GRACE_RESTRICTED, record, status)

        return self._allow(tenant_id, feature_key, record, status)

    def check_quota(
        self,
        tenant_id: str,
        quota_key: str,
        requested_delta: int = 1,
        *,
        now: Optional[datetime] = None,
    ) -> EntitlementDecision:
        if requested_delta < 0:
            raise ValueError("requested_delta must not be negative")
        quota_key = str(quota_key).strip()
        evaluated = self._evaluate(tenant_id, quota_key, now)
        if isinstance(evaluated, EntitlementDecision):
            return evaluated
        record, status, plan = evaluated

        if quota_key not in plan.limits:
            return self._deny(tenant_id, quota_key, DenyReason.QUOTA_NOT_IN_PLAN, record, status)
        limit = plan.limits[quota_key]
        if limit is None:
            return self._allow(tenant_id, quota_key, record, status)

        if self._usage_resolver is None:
            logger.error(
                "No usage resolver configured for a limited quota; denying",
                extra={"tenant_id": tenant_id, "quota_key": quota_key},
            )
            return self._deny(tenant_id, quota_key, DenyReason.EVALUATION_FAILED, record, status, limit=limit)

        try:
            usage = int(self._usage_resolver(tenant_id, quota_key))
        except Exception:
            logger.exception(
                "Usage lookup failed; denying",
                extra={"tenant_id": tenant_id, "quota_key": quota_key},
            )
            return self._deny(tenant_id, quota_key, DenyReason.EVALUATION_FAILED, record, status)

        if usage + requested_delta > limit:
            return self._deny(
                tenant_id, quota_key, DenyReason.QUOTA_EXCEEDED, record, status,
                limit=limit, usage=usage,
            )
        return self._allow(tenant_id, quota_key, record, status, limit=limit, usage=usage)

    def check_feature_for_user(self, user_id: str, feature_key: str, *, now: Optional[datetime] = None) -> EntitlementDecision:
        return self.check_feature(self._resolve_tenant(user_id), feature_key, now=now)

    def check_quota_for_user(
        self,
        user_id: str,
        quota_key: str,
        requested_delta: int = 1,
        *,
        now: Optional[datetime] = None,
    ) -> EntitlementDecision:
        return self.check_quota(self._resolve_tenant(user_id), quota_key, requested_delta, now=now)

    def _resolve_tenant(self, user_id: str) -> str:
        if self._directory is None:
            raise RuntimeError("EntitlementGuard has no tenant directory configured")
        return self._directory.resolve_tenant(user_id)

    def _evaluate(
        self,
        tenant_id: str,
        checked: str,
        now: Optional[datetime],
    ) -> Union[EntitlementDecision, Tuple[Subscription, SubscriptionStatus, Plan]]:
        if not str(tenant_id).strip():
            raise ValueError("tenant_id is required")
        now = now or self._clock()

        try:
            record = self.store.get(tenant_id)
        except SubscriptionNotFoundError:
            return self._deny(tenant_id, checked, DenyReason.NO_SUBSCRIPTION)
        except Exception:
            logger.exception("Subscription lookup failed; denying", extra={"tenant_id": tenant_id})
            return self._deny(tenant_id, checked, DenyReason.EVALUATION_FAILED)

        status = derive_status(record, now, grace_period=self.settings.grace_period)
        if status in _LOCKED_OUT:
            return self._deny(tenant_id, checked, _LOCKED_OUT[status], record, status)

        try:
            plan = self.catalog.get_plan(record.plan_id)
        except PlanNotFoundError:
            logger.error(
                "Subscription references a plan missing from the catalog",
                extra={"tenant_id": tenant_id, "plan_id": record.plan_id},
            )
            return self._deny(tenant_id, checked, DenyReason.PLAN_UNAVAILABLE, record, status)

        return record, status, plan

    def _grace_end(self, record: Optional[Subscription], status: Optional[SubscriptionStatus]):
        if record is None or status != SubscriptionStatus.GRACE:
            return None
        return effective_grace_end(record, self.settings.grace_period)

    def _allow(
        self,
        tenant_id: str,
        checked: str,
        record: Subscription,
        status: SubscriptionStatus,
        *,
        limit: Optional[int] = None,
        usage: Optional[int] = None,
    ) -> EntitlementDecision:
        return EntitlementDecision(
            allowed=True,
            tenant_id=tenant_id,
            checked=checked,
            status=status,
            plan_id=record.plan_id,
            grace_end=self._grace_end(record, status),
            limit=limit,
            usage=usage,
        )

    def _deny(
        self,
        tenant_id: str,
        checked: str,
        reason: DenyReason,
        record: Optional[Subscription] = None,
        status: Optional[SubscriptionStatus] = None,
        *,
        limit: Optional[int] = None,
        usage: Optional[int] = None,
    ) -> EntitlementDecision:
        logger.info(
            "Entitlement denied",
            extra={"tenant_id": tenant_id, "checked": checked, "reason": reason.value,
                   "status": status.value if status else None},
        )
        return EntitlementDecision(
            allowed=False,
            tenant_id=tenant_id,
            checked=checked,
            status=status,
            reason=reason,
            plan_id=record.plan_id if record else None,
            grace_end=self._grace_end(record, status),
            limit=limit,
            usage=usage,
        )
