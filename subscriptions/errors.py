"""
Subscription error hierarchy.

Provides:
- SubscriptionError: base for all subscription lifecycle failures
- NotFoundError: tenant, subscription or plan absent (provision before use)
- SubscriptionExistsError: a tenant already has its one subscription
- InvalidTransitionError: event not valid for the current status
- VersionConflictError: compare-and-swap lost against a concurrent writer
- ContentionError: retries on version conflict exhausted
- NotificationDeliveryFailed: sink unreachable (logged, never fatal)
"""

from typing import Optional


class SubscriptionError(Exception):
    """Base exception for subscription-related failures."""

    error_code = "SUBSCRIPTION_ERROR"

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        self.message = message
        self.tenant_id = tenant_id
        super().__init__(message)

    def to_dict(self) -> dict:
        d: dict = {"error": self.error_code, "message": self.message}
        if self.tenant_id is not None:
            d["tenant_id"] = self.tenant_id
        return d


class NotFoundError(SubscriptionError):
    error_code = "NOT_FOUND"


class SubscriptionNotFoundError(NotFoundError):
    error_code = "SUBSCRIPTION_NOT_FOUND"

    def __init__(self, tenant_id: str):
        super().__init__(f"No subscription for tenant {tenant_id}", tenant_id=tenant_id)


class PlanNotFoundError(NotFoundError):
    error_code = "PLAN_NOT_FOUND"

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Unknown plan: {plan_id}")

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["plan_id"] = self.plan_id
        return d


class TenantNotFoundError(NotFoundError):
    error_code = "TENANT_NOT_FOUND"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} does not belong to any tenant")


class SubscriptionExistsError(SubscriptionError):
    error_code = "SUBSCRIPTION_EXISTS"

    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant {tenant_id} already has a subscription", tenant_id=tenant_id)


class InvalidTransitionError(SubscriptionError):
    """Raised when an event is not valid for the record's current status."""

    error_code = "INVALID_TRANSITION"

    def __init__(self, tenant_id: str, status: str, event: str, detail: Optional[str] = None):
        self.status = status
        self.event = event
        message = f"Event '{event}' is not valid while subscription is '{status}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, tenant_id=tenant_id)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({"status": self.status, "event": self.event})
        return d


class VersionConflictError(SubscriptionError):
    """Raised by compare-and-swap when the stored version moved on."""

    error_code = "VERSION_CONFLICT"

    def __init__(self, tenant_id: str, expected_version: int, actual_version: Optional[int]):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict for {tenant_id}: expected {expected_version}, found {actual_version}",
            tenant_id=tenant_id,
        )


class ContentionError(SubscriptionError):
    """Raised when bounded retries on version conflict are exhausted."""

    error_code = "CONTENTION"

    def __init__(self, tenant_id: str, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Gave up after {attempts} conflicting writes for {tenant_id}",
            tenant_id=tenant_id,
        )


class NotificationDeliveryFailed(SubscriptionError):
    error_code = "NOTIFICATION_DELIVERY_FAILED"

    def __init__(self, tenant_id: str, trigger: str, cause: Optional[Exception] = None):
        self.trigger = trigger
        self.cause = cause
        super().__init__(
            f"Failed to deliver '{trigger}' notification: {cause}",
            tenant_id=tenant_id,
        )
