"""
Clinic subscription lifecycle and entitlement enforcement.

This module provides:
- PlanCatalog: Load plans and billing rules from config/plans.json
- derive_status / transition: The subscription state machine
- SubscriptionStore: Versioned records with compare-and-swap writes
- EntitlementGuard: Fail-closed feature and quota checks
- RenewalWorkflow: Renewal, payment, cancellation and override events
- ExpiryScanner: Periodic time-based transitions and expiry notifications
- SubscriptionQueryService: Status, validation, expiring-soon and stats

Grace period: 5 days (configurable via billing_rules.grace_period_days)
"""

from subscriptions.catalog import PlanCatalog
from subscriptions.directory import StaticTenantDirectory, TenantDirectory
from subscriptions.engine import SubscriptionEngine
from subscriptions.errors import (
    ContentionError,
    InvalidTransitionError,
    NotFoundError,
    NotificationDeliveryFailed,
    PlanNotFoundError,
    SubscriptionError,
    SubscriptionExistsError,
    SubscriptionNotFoundError,
    TenantNotFoundError,
    VersionConflictError,
)
from subscriptions.guard import EntitlementGuard
from subscriptions.ledger import NotificationLedger
from subscriptions.lifecycle import TransitionResult, derive_status, new_subscription, transition
from subscriptions.models import (
    DenyReason,
    EntitlementDecision,
    LifecycleEvent,
    NotificationEvent,
    NotificationTrigger,
    Plan,
    StatusSnapshot,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
)
from subscriptions.notifications import (
    CollectingNotificationSink,
    LoggingNotificationSink,
    WebhookNotificationSink,
)
from subscriptions.renewal import RenewalRequest, RenewalWorkflow
from subscriptions.scanner import ExpiryScanner, ScanStats
from subscriptions.service import SubscriptionQueryService
from subscriptions.settings import LifecycleSettings, load_settings
from subscriptions.store import InMemorySubscriptionStore, SqlSubscriptionStore, SubscriptionStore

__all__ = [
    # Catalog and settings
    "PlanCatalog",
    "LifecycleSettings",
    "load_settings",
    # Models
    "Plan",
    "Subscription",
    "SubscriptionStatus",
    "LifecycleEvent",
    "DenyReason",
    "EntitlementDecision",
    "NotificationEvent",
    "NotificationTrigger",
    "StatusSnapshot",
    "SubscriptionHistoryEntry",
    # State machine
    "derive_status",
    "transition",
    "new_subscription",
    "TransitionResult",
    # Storage
    "SubscriptionStore",
    "InMemorySubscriptionStore",
    "SqlSubscriptionStore",
    # Enforcement and workflows
    "EntitlementGuard",
    "RenewalRequest",
    "RenewalWorkflow",
    "SubscriptionQueryService",
    "TenantDirectory",
    "StaticTenantDirectory",
    # Scanner and notifications
    "ExpiryScanner",
    "ScanStats",
    "NotificationLedger",
    "LoggingNotificationSink",
    "CollectingNotificationSink",
    "WebhookNotificationSink",
    # Wiring
    "SubscriptionEngine",
    # Errors
    "SubscriptionError",
    "NotFoundError",
    "SubscriptionNotFoundError",
    "PlanNotFoundError",
    "TenantNotFoundError",
    "SubscriptionExistsError",
    "InvalidTransitionError",
    "VersionConflictError",
    "ContentionError",
    "NotificationDeliveryFailed",
]
