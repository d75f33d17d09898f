from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .catalog import PlanCatalog
from .db import create_session_factory, create_tables
from .directory import StaticTenantDirectory, TenantDirectory
from .guard import EntitlementGuard, UsageResolver
from .ledger import NotificationLedger
from .notifications import NotificationSink, build_sink
from .renewal import RenewalWorkflow
from .scanner import ExpiryScanner
from .service import SubscriptionQueryService
from .settings import LifecycleSettings, load_settings
from .store import InMemorySubscriptionStore, SqlSubscriptionStore, SubscriptionStore

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionEngine:
    """Wires the store, catalog and settings into the guard, workflows and scanner."""

    store: SubscriptionStore
    catalog: PlanCatalog
    settings: LifecycleSettings
    directory: TenantDirectory
    guard: EntitlementGuard
    renewals: RenewalWorkflow
    queries: SubscriptionQueryService
    scanner: ExpiryScanner

    @classmethod
    def build(
        cls,
        *,
        store: SubscriptionStore,
        catalog: PlanCatalog,
        settings: Optional[LifecycleSettings] = None,
        directory: Optional[TenantDirectory] = None,
        sink: Optional[NotificationSink] = None,
        ledger: Optional[NotificationLedger] = None,
        usage_resolver: Optional[UsageResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "SubscriptionEngine":
        settings = settings or LifecycleSettings()
        directory = directory or StaticTenantDirectory()
        clock = clock or (lambda: datetime.now(timezone.utc))
        return cls(
            store=store,
            catalog=catalog,
            settings=settings,
            directory=directory,
            guard=EntitlementGuard(
                store, catalog,
                settings=settings, usage_resolver=usage_resolver, directory=directory, clock=clock,
            ),
            renewals=RenewalWorkflow(store, catalog, settings=settings, clock=clock),
            queries=SubscriptionQueryService(store, catalog, settings=settings, clock=clock),
            scanner=ExpiryScanner(
                store,
                sink or build_sink(settings.notification_webhook_url),
                settings=settings,
                ledger=ledger,
                clock=clock,
            ),
        )

    @classmethod
    def from_environment(
        cls,
        *,
        database_url: Optional[str] = None,
        directory: Optional[TenantDirectory] = None,
        usage_resolver: Optional[UsageResolver] = None,
    ) -> "SubscriptionEngine":
        """SQL-backed engine from DATABASE_URL; in-memory when no database is configured."""
        settings = load_settings()
        catalog = PlanCatalog()
        try:
            session_factory = create_session_factory(database_url)
        except ValueError:
            logger.warning("DATABASE_URL not set, subscriptions are kept in memory")
            store: SubscriptionStore = InMemorySubscriptionStore()
        else:
            create_tables(session_factory)
            store = SqlSubscriptionStore(session_factory)
        return cls.build(
            store=store,
            catalog=catalog,
            settings=settings,
            directory=directory,
            usage_resolver=usage_resolver,
        )
