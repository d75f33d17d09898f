from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from subscriptions.catalog import PlanCatalog
from subscriptions.db import Base
from subscriptions.models import Plan, Subscription, SubscriptionStatus
from subscriptions.settings import LifecycleSettings
from subscriptions.store import InMemorySubscriptionStore, SqlSubscriptionStore

T0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def plans():
    return [
        Plan(
            plan_id="basic",
            display_name="Basic",
            features=("appointments", "patient_records", "reports"),
            full_service_features=frozenset({"reports"}),
            limits={"max_users": 3, "max_patients": None},
            billing_period_days=30,
            trial_days=14,
            price_monthly_cents=4900,
            price_yearly_cents=49000,
            sort_order=1,
        ),
        Plan(
            plan_id="pro",
            display_name="Pro",
            features=("appointments", "patient_records", "reports", "sms_reminders"),
            full_service_features=frozenset({"sms_reminders"}),
            limits={"max_users": 10},
            billing_period_days=30,
            trial_days=0,
            price_monthly_cents=9900,
            price_yearly_cents=99000,
            sort_order=2,
        ),
    ]


@pytest.fixture
def catalog(plans) -> PlanCatalog:
    return PlanCatalog.from_plans(plans)


@pytest.fixture
def settings() -> LifecycleSettings:
    return LifecycleSettings(grace_period_days=5, warning_days=(7, 3), scan_page_size=2)


@pytest.fixture
def memory_store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture
def session_factory():
    """In-memory SQLite shared across threads and sessions."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def sql_store(session_factory) -> SqlSubscriptionStore:
    return SqlSubscriptionStore(session_factory)


@pytest.fixture(params=["memory", "sql"])
def store(request, memory_store, sql_store):
    return memory_store if request.param == "memory" else sql_store


@pytest.fixture
def make_subscription():
    def _make(
        tenant_id: str = "clinic-1",
        *,
        plan_id: str = "pro",
        period_end: datetime = T0 + timedelta(days=30),
        period_days: int = 30,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        **kwargs,
    ) -> Subscription:
        period_start = period_end - timedelta(days=period_days)
        kwargs.setdefault("last_evaluated_at", period_start)
        kwargs.setdefault("created_at", period_start)
        return Subscription(
            tenant_id=tenant_id,
            plan_id=plan_id,
            status=status,
            period_start=period_start,
            period_end=period_end,
            **kwargs,
        )

    return _make
