"""
SQLAlchemy models for subscription persistence.

One row per tenant in subscriptions (never deleted: cancellation is a status),
plus an append-only subscription_history table written in the same
transaction as each compare-and-swap.
"""

import os
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC (SQLite hands back naive datetimes)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    tenant_id = Column(String(255), primary_key=True)
    plan_id = Column(String(255), nullable=False)
    status = Column(String(32), nullable=False)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    is_trial = Column(Boolean, nullable=False, default=False)
    grace_end = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    overridden = Column(Boolean, nullable=False, default=False)
    last_evaluated_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_subscriptions_period_end_tenant", "period_end", "tenant_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRow(tenant_id={self.tenant_id}, status={self.status}, "
            f"version={self.version})>"
        )


class SubscriptionHistoryRow(Base):
    __tablename__ = "subscription_history"

    id = Column(String(255), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(255), nullable=False, index=True)
    event = Column(String(32), nullable=False)
    old_status = Column(String(32), nullable=True)
    new_status = Column(String(32), nullable=False)
    old_period_end = Column(DateTime(timezone=True), nullable=True)
    new_period_end = Column(DateTime(timezone=True), nullable=False)
    plan_id = Column(String(255), nullable=False)
    version = Column(Integer, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    actor_id = Column(String(255), nullable=True)
    payment_reference = Column(String(255), nullable=True)
    payment_method = Column(String(64), nullable=True)
    amount_paid_cents = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "version", name="uq_subscription_history_tenant_version"),
    )


def create_session_factory(database_url: Optional[str] = None) -> sessionmaker:
    """Session factory for DATABASE_URL (postgres:// is rewritten for SQLAlchemy)."""
    database_url = database_url or os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    engine = create_engine(database_url, pool_pre_ping=True)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(session_factory: sessionmaker) -> None:
    """Create the subscription tables if missing (no-op when they exist)."""
    Base.metadata.create_all(bind=session_factory.kw["bind"])
