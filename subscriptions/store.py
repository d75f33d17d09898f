"""
Subscription record store.

All mutations go through compare_and_swap: a write succeeds only when the
stored version still equals the version the caller read. Writers for
different tenants never contend; there is no process-wide write lock.

Implementations:
- InMemorySubscriptionStore: per-tenant locks, for tests and single-process use
- SqlSubscriptionStore: SQLAlchemy, one conditional UPDATE per write
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from threading import Lock
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .db import SubscriptionHistoryRow, SubscriptionRow, utc
from .errors import SubscriptionExistsError, SubscriptionNotFoundError, VersionConflictError
from .models import (
    LifecycleEvent,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 200

# (period_end, tenant_id) of the last record seen; resumes a scan after it
ScanCursor = Tuple[datetime, str]


def scan_cursor(record: Subscription) -> ScanCursor:
    return (record.period_end, record.tenant_id)


class SubscriptionStore(ABC):

    @abstractmethod
    def get(self, tenant_id: str) -> Subscription:
        """Return the tenant's subscription or raise SubscriptionNotFoundError."""

    @abstractmethod
    def create(self, record: Subscription, history: Optional[SubscriptionHistoryEntry] = None) -> Subscription:
        """Insert the tenant's first record or raise SubscriptionExistsError."""

    @abstractmethod
    def compare_and_swap(
        self,
        tenant_id: str,
        expected_version: int,
        new_record: Subscription,
        history: Optional[SubscriptionHistoryEntry] = None,
    ) -> Subscription:
        """Replace the record if its version is still expected_version, else raise VersionConflictError."""

    @abstractmethod
    def list_expiring_before(
        self,
        before: datetime,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        start_after: Optional[ScanCursor] = None,
    ) -> Iterator[Subscription]:
        """
        Lazily yield time-bound records (not cancelled, overridden or already
        expired) with period_end <= before, ordered by (period_end, tenant_id).
        Pages are fetched on demand; pass start_after to resume a scan.
        """

    @abstractmethod
    def iter_all(self, *, page_size: int = DEFAULT_PAGE_SIZE) -> Iterator[Subscription]:
        """Lazily yield every record ordered by tenant_id."""

    @abstractmethod
    def list_history(self, tenant_id: str, limit: int = 10) -> List[SubscriptionHistoryEntry]:
        """Newest-first transition history for a tenant."""

    def find(self, tenant_id: str) -> Optional[Subscription]:
        try:
            return self.get(tenant_id)
        except SubscriptionNotFoundError:
            return None

    @staticmethod
    def _check_new_version(tenant_id: str, expected_version: int, new_record: Subscription) -> None:
        if new_record.tenant_id != tenant_id:
            raise ValueError("new_record belongs to a different tenant")
        if new_record.version <= expected_version:
            raise ValueError(
                f"new_record.version must exceed {expected_version}, got {new_record.version}"
            )


def _is_time_bound(record: Subscription) -> bool:
    return (
        not record.overridden
        and record.cancelled_at is None
        and record.status != SubscriptionStatus.EXPIRED
    )


class InMemorySubscriptionStore(SubscriptionStore):

    def __init__(self) -> None:
        self._records: Dict[str, Subscription] = {}
        self._history: Dict[str, List[SubscriptionHistoryEntry]] = {}
        self._locks: Dict[str, Lock] = {}

    def _lock_for(self, tenant_id: str) -> Lock:
        # setdefault is atomic: one lock per tenant
        return self._locks.setdefault(tenant_id, Lock())

    def get(self, tenant_id: str) -> Subscription:
        record = self._records.get(tenant_id)
        if record is None:
            raise SubscriptionNotFoundError(tenant_id)
        return record

    def create(self, record: Subscription, history: Optional[SubscriptionHistoryEntry] = None) -> Subscription:
        with self._lock_for(record.tenant_id):
            if record.tenant_id in self._records:
                raise SubscriptionExistsError(record.tenant_id)
            self._records[record.tenant_id] = record
            if history is not None:
                self._history.setdefault(record.tenant_id, []).append(history)
        return record

    def compare_and_swap(
        self,
        tenant_id: str,
        expected_version: int,
        new_record: Subscription,
        history: Optional[SubscriptionHistoryEntry] = None,
    ) -> Subscription:
        self._check_new_version(tenant_id, expected_version, new_record)
        with self._lock_for(tenant_id):
            current = self._records.get(tenant_id)
            if current is None:
                raise SubscriptionNotFoundError(tenant_id)
            if current.version != expected_version:
                logger.info(
                    "Subscription write lost compare-and-swap",
                    extra={"tenant_id": tenant_id, "expected_version": expected_version,
                           "actual_version": current.version},
                )
                raise VersionConflictError(tenant_id, expected_version, current.version)
            self._records[tenant_id] = new_record
            if history is not None:
                self._history.setdefault(tenant_id, []).append(history)
        return new_record

    def list_expiring_before(
        self,
        before: datetime,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        start_after: Optional[ScanCursor] = None,
    ) -> Iterator[Subscription]:
        cursor = start_after
        while True:
            candidates = sorted(
                (
                    r for r in list(self._records.values())
                    if _is_time_bound(r)
                    and r.period_end <= before
                    and (cursor is None or scan_cursor(r) > cursor)
                ),
                key=scan_cursor,
            )
            page = candidates[:page_size]
            yield from page
            if len(page) < page_size:
                return
            cursor = scan_cursor(page[-1])

    def iter_all(self, *, page_size: int = DEFAULT_PAGE_SIZE) -> Iterator[Subscription]:
        for tenant_id in sorted(list(self._records)):
            yield self._records[tenant_id]

    def list_history(self, tenant_id: str, limit: int = 10) -> List[SubscriptionHistoryEntry]:
        entries = list(self._history.get(tenant_id, []))
        entries.reverse()
        return entries[:limit]


class SqlSubscriptionStore(SubscriptionStore):
    """
    SQLAlchemy-backed store. Each operation uses its own short session so no
    connection or row lock is held between a read and the following write.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def get(self, tenant_id: str) -> Subscription:
        with self._session_factory() as session:
            row = session.get(SubscriptionRow, tenant_id)
            if row is None:
                raise SubscriptionNotFoundError(tenant_id)
            return _row_to_record(row)

    def create(self, record: Subscription, history: Optional[SubscriptionHistoryEntry] = None) -> Subscription:
        with self._session_factory() as session:
            if session.get(SubscriptionRow, record.tenant_id) is not None:
                raise SubscriptionExistsError(record.tenant_id)
            session.add(SubscriptionRow(**_record_values(record)))
            if history is not None:
                session.add(_history_to_row(history))
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise SubscriptionExistsError(record.tenant_id) from exc
        return record

    def compare_and_swap(
        self,
        tenant_id: str,
        expected_version: int,
        new_record: Subscription,
        history: Optional[SubscriptionHistoryEntry] = None,
    ) -> Subscription:
        self._check_new_version(tenant_id, expected_version, new_record)
        values = _record_values(new_record)
        values.pop("tenant_id")
        values.pop("created_at")

        with self._session_factory() as session:
            result = session.execute(
                update(SubscriptionRow)
                .where(
                    SubscriptionRow.tenant_id == tenant_id,
                    SubscriptionRow.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                actual = session.execute(
                    select(SubscriptionRow.version).where(SubscriptionRow.tenant_id == tenant_id)
                ).scalar_one_or_none()
                if actual is None:
                    raise SubscriptionNotFoundError(tenant_id)
                logger.info(
                    "Subscription write lost compare-and-swap",
                    extra={"tenant_id": tenant_id, "expected_version": expected_version,
                           "actual_version": actual},
                )
                raise VersionConflictError(tenant_id, expected_version, actual)

            if history is not None:
                session.add(_history_to_row(history))
            try:
                session.commit()
            except IntegrityError as exc:
                # history (tenant_id, version) already written by a concurrent winner
                session.rollback()
                raise VersionConflictError(tenant_id, expected_version, None) from exc
        return new_record

    def list_expiring_before(
        self,
        before: datetime,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        start_after: Optional[ScanCursor] = None,
    ) -> Iterator[Subscription]:
        cursor = start_after
        before = utc(before)
        while True:
            stmt = (
                select(SubscriptionRow)
                .where(
                    SubscriptionRow.overridden.is_(False),
                    SubscriptionRow.cancelled_at.is_(None),
                    SubscriptionRow.status != SubscriptionStatus.EXPIRED.value,
                    SubscriptionRow.period_end <= before,
                )
                .order_by(SubscriptionRow.period_end.asc(), SubscriptionRow.tenant_id.asc())
                .limit(page_size)
            )
            if cursor is not None:
                last_end, last_tenant = utc(cursor[0]), cursor[1]
                stmt = stmt.where(or_(
                    SubscriptionRow.period_end > last_end,
                    and_(SubscriptionRow.period_end == last_end, SubscriptionRow.tenant_id > last_tenant),
                ))

            with self._session_factory() as session:
                page = [_row_to_record(row) for row in session.execute(stmt).scalars().all()]

            yield from page
            if len(page) < page_size:
                return
            cursor = scan_cursor(page[-1])

    def iter_all(self, *, page_size: int = DEFAULT_PAGE_SIZE) -> Iterator[Subscription]:
        last_tenant: Optional[str] = None
        while True:
            stmt = select(SubscriptionRow).order_by(SubscriptionRow.tenant_id.asc()).limit(page_size)
            if last_tenant is not None:
                stmt = stmt.where(SubscriptionRow.tenant_id > last_tenant)
            with self._session_factory() as session:
                page = [_row_to_record(row) for row in session.execute(stmt).scalars().all()]
            yield from page
            if len(page) < page_size:
                return
            last_tenant = page[-1].tenant_id

    def list_history(self, tenant_id: str, limit: int = 10) -> List[SubscriptionHistoryEntry]:
        stmt = (
            select(SubscriptionHistoryRow)
            .where(SubscriptionHistoryRow.tenant_id == tenant_id)
            .order_by(SubscriptionHistoryRow.version.desc())
            .limit(limit)
        )
        with self._session_factory() as session:
            return [_row_to_history(row) for row in session.execute(stmt).scalars().all()]


def _record_values(record: Subscription) -> dict:
    return {
        "tenant_id": record.tenant_id,
        "plan_id": record.plan_id,
        "status": record.status.value,
        "period_start": utc(record.period_start),
        "period_end": utc(record.period_end),
        "is_trial": record.is_trial,
        "grace_end": utc(record.grace_end),
        "cancelled_at": utc(record.cancelled_at),
        "overridden": record.overridden,
        "last_evaluated_at": utc(record.last_evaluated_at),
        "version": record.version,
        "created_at": utc(record.created_at),
        "updated_at": utc(record.last_evaluated_at),
    }


def _row_to_record(row: SubscriptionRow) -> Subscription:
    return Subscription(
        tenant_id=row.tenant_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        period_start=utc(row.period_start),
        period_end=utc(row.period_end),
        is_trial=bool(row.is_trial),
        grace_end=utc(row.grace_end),
        cancelled_at=utc(row.cancelled_at),
        overridden=bool(row.overridden),
        last_evaluated_at=utc(row.last_evaluated_at),
        version=row.version,
        created_at=utc(row.created_at),
    )


def _history_to_row(entry: SubscriptionHistoryEntry) -> SubscriptionHistoryRow:
    return SubscriptionHistoryRow(
        tenant_id=entry.tenant_id,
        event=entry.event.value,
        old_status=entry.old_status.value if entry.old_status else None,
        new_status=entry.new_status.value,
        old_period_end=utc(entry.old_period_end),
        new_period_end=utc(entry.new_period_end),
        plan_id=entry.plan_id,
        version=entry.version,
        occurred_at=utc(entry.occurred_at),
        actor_id=entry.actor_id,
        payment_reference=entry.payment_reference,
        payment_method=entry.payment_method,
        amount_paid_cents=entry.amount_paid_cents,
        notes=entry.notes,
    )


def _row_to_history(row: SubscriptionHistoryRow) -> SubscriptionHistoryEntry:
    return SubscriptionHistoryEntry(
        tenant_id=row.tenant_id,
        event=LifecycleEvent(row.event),
        old_status=SubscriptionStatus(row.old_status) if row.old_status else None,
        new_status=SubscriptionStatus(row.new_status),
        old_period_end=utc(row.old_period_end),
        new_period_end=utc(row.new_period_end),
        plan_id=row.plan_id,
        version=row.version,
        occurred_at=utc(row.occurred_at),
        actor_id=row.actor_id,
        payment_reference=row.payment_reference,
        payment_method=row.payment_method,
        amount_paid_cents=row.amount_paid_cents,
        notes=row.notes,
    )
