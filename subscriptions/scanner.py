"""
Expiry scanner.

Runs on a fixed cadence (hourly by default). Each pass:
1. Lists time-bound subscriptions with period_end <= now + warning lookahead
2. Re-derives status; when it differs from the stored one, applies the
   time_passes transition with a single compare-and-swap
3. On a committed transition, emits grace_started / locked_out
4. For records still active or trialing inside a warning window, claims the
   warning in the ledger and emits expiring_soon (status untouched)

Overlapping passes are safe: a pass that loses a compare-and-swap skips the
tenant, which is revisited next cycle. Stopping mid-pass keeps every
transition already committed.
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .errors import VersionConflictError
from .ledger import NotificationLedger
from .lifecycle import effective_grace_end, transition
from .models import (
    LifecycleEvent,
    NotificationEvent,
    NotificationTrigger,
    Subscription,
    SubscriptionStatus,
)
from .notifications import NotificationSink, dispatch_notification
from .settings import LifecycleSettings
from .store import ScanCursor, SubscriptionStore, scan_cursor

logger = logging.getLogger(__name__)

SCANNER_ACTOR_ID = "expiry-scanner"

_TRANSITION_TRIGGERS = {
    SubscriptionStatus.GRACE: NotificationTrigger.GRACE_STARTED,
    SubscriptionStatus.EXPIRED: NotificationTrigger.LOCKED_OUT,
}


@dataclass
class ScanStats:
    started_at: str
    completed_at: Optional[str] = None
    candidates: int = 0
    transitions: int = 0
    conflicts_skipped: int = 0
    warnings_sent: int = 0
    notifications_failed: int = 0
    errors: int = 0
    stopped_early: bool = False
    last_cursor: Optional[ScanCursor] = None

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "candidates": self.candidates,
            "transitions": self.transitions,
            "conflicts_skipped": self.conflicts_skipped,
            "warnings_sent": self.warnings_sent,
            "notifications_failed": self.notifications_failed,
            "errors": self.errors,
            "stopped_early": self.stopped_early,
        }


def days_remaining(period_end: datetime, now: datetime) -> int:
    """Whole days left, rounded up, never negative."""
    seconds = (period_end - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


class ExpiryScanner:

    def __init__(
        self,
        store: SubscriptionStore,
        sink: NotificationSink,
        *,
        settings: Optional[LifecycleSettings] = None,
        ledger: Optional[NotificationLedger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sink = sink
        self.settings = settings or LifecycleSettings()
        self.ledger = ledger or NotificationLedger()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def run_once(
        self,
        *,
        now: Optional[datetime] = None,
        stop_event: Optional[threading.Event] = None,
        start_after: Optional[ScanCursor] = None,
    ) -> ScanStats:
        now = now or self._clock()
        stats = ScanStats(started_at=now.isoformat())
        horizon = now + self.settings.warning_lookahead
        logger.info("Starting expiry scan", extra={"now": now.isoformat(), "horizon": horizon.isoformat()})

        candidates = self.store.list_expiring_before(
            horizon,
            page_size=self.settings.scan_page_size,
            start_after=start_after,
        )
        for record in candidates:
            if stop_event is not None and stop_event.is_set():
                stats.stopped_early = True
                logger.info("Expiry scan stopped", extra={"processed": stats.candidates})
                break
            stats.candidates += 1
            try:
                self.scan_tenant(record, now, stats)
            except Exception:
                stats.errors += 1
                logger.exception("Expiry scan failed for tenant", extra={"tenant_id": record.tenant_id})
            stats.last_cursor = scan_cursor(record)

        stats.completed_at = datetime.now(timezone.utc).isoformat()
        logger.info("Expiry scan completed", extra=stats.to_dict())
        return stats

    def scan_tenant(self, record: Subscription, now: datetime, stats: ScanStats) -> None:
        result = transition(
            record,
            LifecycleEvent.TIME_PASSES,
            now=now,
            grace_period=self.settings.grace_period,
        )
        if result.changed:
            try:
                saved = self.store.compare_and_swap(
                    record.tenant_id,
                    record.version,
                    result.record,
                    history=result.history_entry(actor_id=SCANNER_ACTOR_ID),
                )
            except VersionConflictError:
                # another writer got there first; next cycle re-reads
                stats.conflicts_skipped += 1
                return
            stats.transitions += 1
            logger.info(
                "Subscription advanced by expiry scan",
                extra={
                    "tenant_id": saved.tenant_id,
                    "old_status": record.status.value,
                    "new_status": saved.status.value,
                    "version": saved.version,
                },
            )
            trigger = _TRANSITION_TRIGGERS.get(saved.status)
            if trigger is not None and result.status_changed:
                self._emit(saved, trigger, now, stats)
            return

        if record.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            self._maybe_warn(record, now, stats)

    def _maybe_warn(self, record: Subscription, now: datetime, stats: ScanStats) -> None:
        left = record.period_end - now
        applicable = [d for d in self.settings.warning_days if left <= timedelta(days=d)]
        if not applicable:
            return
        threshold = min(applicable)
        key = self.ledger.key(
            record.tenant_id, NotificationTrigger.EXPIRING_SOON.value, threshold, record.period_end,
        )
        if not self.ledger.claim(key):
            return
        if self._emit(record, NotificationTrigger.EXPIRING_SOON, now, stats):
            stats.warnings_sent += 1
        else:
            self.ledger.release(key)

    def _emit(self, record: Subscription, trigger: NotificationTrigger, now: datetime, stats: ScanStats) -> bool:
        event = NotificationEvent(
            tenant_id=record.tenant_id,
            trigger=trigger,
            occurred_at=now,
            status=record.status,
            period_end=record.period_end,
            grace_end=effective_grace_end(record, self.settings.grace_period)
            if record.status == SubscriptionStatus.GRACE else record.grace_end,
            days_remaining=days_remaining(record.period_end, now),
        )
        delivered = dispatch_notification(self.sink, event)
        if not delivered:
            stats.notifications_failed += 1
        return delivered

    def run_forever(
        self,
        *,
        interval_seconds: Optional[int] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        interval = interval_seconds or self.settings.scan_interval_seconds
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            try:
                self.run_once(stop_event=stop_event)
            except Exception:
                logger.exception("Expiry scan pass failed")
            stop_event.wait(interval)
