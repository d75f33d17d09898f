"""
Expiry scan worker.

Runs ExpiryScanner.run_forever on SUBSCRIPTION_SCAN_INTERVAL_SECONDS
(default hourly). SIGTERM / SIGINT stop it between tenants; transitions
already committed in the interrupted pass are kept.

Usage:
    python -m workers.expiry_scan_job          # loop
    python -m workers.expiry_scan_job --once   # single pass, then exit
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from typing import Optional

from subscriptions.engine import SubscriptionEngine
from subscriptions.scanner import ScanStats

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def run_expiry_scan_cycle(engine: Optional[SubscriptionEngine] = None) -> ScanStats:
    """Single scan pass against the configured store."""
    engine = engine or SubscriptionEngine.from_environment()
    return engine.scanner.run_once()


def run_forever(
    engine: Optional[SubscriptionEngine] = None,
    stop_event: Optional[threading.Event] = None,
) -> None:
    engine = engine or SubscriptionEngine.from_environment()
    stop_event = stop_event or threading.Event()

    def _stop(signum, frame):
        logger.info("Stop requested", extra={"signal": signum})
        stop_event.set()

    previous = {sig: signal.signal(sig, _stop) for sig in (signal.SIGTERM, signal.SIGINT)}

    logger.info(
        "Expiry scanner started",
        extra={"interval_seconds": engine.settings.scan_interval_seconds},
    )
    try:
        engine.scanner.run_forever(stop_event=stop_event)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    logger.info("Expiry scanner stopped")


def main(argv=None) -> int:
    """Entry point for running the scanner from command line."""
    argv = sys.argv[1:] if argv is None else argv
    try:
        if "--once" in argv:
            stats = run_expiry_scan_cycle()
            logger.info("Expiry scan finished", extra=stats.to_dict())
            return 1 if stats.errors else 0
        run_forever()
        return 0
    except Exception:
        logger.exception("Expiry scanner crashed")
        return 1


if __name__ == "__main__":
    sys.exit(main())
