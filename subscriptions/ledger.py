from __future__ import annotations

import logging
import os
import time
from datetime import datetime
from threading import Lock
from typing import Dict, Optional

logger = logging.getLogger(__name__)

LEDGER_KEY_PREFIX = "subscriptions:notified:v1"
DEFAULT_TTL_SECONDS = 60 * 60 * 24 * 90


class NotificationLedger:
    """
    Redis-backed claim ledger with in-memory fallback.

    claim() returns True exactly once per key (until the TTL lapses), so
    overlapping scanner runs send each warning once.
    """

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._ttl_seconds = ttl_seconds
        self._redis = None
        self._mem: Dict[str, float] = {}
        self._mem_lock = Lock()
        redis_url = redis_url if redis_url is not None else os.getenv("REDIS_URL")

        if redis_url:
            try:
                import redis

                self._redis = redis.from_url(redis_url, decode_responses=True)
                self._redis.ping()
            except Exception as exc:
                logger.warning("Redis unavailable for notification ledger: %s", exc)
                self._redis = None

    @classmethod
    def with_client(cls, client, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> "NotificationLedger":
        ledger = cls(redis_url="", ttl_seconds=ttl_seconds)
        ledger._redis = client
        return ledger

    @staticmethod
    def key(tenant_id: str, trigger: str, threshold_days: int, period_end: datetime) -> str:
        normalized = str(tenant_id).strip()
        if not normalized:
            raise ValueError("tenant_id is required")
        return f"{LEDGER_KEY_PREFIX}:{normalized}:{trigger}:{threshold_days}:{int(period_end.timestamp())}"

    def claim(self, key: str) -> bool:
        if self._redis is not None:
            return bool(self._redis.set(key, str(int(time.time())), nx=True, ex=self._ttl_seconds))

        now = time.time()
        with self._mem_lock:
            claimed_at = self._mem.get(key)
            if claimed_at is not None and now - claimed_at <= self._ttl_seconds:
                return False
            self._mem[key] = now
            return True

    def release(self, key: str) -> None:
        """Drop a claim so the next scan retries (used when delivery failed)."""
        if self._redis is not None:
            self._redis.delete(key)
        with self._mem_lock:
            self._mem.pop(key, None)
