"""
Lifecycle settings: grace window, expiry warning windows, scanner cadence.

Read from the "billing_rules" object of config/plans.json; environment
variables prefixed SUBSCRIPTION_ override individual values. The defaults
below are only used when neither source sets a value.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .catalog import plans_path_from_env

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 5
DEFAULT_WARNING_DAYS = (7, 3)
DEFAULT_SCAN_INTERVAL_SECONDS = 3600
DEFAULT_SCAN_PAGE_SIZE = 200
DEFAULT_MAX_WRITE_ATTEMPTS = 3


@dataclass(frozen=True)
class LifecycleSettings:
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    warning_days: Tuple[int, ...] = DEFAULT_WARNING_DAYS
    scan_interval_seconds: int = DEFAULT_SCAN_INTERVAL_SECONDS
    scan_page_size: int = DEFAULT_SCAN_PAGE_SIZE
    max_write_attempts: int = DEFAULT_MAX_WRITE_ATTEMPTS
    notification_webhook_url: Optional[str] = None

    def __post_init__(self) -> None:
        if self.grace_period_days < 0:
            raise ValueError("grace_period_days must not be negative")
        if any(d <= 0 for d in self.warning_days):
            raise ValueError("warning_days must be positive")
        if self.scan_page_size <= 0:
            raise ValueError("scan_page_size must be positive")
        if self.max_write_attempts < 1:
            raise ValueError("max_write_attempts must be at least 1")
        # largest window first so the scanner can pick the tightest one that applies
        object.__setattr__(self, "warning_days", tuple(sorted(set(self.warning_days), reverse=True)))

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)

    @property
    def warning_lookahead(self) -> timedelta:
        return timedelta(days=max(self.warning_days, default=0))

    @classmethod
    def from_mapping(cls, rules: Mapping) -> "LifecycleSettings":
        kwargs = {}
        if "grace_period_days" in rules:
            kwargs["grace_period_days"] = int(rules["grace_period_days"])
        if "warning_days" in rules:
            kwargs["warning_days"] = tuple(int(d) for d in rules["warning_days"])
        if "scan_interval_seconds" in rules:
            kwargs["scan_interval_seconds"] = int(rules["scan_interval_seconds"])
        if "scan_page_size" in rules:
            kwargs["scan_page_size"] = int(rules["scan_page_size"])
        if "max_write_attempts" in rules:
            kwargs["max_write_attempts"] = int(rules["max_write_attempts"])
        if rules.get("notification_webhook_url"):
            kwargs["notification_webhook_url"] = str(rules["notification_webhook_url"])
        return cls(**kwargs)


def _load_billing_rules(config_path: Path) -> dict:
    if not config_path.exists():
        logger.debug("%s not found, using default billing rules", config_path)
        return {}
    with config_path.open("r", encoding="utf-8") as handle:
        raw = json.load(handle)
    rules = raw.get("billing_rules", {}) if isinstance(raw, dict) else {}
    if not isinstance(rules, dict):
        raise ValueError("billing_rules must be an object")
    return rules


def load_settings(config_path: Optional[str] = None) -> LifecycleSettings:
    """Build settings from config/plans.json, then apply environment overrides."""
    path = Path(config_path) if config_path else plans_path_from_env()
    rules = dict(_load_billing_rules(path))

    env_overrides = {
        "grace_period_days": os.getenv("SUBSCRIPTION_GRACE_PERIOD_DAYS"),
        "scan_interval_seconds": os.getenv("SUBSCRIPTION_SCAN_INTERVAL_SECONDS"),
        "scan_page_size": os.getenv("SUBSCRIPTION_SCAN_PAGE_SIZE"),
        "max_write_attempts": os.getenv("SUBSCRIPTION_MAX_WRITE_ATTEMPTS"),
        "notification_webhook_url": os.getenv("SUBSCRIPTION_WEBHOOK_URL"),
    }
    for key, value in env_overrides.items():
        if value:
            rules[key] = value

    warning_days = os.getenv("SUBSCRIPTION_WARNING_DAYS")
    if warning_days:
        rules["warning_days"] = [d for d in warning_days.split(",") if d.strip()]

    return LifecycleSettings.from_mapping(rules)
