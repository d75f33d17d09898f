from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Tuple

from .errors import PlanNotFoundError
from .models import Plan

logger = logging.getLogger(__name__)

DEFAULT_PLANS_PATH = Path(__file__).resolve().parents[1] / "config" / "plans.json"


def plans_path_from_env() -> Path:
    return Path(os.getenv("SUBSCRIPTION_PLANS_PATH", str(DEFAULT_PLANS_PATH)))


class PlanCatalog:
    """Read-only plan catalog loaded from config/plans.json with reload support."""

    def __init__(self, config_path: Optional[str] = None, plans: Optional[List[Plan]] = None) -> None:
        self._config_path = Path(config_path) if config_path else plans_path_from_env()
        self._lock = RLock()
        self._plans: Dict[str, Plan] = {}
        self._ordered: Tuple[Plan, ...] = ()
        if plans is not None:
            self._install(plans)
        else:
            self.reload()

    @classmethod
    def from_plans(cls, plans: List[Plan]) -> "PlanCatalog":
        return cls(plans=plans)

    def reload(self) -> None:
        """
        Reload config from disk. New plan ids may appear and old ones may be
        retired; an already loaded plan id with a different definition raises
        ValueError and the current catalog stays in place.
        """
        raw = self._read_config_file()
        self._install(self.parse_plans(raw))
        logger.info(
            "Loaded plan catalog",
            extra={"path": str(self._config_path), "plan_count": len(self._ordered)},
        )

    def get_plan(self, plan_id: str) -> Plan:
        normalized = str(plan_id or "").strip()
        if not normalized:
            raise ValueError("plan_id is required")
        with self._lock:
            plan = self._plans.get(normalized)
        if plan is None:
            raise PlanNotFoundError(normalized)
        return plan

    def list_plans(self) -> Tuple[Plan, ...]:
        with self._lock:
            return self._ordered

    def _install(self, plans: List[Plan]) -> None:
        by_id: Dict[str, Plan] = {}
        for plan in plans:
            if plan.plan_id in by_id:
                raise ValueError(f"duplicate plan id: {plan.plan_id}")
            by_id[plan.plan_id] = plan
        if not by_id:
            raise ValueError("plan catalog must define at least one plan")
        ordered = tuple(sorted(by_id.values(), key=lambda p: (p.sort_order, p.plan_id)))
        with self._lock:
            # plans are immutable once deployed: a changed offering needs a new plan id
            changed = sorted(
                plan_id for plan_id, plan in by_id.items()
                if plan_id in self._plans and self._plans[plan_id] != plan
            )
            if changed:
                raise ValueError(f"plan definitions cannot change once loaded: {changed}")
            self._plans = by_id
            self._ordered = ordered

    def _read_config_file(self) -> dict:
        with self._config_path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if not isinstance(raw, dict):
            raise ValueError("config/plans.json must contain a top-level object")
        return raw

    @staticmethod
    def parse_plans(raw: dict) -> List[Plan]:
        plans_raw = raw.get("plans")
        if not isinstance(plans_raw, dict):
            raise ValueError("config/plans.json must include an object field named 'plans'")

        plans: List[Plan] = []
        for plan_id, plan_data in plans_raw.items():
            if not isinstance(plan_id, str) or not plan_id.strip():
                raise ValueError("each plan key must be a non-empty string")
            if not isinstance(plan_data, dict):
                raise ValueError(f"plan '{plan_id}' must be an object")

            features = plan_data.get("features", [])
            if not isinstance(features, list):
                raise ValueError(f"plan '{plan_id}' features must be a list of feature keys")
            for feature_key in features:
                if not isinstance(feature_key, str) or not feature_key.strip():
                    raise ValueError(f"plan '{plan_id}' has invalid feature key: {feature_key!r}")

            full_service = plan_data.get("full_service_features", [])
            if not isinstance(full_service, list):
                raise ValueError(f"plan '{plan_id}' full_service_features must be a list")

            limits = plan_data.get("limits", {})
            if not isinstance(limits, dict):
                raise ValueError(f"plan '{plan_id}' limits must be an object")
            normalized_limits: Dict[str, Optional[int]] = {}
            for limit_key, limit_value in limits.items():
                if not isinstance(limit_key, str) or not limit_key.strip():
                    raise ValueError(f"plan '{plan_id}' has invalid limit key: {limit_key!r}")
                # null means unlimited
                normalized_limits[limit_key.strip()] = None if limit_value is None else int(limit_value)

            if "billing_period_days" not in plan_data:
                raise ValueError(f"plan '{plan_id}' must define billing_period_days")

            plans.append(Plan(
                plan_id=plan_id,
                display_name=str(plan_data.get("display_name") or plan_id.strip()),
                features=tuple(features),
                full_service_features=frozenset(f.strip() for f in full_service),
                limits=normalized_limits,
                billing_period_days=int(plan_data["billing_period_days"]),
                trial_days=int(plan_data.get("trial_days", 0)),
                price_monthly_cents=_optional_int(plan_data.get("price_monthly_cents")),
                price_yearly_cents=_optional_int(plan_data.get("price_yearly_cents")),
                sort_order=int(plan_data.get("sort_order", 0)),
            ))

        if not plans:
            raise ValueError("config/plans.json must define at least one plan")
        return plans


def _optional_int(value) -> Optional[int]:
    return None if value is None else int(value)
