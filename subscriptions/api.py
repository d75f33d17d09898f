"""
HTTP surface for the subscription engine.

- /subscriptions/...        tenant-facing status and entitlement checks
                            (tenant resolved from request.state.user_id)
- /admin/subscriptions/...  lifecycle events and admin reporting
                            (request.state.roles must include an admin role)

Identity (request.state.user_id / roles) is set by the host application's
auth middleware; this module trusts it.
"""

import logging
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .engine import SubscriptionEngine
from .errors import (
    ContentionError,
    InvalidTransitionError,
    NotFoundError,
    SubscriptionError,
    SubscriptionExistsError,
    VersionConflictError,
)
from .models import EntitlementDecision, SubscriptionHistoryEntry
from .renewal import RenewalRequest

logger = logging.getLogger(__name__)

ALLOWED_ADMIN_ROLES = frozenset({"super_admin", "billing_admin"})

_ERROR_STATUS = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (SubscriptionExistsError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (VersionConflictError, status.HTTP_409_CONFLICT),
    (ContentionError, status.HTTP_503_SERVICE_UNAVAILABLE),
)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
admin_router = APIRouter(prefix="/admin/subscriptions", tags=["admin", "subscriptions"])


def can_manage_subscriptions(roles: List[str]) -> bool:
    return any(r.lower() in ALLOWED_ADMIN_ROLES for r in roles)


def get_engine(request: Request) -> SubscriptionEngine:
    engine = getattr(request.app.state, "subscriptions", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Subscriptions unavailable")
    return engine


def _get_user_id(request: Request) -> str:
    if hasattr(request.state, "user_id") and request.state.user_id:
        return request.state.user_id
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user context")


def _get_actor_roles(request: Request) -> List[str]:
    if hasattr(request.state, "roles") and request.state.roles:
        return list(request.state.roles)
    return []


def current_tenant_id(request: Request, engine: SubscriptionEngine = Depends(get_engine)) -> str:
    return engine.directory.resolve_tenant(_get_user_id(request))


def require_admin(request: Request) -> str:
    actor_id = _get_user_id(request)
    if not can_manage_subscriptions(_get_actor_roles(request)):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
    return actor_id


def _denied(decision: EntitlementDecision) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "error": "ENTITLEMENT_DENIED",
            "reason": decision.reason.value if decision.reason else None,
            "checked": decision.checked,
            "status": decision.status.value if decision.status else None,
        },
    )


def require_feature(feature_key: str) -> Callable:
    """
    Dependency for protected routes:
    Depends(require_feature("lab_results")). Raises 402 when denied.
    """

    def _check(
        tenant_id: str = Depends(current_tenant_id),
        engine: SubscriptionEngine = Depends(get_engine),
    ) -> EntitlementDecision:
        decision = engine.guard.check_feature(tenant_id, feature_key)
        if not decision.allowed:
            raise _denied(decision)
        return decision

    return _check


class QuotaCheckBody(BaseModel):
    quota_key: str = Field(..., min_length=1)
    requested_delta: int = Field(1, ge=0)


class OnboardBody(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., min_length=1)


class RenewBody(BaseModel):
    plan_id: str = Field(..., min_length=1)
    period_days: Optional[int] = Field(None, gt=0)
    payment_reference: Optional[str] = None
    payment_method: Optional[str] = None
    amount_paid_cents: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None


class PaymentBody(BaseModel):
    payment_reference: Optional[str] = None
    payment_method: Optional[str] = None
    amount_paid_cents: Optional[int] = Field(None, ge=0)


class NotesBody(BaseModel):
    notes: Optional[str] = None


def _history_to_dict(entry: SubscriptionHistoryEntry) -> dict:
    return {
        "event": entry.event.value,
        "old_status": entry.old_status.value if entry.old_status else None,
        "new_status": entry.new_status.value,
        "old_period_end": entry.old_period_end.isoformat() if entry.old_period_end else None,
        "new_period_end": entry.new_period_end.isoformat(),
        "plan_id": entry.plan_id,
        "version": entry.version,
        "occurred_at": entry.occurred_at.isoformat(),
        "actor_id": entry.actor_id,
        "payment_reference": entry.payment_reference,
        "payment_method": entry.payment_method,
        "amount_paid_cents": entry.amount_paid_cents,
        "notes": entry.notes,
    }


@router.get("/plans")
def list_plans(engine: SubscriptionEngine = Depends(get_engine)) -> dict:
    return {
        "plans": [
            {
                "plan_id": p.plan_id,
                "display_name": p.display_name,
                "features": list(p.features),
                "full_service_features": sorted(p.full_service_features),
                "limits": dict(p.limits),
                "billing_period_days": p.billing_period_days,
                "trial_days": p.trial_days,
                "price_monthly_cents": p.price_monthly_cents,
                "price_yearly_cents": p.price_yearly_cents,
            }
            for p in engine.catalog.list_plans()
        ]
    }


@router.get("/me/status")
def my_status(
    tenant_id: str = Depends(current_tenant_id),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    return engine.queries.get_status(tenant_id).to_dict()


@router.get("/me/validation")
def my_validation(
    tenant_id: str = Depends(current_tenant_id),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    return engine.queries.validate(tenant_id).to_dict()


@router.get("/me/features/{feature_key}")
def check_my_feature(
    feature_key: str,
    tenant_id: str = Depends(current_tenant_id),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    """Always 200; the body carries the decision (UX only, enforcement is require_feature)."""
    return engine.guard.check_feature(tenant_id, feature_key).to_dict()


@router.post("/me/quota-checks")
def check_my_quota(
    body: QuotaCheckBody,
    tenant_id: str = Depends(current_tenant_id),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    return engine.guard.check_quota(tenant_id, body.quota_key, body.requested_delta).to_dict()


@admin_router.post("", status_code=status.HTTP_201_CREATED)
def onboard(
    body: OnboardBody,
    actor_id: str = Depends(require_admin),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    engine.renewals.onboard(body.tenant_id, body.plan_id, actor_id=actor_id)
    return engine.queries.get_status(body.tenant_id).to_dict()


@admin_router.get("/expiring")
def expiring_soon(
    days: int = Query(7, gt=0, le=365),
    _: str = Depends(require_admin),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    items = engine.queries.list_expiring_soon(days)
    return {
        "days": days,
        "urgent_count": sum(1 for i in items if i.urgent),
        "subscriptions": [i.to_dict() for i in items],
    }


@admin_router.get("/stats")
def stats(
    _: str = Depends(require_admin),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    return engine.queries.get_stats().to_dict()


@admin_router.get("/{tenant_id}/status")
def tenant_status(
    tenant_id: str,
    _: str = Depends(require_admin),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    return engine.queries.get_status(tenant_id).to_dict()


@admin_router.get("/{tenant_id}/history")
def tenant_history(
    tenant_id: str,
    limit: int = Query(10, gt=0, le=100),
    _: str = Depends(require_admin),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    entries = engine.queries.get_history(tenant_id, limit=limit)
    return {"tenant_id": tenant_id, "history": [_history_to_dict(e) for e in entries]}


@admin_router.post("/{tenant_id}/renew")
def renew(
    tenant_id: str,
    body: RenewBody,
    actor_id: str = Depends(require_admin),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    engine.renewals.renew(RenewalRequest(
        tenant_id=tenant_id,
        plan_id=body.plan_id,
        period_days=body.period_days,
        payment_reference=body.payment_reference,
        payment_method=body.payment_method,
        amount_paid_cents=body.amount_paid_cents,
        notes=body.notes,
        actor_id=actor_id,
    ))
    return engine.queries.get_status(tenant_id).to_dict()


@admin_router.post("/{tenant_id}/payments")
def confirm_payment(
    tenant_id: str,
    body: PaymentBody,
    actor_id: str = Depends(require_admin),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    engine.renewals.confirm_payment(
        tenant_id,
        payment_reference=body.payment_reference,
        payment_method=body.payment_method,
        amount_paid_cents=body.amount_paid_cents,
        actor_id=actor_id,
    )
    return engine.queries.get_status(tenant_id).to_dict()


@admin_router.post("/{tenant_id}/cancel")
def cancel(
    tenant_id: str,
    body: Optional[NotesBody] = None,
    actor_id: str = Depends(require_admin),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    engine.renewals.cancel(tenant_id, actor_id=actor_id, notes=body.notes if body else None)
    return engine.queries.get_status(tenant_id).to_dict()


@admin_router.post("/{tenant_id}/override")
def set_override(
    tenant_id: str,
    body: Optional[NotesBody] = None,
    actor_id: str = Depends(require_admin),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    engine.renewals.set_override(tenant_id, actor_id=actor_id, notes=body.notes if body else None)
    return engine.queries.get_status(tenant_id).to_dict()


@admin_router.delete("/{tenant_id}/override")
def clear_override(
    tenant_id: str,
    actor_id: str = Depends(require_admin),
    engine: SubscriptionEngine = Depends(get_engine),
) -> dict:
    engine.renewals.clear_override(tenant_id, actor_id=actor_id)
    return engine.queries.get_status(tenant_id).to_dict()


def _status_for(exc: SubscriptionError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def subscription_error_handler(request: Request, exc: SubscriptionError) -> JSONResponse:
    status_code = _status_for(exc)
    details = exc.to_dict()
    details.pop("message", None)
    details.pop("error", None)
    if status_code >= 500:
        logger.error("Subscription request failed", extra={"code": exc.error_code, "path": request.url.path})
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": exc.error_code, "message": exc.message, "details": details}},
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": {"code": "INVALID_REQUEST", "message": str(exc), "details": {}}},
    )


def install_subscriptions(app: FastAPI, engine: SubscriptionEngine) -> FastAPI:
    app.state.subscriptions = engine
    app.include_router(router)
    app.include_router(admin_router)
    app.add_exception_handler(SubscriptionError, subscription_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    return app


def create_app(engine: Optional[SubscriptionEngine] = None) -> FastAPI:
    app = FastAPI(title="Clinic Subscriptions")
    return install_subscriptions(app, engine or SubscriptionEngine.from_environment())
