"""
Admin API routes.

Plans & entitlements:
- GET/POST /admin/plans, GET/PATCH/DELETE /admin/plans/{plan_id}
- PUT/DELETE /admin/plans/{plan_id}/entitlements/{key}
- GET/POST /admin/entitlements, GET/PATCH /admin/entitlements/{key}
- POST /admin/plans/seed

Payments & jobs:
- GET /admin/payments/failures, GET /admin/payments/stats
- POST /admin/jobs/sweep, POST /admin/jobs/cleanup, GET /admin/jobs/cleanup/metrics

Every mutation invalidates the affected cache entries.
"""
import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from planguard.core.admin_auth import AdminActor, require_admin
from planguard.features.billing import admin_service
from planguard.features.billing.jobs import get_cleanup_metrics
from planguard.features.billing.service import SubscriptionLifecycleManager, get_lifecycle_manager
from planguard.features.plans import service as plan_service
from planguard.features.plans.config_cache import PlanConfigCache, get_plan_config_cache
from planguard.models.entitlement import Entitlement
from planguard.models.plan import Plan

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class PlanCreate(BaseModel):
    name: str
    price: float
    interval: str = "monthly"
    description: Optional[str] = None
    is_active: bool = True
    entitlements: Dict[str, Any] = {}


class PlanUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = None
    interval: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    entitlements: Optional[Dict[str, Any]] = None


class EntitlementValue(BaseModel):
    value: Any


class EntitlementCreate(BaseModel):
    key: str
    name: str
    type: str
    description: Optional[str] = None


class EntitlementUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


def _plan(plan: Plan) -> Dict[str, Any]:
    return plan.model_dump(mode="json")


def _entitlement(entitlement: Entitlement) -> Dict[str, Any]:
    return entitlement.model_dump(mode="json")


def _audit(actor: AdminActor, action: str, target: str) -> None:
    logger.info("admin.action", extra={"actor": actor.actor_id, "action": action, "target": target})


# --- plans ---

@router.get("/plans")
def list_plans(include_inactive: bool = True, actor: AdminActor = Depends(require_admin)):
    return {"plans": [_plan(p) for p in plan_service.list_plans(include_inactive=include_inactive)]}


@router.post("/plans", status_code=201)
def create_plan(body: PlanCreate, actor: AdminActor = Depends(require_admin)):
    plan = plan_service.create_plan(
        name=body.name,
        price=body.price,
        interval=body.interval,
        description=body.description,
        is_active=body.is_active,
        entitlement_values=body.entitlements,
    )
    _audit(actor, "plan.create", plan.plan_id)
    return _plan(plan)


@router.post("/plans/seed")
def seed_plans(actor: AdminActor = Depends(require_admin)):
    plans = plan_service.seed_default_plans()
    _audit(actor, "plan.seed", ",".join(p.plan_id for p in plans))
    return {"plans": [_plan(p) for p in plans]}


@router.get("/plans/{plan_id}")
def get_plan(plan_id: str, actor: AdminActor = Depends(require_admin)):
    return _plan(plan_service.get_plan(plan_id))


@router.patch("/plans/{plan_id}")
def update_plan(
    plan_id: str,
    body: PlanUpdate,
    actor: AdminActor = Depends(require_admin),
    config_cache: PlanConfigCache = Depends(get_plan_config_cache),
):
    plan = plan_service.update_plan(
        plan_id,
        name=body.name,
        description=body.description,
        price=body.price,
        interval=body.interval,
        is_active=body.is_active,
        entitlement_values=body.entitlements,
        cache=config_cache,
    )
    _audit(actor, "plan.update", plan_id)
    return _plan(plan)


@router.delete("/plans/{plan_id}")
def delete_plan(
    plan_id: str,
    actor: AdminActor = Depends(require_admin),
    config_cache: PlanConfigCache = Depends(get_plan_config_cache),
):
    result = plan_service.delete_plan(plan_id, cache=config_cache)
    _audit(actor, f"plan.{result['result']}", plan_id)
    return result


@router.put("/plans/{plan_id}/entitlements/{key}")
def set_plan_entitlement(
    plan_id: str,
    key: str,
    body: EntitlementValue,
    actor: AdminActor = Depends(require_admin),
    config_cache: PlanConfigCache = Depends(get_plan_config_cache),
):
    plan = plan_service.set_plan_entitlement(plan_id, key, body.value, cache=config_cache)
    _audit(actor, "plan.entitlement.set", f"{plan_id}:{key}")
    return _plan(plan)


@router.delete("/plans/{plan_id}/entitlements/{key}")
def remove_plan_entitlement(
    plan_id: str,
    key: str,
    actor: AdminActor = Depends(require_admin),
    config_cache: PlanConfigCache = Depends(get_plan_config_cache),
):
    plan = plan_service.remove_plan_entitlement(plan_id, key, cache=config_cache)
    _audit(actor, "plan.entitlement.remove", f"{plan_id}:{key}")
    return _plan(plan)


# --- entitlements ---

@router.get("/entitlements")
def list_entitlements(actor: AdminActor = Depends(require_admin)):
    return {"entitlements": [_entitlement(e) for e in plan_service.list_entitlements()]}


@router.post("/entitlements", status_code=201)
def create_entitlement(body: EntitlementCreate, actor: AdminActor = Depends(require_admin)):
    entitlement = plan_service.create_entitlement(body.key, body.name, body.type, body.description)
    _audit(actor, "entitlement.create", entitlement.key)
    return _entitlement(entitlement)


@router.get("/entitlements/{key}")
def get_entitlement(key: str, actor: AdminActor = Depends(require_admin)):
    return _entitlement(plan_service.get_entitlement_by_key(key))


@router.patch("/entitlements/{key}")
def update_entitlement(
    key: str,
    body: EntitlementUpdate,
    actor: AdminActor = Depends(require_admin),
    config_cache: PlanConfigCache = Depends(get_plan_config_cache),
):
    entitlement = plan_service.update_entitlement(
        key, name=body.name, description=body.description, cache=config_cache
    )
    _audit(actor, "entitlement.update", key)
    return _entitlement(entitlement)


# --- payments & jobs ---

@router.get("/payments/failures")
def payment_failures(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=admin_service.MAX_PAGE_SIZE),
    actor: AdminActor = Depends(require_admin),
):
    return admin_service.get_recent_payment_failures(page=page, limit=limit)


@router.get("/payments/stats")
def payment_stats(actor: AdminActor = Depends(require_admin)):
    return {"channels": admin_service.get_payment_method_stats()}


@router.post("/jobs/sweep")
def run_sweep(
    actor: AdminActor = Depends(require_admin),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    processed = manager.handle_expired_subscriptions()
    _audit(actor, "job.sweep", str(processed))
    return {"processed": processed}


@router.post("/jobs/cleanup")
def run_cleanup(
    actor: AdminActor = Depends(require_admin),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    cleaned = manager.cleanup_abandoned_payments()
    _audit(actor, "job.cleanup", str(cleaned))
    return {"cleaned": cleaned, "metrics": get_cleanup_metrics()}


@router.get("/jobs/cleanup/metrics")
def cleanup_metrics(actor: AdminActor = Depends(require_admin)):
    return get_cleanup_metrics()
