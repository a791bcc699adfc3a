"""
Subscription API routes.

- GET  /subscription/plans: Active plans with entitlement summaries (public)
- POST /subscription/checkout: Start a payment for a plan
- POST /subscription/verify: Verify a payment and activate the subscription
- POST /subscription/webhook: Paystack notifications (signature-checked)
- POST /subscription/cancel: Cancel at period end
- POST /subscription/renew: Pay for the current plan again
- POST /subscription/schedule-downgrade: Switch plans at period end
- GET  /subscription/current-plan: Active plan with live usage
- GET  /subscription/me: The caller's subscription row
"""
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from planguard.core.auth import get_current_user_id
from planguard.core.cache import get_cache
from planguard.core.config import settings
from planguard.features.billing.service import SubscriptionLifecycleManager, get_lifecycle_manager
from planguard.features.billing.webhooks import WebhookProcessor, parse_event, require_valid_signature
from planguard.features.plans.service import list_plans
from planguard.models.plan import Plan
from planguard.models.subscription import Subscription


router = APIRouter(prefix="/subscription", tags=["subscription"])


class CheckoutRequest(BaseModel):
    """Request to start a payment."""
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(alias="planId")
    callback_url: str = Field(alias="callbackUrl")


class VerifyRequest(BaseModel):
    reference: str


class RenewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    callback_url: str = Field(alias="callbackUrl")


class DowngradeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_plan_id: str = Field(alias="newPlanId")


def subscription_view(sub: Optional[Subscription]) -> Optional[Dict[str, Any]]:
    if sub is None:
        return None
    return {
        "id": sub.id,
        "userId": sub.user_id,
        "planId": sub.plan_id,
        "status": sub.status.value,
        "currentPeriodEnd": sub.current_period_end.isoformat() if sub.current_period_end else None,
        "cancelAtPeriodEnd": sub.cancel_at_period_end,
        "pendingPlanId": sub.pending_plan_id,
    }


def plan_view(plan: Optional[Plan]) -> Optional[Dict[str, Any]]:
    if plan is None:
        return None
    return {
        "id": plan.plan_id,
        "name": plan.name,
        "description": plan.description,
        "price": plan.price,
        "currency": settings.BILLING_CURRENCY,
        "interval": plan.interval,
        "isActive": plan.is_active,
        "entitlements": [
            {"key": item.key, "name": item.name, "type": item.type.value, "value": item.value}
            for item in plan.entitlements
        ],
    }


@router.get("/plans")
def get_plans():
    """Active plans, cheapest first."""
    return {"plans": [plan_view(plan) for plan in list_plans()]}


@router.post("/checkout")
def checkout(
    body: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Start a payment for a plan.

    Returns:
        {"authorizationUrl": "...", "reference": "SUB_..."}

    Errors:
        404: Unknown user or plan
        400: Plan inactive or free, downgrade over current usage
        503: Gateway unreachable or billing not configured
    """
    result = manager.checkout(user_id, body.plan_id, body.callback_url)
    return {
        "authorizationUrl": result.authorization_url,
        "reference": result.reference,
        "accessCode": result.access_code,
    }


@router.post("/verify")
def verify(
    body: VerifyRequest,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    """Verify a payment the caller owns; repeated calls return the same subscription."""
    sub = manager.verify_and_activate(body.reference, user_id=user_id)
    return {"subscription": subscription_view(sub)}


@router.post("/webhook")
async def webhook(
    request: Request,
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Paystack notification endpoint.

    Unauthenticated; the HMAC signature over the raw body is the only
    credential. Invalid signature -> 401 before the body is parsed.
    """
    raw_body = await request.body()
    require_valid_signature(raw_body, request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER))
    event = parse_event(raw_body)
    processor = WebhookProcessor(manager, get_cache())
    return await run_in_threadpool(processor.process, event)


@router.post("/cancel")
def cancel(
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    sub = manager.cancel_subscription(user_id)
    return {
        "message": "Subscription will be cancelled at the end of the current billing period",
        "subscription": subscription_view(sub),
    }


@router.post("/renew")
def renew(
    body: RenewRequest,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    result = manager.renew_subscription(user_id, body.callback_url)
    return {"authorizationUrl": result.authorization_url, "reference": result.reference}


@router.post("/schedule-downgrade")
def schedule_downgrade(
    body: DowngradeRequest,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    schedule = manager.schedule_downgrade(user_id, body.new_plan_id)
    return {
        "message": schedule.message,
        "currentPeriodEnd": schedule.current_period_end.isoformat() if schedule.current_period_end else None,
        "newPlan": plan_view(schedule.new_plan),
    }


@router.get("/current-plan")
def current_plan(
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    view = manager.get_current_plan(user_id)
    return {
        "plan": plan_view(view["plan"]),
        "subscription": subscription_view(view["subscription"]),
        "usage": view["usage"],
    }


@router.get("/me")
def my_subscription(
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    return {"subscription": subscription_view(manager.get_my_subscription(user_id))}
