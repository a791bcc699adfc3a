"""
Subscription lifecycle manager.

Coordinates:
- Checkout (placeholder subscription + pending payment, then the gateway)
- Idempotent payment verification and activation
- Cancellation, scheduled downgrade, renewal
- Subscription views with live usage

Payment reference is the activation idempotency key. Activation checks the
payment twice: once up front (fast path for already-processed payments)
and once inside the locking transaction right before any write, so when a
webhook and a client verify race, only one applies the side effects.

All gateway-specific code is in paystack_provider.py.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4
from sqlalchemy import select, insert, update

from planguard.core.cache import CachePort, get_cache
from planguard.core.config import settings
from planguard.core.database import (
    get_db_session,
    get_locking_session,
    session_scope,
    upsert,
    payments,
    subscriptions,
    as_utc,
)
from planguard.core.errors import (
    BadRequestError,
    ForbiddenError,
    InvalidPlanIntervalError,
    NotFoundError,
    ServiceUnavailableError,
)
from planguard.core.logging import log_event
from planguard.features.billing import jobs
from planguard.features.billing.provider import (
    GatewayUnavailableError,
    PaymentGateway,
    PaymentGatewayError,
)
from planguard.features.billing.paystack_provider import PaystackProvider
from planguard.features.plans import service as plan_service
from planguard.features.plans.config_cache import PlanConfigCache, get_plan_config_cache
from planguard.features.policies.frequency import parse_window
from planguard.features.usage import service as usage_service
from planguard.features.users.service import get_user, set_premium
from planguard.models.entitlement import EntitlementType
from planguard.models.plan import BillingInterval, Plan
from planguard.models.subscription import PaymentStatus, Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

PERIOD_LENGTH = {
    BillingInterval.MONTHLY.value: timedelta(days=30),
    BillingInterval.YEARLY.value: timedelta(days=365),
}


@dataclass
class CheckoutResult:
    authorization_url: str
    reference: str
    access_code: Optional[str] = None


@dataclass
class DowngradeSchedule:
    message: str
    current_period_end: Optional[datetime]
    new_plan: Plan


def billing_enabled() -> bool:
    """Check if billing is enabled (Paystack configured)."""
    return bool(settings.PAYSTACK_SECRET_KEY)


def get_gateway() -> Optional[PaymentGateway]:
    """Get payment gateway if billing is enabled."""
    if not billing_enabled():
        return None
    return PaystackProvider()


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return as_utc(now)


def new_payment_reference() -> str:
    return f"SUB_{uuid4().hex}"


def compute_period_end(interval: str, now: datetime) -> datetime:
    """
    Raises:
        InvalidPlanIntervalError: Interval other than monthly/yearly
    """
    length = PERIOD_LENGTH.get(interval)
    if length is None:
        logger.error("plan.invalid_interval", extra={"interval": interval})
        raise InvalidPlanIntervalError(f"Invalid plan interval: {interval}")
    return now + length


def _to_minor(amount: float) -> int:
    return int(round(amount * 100))


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=row.status,
        current_period_end=as_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        pending_plan_id=row.pending_plan_id,
    )


class SubscriptionLifecycleManager:
    def __init__(
        self,
        gateway: Optional[PaymentGateway],
        config_cache: PlanConfigCache,
        cache: CachePort,
    ):
        self.gateway = gateway
        self.config_cache = config_cache
        self.cache = cache

    def _require_gateway(self) -> PaymentGateway:
        if self.gateway is None:
            raise ServiceUnavailableError("Billing is not configured")
        return self.gateway

    # --- reads ---

    def _subscription_row(self, user_id: str):
        with session_scope() as s:
            return s.execute(select(subscriptions).where(subscriptions.c.user_id == user_id)).first()

    def _payment_row(self, reference: str):
        with session_scope() as s:
            return s.execute(select(payments).where(payments.c.reference == reference)).first()

    def get_my_subscription(self, user_id: str) -> Optional[Subscription]:
        row = self._subscription_row(user_id)
        return _row_to_subscription(row) if row else None

    def _require_active_subscription(self, user_id: str):
        row = self._subscription_row(user_id)
        if row is None:
            raise NotFoundError("No subscription found")
        if row.status != SubscriptionStatus.ACTIVE.value:
            return row, False
        return row, True

    def _load_purchasable_plan(self, plan_id: str) -> Plan:
        plan = plan_service.load_plan(plan_id)
        if plan is None:
            raise NotFoundError("Subscription plan not found")
        if not plan.is_active:
            raise BadRequestError("This subscription plan is not available")
        return plan

    def _mark_payment_failed(self, reference: str, reason: str) -> None:
        with get_db_session() as s:
            s.execute(
                update(payments)
                .where(payments.c.reference == reference, payments.c.status != PaymentStatus.SUCCESS.value)
                .values(status=PaymentStatus.FAILED.value, failure_reason=reason, updated_at=datetime.now(timezone.utc))
            )
        logger.warning("payment.failed", extra={"reference": reference, "reason": reason})

    # --- downgrade validation ---

    def validate_downgrade(self, user_id: str, target_plan: Plan) -> None:
        """
        Reject a move to `target_plan` when current usage already exceeds
        one of its counter limits.

        Raises:
            BadRequestError: With the violations as details
        """
        usage = usage_service.get_user_usage(user_id)
        violations: List[Dict[str, Any]] = []
        for item in target_plan.entitlements:
            if EntitlementType(item.type) != EntitlementType.COUNTER:
                continue
            used = usage.get(item.key, 0.0)
            if used > float(item.value):
                violations.append({"feature": item.key, "used": used, "limit": item.value})
        if violations:
            raise BadRequestError(
                "Current usage exceeds the limits of the selected plan",
                details=violations,
            )

    # --- checkout ---

    def checkout(
        self,
        user_id: str,
        plan_id: str,
        callback_url: str,
        now: Optional[datetime] = None,
    ) -> CheckoutResult:
        """
        Start paying for `plan_id`.

        Creates the user's placeholder subscription if they have none and a
        pending payment in one transaction, then asks the gateway for an
        authorization URL.

        Raises:
            NotFoundError: Unknown user or plan
            BadRequestError: Inactive/free plan, downgrade over usage, gateway rejection
            ServiceUnavailableError: Gateway unreachable or billing not configured
        """
        now = _normalize_now(now)
        user = get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not user.email:
            raise BadRequestError("An email address is required to start a payment")

        plan = self._load_purchasable_plan(plan_id)
        if plan.is_free:
            raise BadRequestError("The free plan does not require payment")
        gateway = self._require_gateway()

        current = self._subscription_row(user_id)
        if current is not None and current.status == SubscriptionStatus.ACTIVE.value:
            current_plan = plan_service.load_plan(current.plan_id)
            if current_plan is not None and plan.price < current_plan.price:
                self.validate_downgrade(user_id, plan)

        reference = new_payment_reference()
        with get_db_session() as s:
            s.execute(
                upsert(s, subscriptions)
                .values(
                    user_id=user_id,
                    plan_id=plan.plan_id,
                    status=SubscriptionStatus.PENDING_PAYMENT.value,
                    cancel_at_period_end=False,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=[subscriptions.c.user_id])
            )
            subscription_id = s.execute(
                select(subscriptions.c.id).where(subscriptions.c.user_id == user_id)
            ).scalar_one()
            s.execute(
                insert(payments).values(
                    reference=reference,
                    user_id=user_id,
                    subscription_id=subscription_id,
                    plan_id=plan.plan_id,
                    amount=plan.price,
                    currency=settings.BILLING_CURRENCY,
                    status=PaymentStatus.PENDING.value,
                    created_at=now,
                    updated_at=now,
                )
            )

        try:
            init = gateway.initialize_transaction(
                email=user.email,
                amount_minor=plan.price_minor,
                reference=reference,
                callback_url=callback_url,
                channels=settings.payment_channels,
                metadata={"user_id": user_id, "plan_id": plan.plan_id},
            )
        except GatewayUnavailableError:
            self._mark_payment_failed(reference, "Payment gateway unavailable")
            raise ServiceUnavailableError("Payment service is temporarily unavailable")
        except PaymentGatewayError as e:
            self._mark_payment_failed(reference, str(e))
            raise BadRequestError(f"Could not start payment: {e}")

        log_event(
            "info",
            "checkout.started",
            request_id=None,
            user_id=user_id,
            reference=reference,
            extra={"plan_id": plan.plan_id, "amount_minor": plan.price_minor},
        )
        return CheckoutResult(
            authorization_url=init.authorization_url,
            reference=reference,
            access_code=init.access_code,
        )

    # --- verification / activation ---

    def verify_and_activate(
        self,
        reference: str,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Verify a payment with the gateway and activate the subscription.

        Safe to call any number of times for the same reference: once the
        payment is successful, every call returns the same subscription
        without touching the gateway or re-applying side effects.

        Raises:
            NotFoundError: Unknown reference or plan
            ForbiddenError: Reference belongs to another user
            BadRequestError: Gateway reports failure, currency/amount mismatch
            InvalidPlanIntervalError: Plan interval is not monthly/yearly
            ServiceUnavailableError: Gateway unreachable
        """
        now = _normalize_now(now)
        payment = self._payment_row(reference)
        if payment is None:
            raise NotFoundError("Payment record not found")
        if user_id is not None and payment.user_id != user_id:
            logger.warning(
                "payment.verify_forbidden",
                extra={"reference": reference, "user_id": user_id, "owner_id": payment.user_id},
            )
            raise ForbiddenError("You are not authorized to verify this payment")

        if payment.status == PaymentStatus.SUCCESS.value:
            return self.get_my_subscription(payment.user_id)

        gateway = self._require_gateway()
        try:
            verification = gateway.verify_transaction(reference)
        except GatewayUnavailableError:
            raise ServiceUnavailableError("Payment service is temporarily unavailable")
        except PaymentGatewayError as e:
            raise BadRequestError(f"Payment verification failed: {e}")

        if not verification.succeeded:
            reason = verification.gateway_response or f"Payment status: {verification.status}"
            self._mark_payment_failed(reference, reason)
            raise BadRequestError(f"Payment was not successful: {reason}")

        if verification.currency.upper() != payment.currency.upper():
            self._mark_payment_failed(reference, f"Currency mismatch: {verification.currency}")
            raise BadRequestError("Invalid payment currency")

        if verification.amount_minor < _to_minor(payment.amount):
            self._mark_payment_failed(
                reference,
                f"Amount mismatch: paid {verification.amount_minor}, expected {_to_minor(payment.amount)}",
            )
            raise BadRequestError("Payment amount does not match the plan price")

        plan = plan_service.load_plan(payment.plan_id)
        if plan is None:
            raise NotFoundError("Subscription plan not found")
        period_end = compute_period_end(plan.interval, now)
        paid_at = verification.paid_at or now

        with get_locking_session(
            settings.ACTIVATION_LOCK_TIMEOUT_MS,
            settings.ACTIVATION_STATEMENT_TIMEOUT_MS,
        ) as s:
            # Row lock on PostgreSQL; SQLite ignores FOR UPDATE
            s.execute(
                select(payments.c.status)
                .where(payments.c.reference == reference)
                .with_for_update()
            ).scalar_one()
            # The status flip is the compare-and-set; only one caller can win it
            flipped = s.execute(
                update(payments)
                .where(
                    payments.c.reference == reference,
                    payments.c.status != PaymentStatus.SUCCESS.value,
                )
                .values(
                    status=PaymentStatus.SUCCESS.value,
                    paid_at=paid_at,
                    channel=verification.channel,
                    failure_reason=None,
                    updated_at=now,
                )
            )
            activated = flipped.rowcount == 1
            if activated:
                stmt = upsert(s, subscriptions).values(
                    user_id=payment.user_id,
                    plan_id=plan.plan_id,
                    status=SubscriptionStatus.ACTIVE.value,
                    current_period_end=period_end,
                    cancel_at_period_end=False,
                    pending_plan_id=None,
                    created_at=now,
                    updated_at=now,
                )
                s.execute(
                    stmt.on_conflict_do_update(
                        index_elements=[subscriptions.c.user_id],
                        set_={
                            "plan_id": stmt.excluded.plan_id,
                            "status": stmt.excluded.status,
                            "current_period_end": stmt.excluded.current_period_end,
                            "cancel_at_period_end": False,
                            "pending_plan_id": None,
                            "updated_at": now,
                        },
                    )
                )
                set_premium(payment.user_id, True, session=s)
                # New billing period starts with fresh quotas
                usage_service.reset_user_usage(payment.user_id, now=now, reset_at=period_end, session=s)

        if activated:
            self.config_cache.invalidate_user_plan(payment.user_id)
            log_event(
                "info",
                "subscription.activated",
                request_id=None,
                user_id=payment.user_id,
                reference=reference,
                extra={"plan_id": plan.plan_id, "current_period_end": period_end.isoformat()},
            )
        else:
            logger.info("payment.already_processed", extra={"reference": reference})

        return self.get_my_subscription(payment.user_id)

    # --- cancellation / downgrade / renewal ---

    def cancel_subscription(self, user_id: str) -> Subscription:
        """Flag the subscription to end at period end; status and dates are unchanged."""
        row, active = self._require_active_subscription(user_id)
        if not active:
            raise BadRequestError("Cannot cancel a subscription that is not active")

        with get_db_session() as s:
            s.execute(
                update(subscriptions)
                .where(subscriptions.c.id == row.id)
                .values(cancel_at_period_end=True, updated_at=datetime.now(timezone.utc))
            )
        logger.info("subscription.cancel_scheduled", extra={"user_id": user_id, "subscription_id": row.id})
        return self.get_my_subscription(user_id)

    def schedule_downgrade(self, user_id: str, new_plan_id: str) -> DowngradeSchedule:
        """Record a switch to a cheaper plan that the expiration sweep applies at period end."""
        row, active = self._require_active_subscription(user_id)
        if not active:
            raise BadRequestError("Only active subscriptions can be downgraded")
        if new_plan_id == row.plan_id:
            raise BadRequestError("You are already on this plan")

        new_plan = self._load_purchasable_plan(new_plan_id)
        current_plan = plan_service.load_plan(row.plan_id)
        if current_plan is not None and new_plan.price > current_plan.price:
            raise BadRequestError("Use checkout to upgrade to a more expensive plan")
        self.validate_downgrade(user_id, new_plan)

        with get_db_session() as s:
            s.execute(
                update(subscriptions)
                .where(subscriptions.c.id == row.id)
                .values(
                    pending_plan_id=new_plan.plan_id,
                    cancel_at_period_end=False,
                    updated_at=datetime.now(timezone.utc),
                )
            )
        period_end = as_utc(row.current_period_end)
        logger.info(
            "subscription.downgrade_scheduled",
            extra={"user_id": user_id, "from_plan": row.plan_id, "to_plan": new_plan.plan_id},
        )
        return DowngradeSchedule(
            message=f"Your plan will change to {new_plan.name} at the end of the current billing period",
            current_period_end=period_end,
            new_plan=new_plan,
        )

    def renew_subscription(self, user_id: str, callback_url: str) -> CheckoutResult:
        """Start a payment for the user's current plan."""
        row = self._subscription_row(user_id)
        if row is None:
            raise NotFoundError("No subscription found")
        if row.cancel_at_period_end:
            raise BadRequestError("Subscription is set to cancel at the end of the period")
        return self.checkout(user_id, row.plan_id, callback_url)

    # --- views ---

    def get_current_plan(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Active plan with live usage for every feature key it carries."""
        now = _normalize_now(now)
        plan = self.config_cache.get_user_active_plan(user_id)
        subscription = self.get_my_subscription(user_id)
        if plan is None:
            return {"plan": None, "subscription": subscription, "usage": {}}

        counters = usage_service.get_user_usage(user_id, now=now)
        usage: Dict[str, Dict[str, Any]] = {}
        for item in plan.entitlements:
            etype = EntitlementType(item.type)
            if etype == EntitlementType.COUNTER:
                used = counters.get(item.key, 0.0)
                usage[item.key] = {
                    "type": etype.value,
                    "limit": item.value,
                    "used": used,
                    "remaining": max(0.0, float(item.value) - used),
                }
            elif etype == EntitlementType.FREQUENCY:
                window = item.value.get("window") or "1h"
                used = usage_service.get_usage_in_window(user_id, item.key, now - parse_window(window))
                usage[item.key] = {
                    "type": etype.value,
                    "limit": item.value.get("limit"),
                    "window": window,
                    "used": used,
                    "remaining": max(0.0, float(item.value.get("limit") or 0) - used),
                }
            elif etype == EntitlementType.BOOLEAN:
                usage[item.key] = {"type": etype.value, "enabled": item.value is True}
            elif etype == EntitlementType.LEVEL:
                usage[item.key] = {"type": etype.value, "level": item.value}
        return {"plan": plan, "subscription": subscription, "usage": usage}

    # --- periodic jobs ---

    def handle_expired_subscriptions(self, now: Optional[datetime] = None) -> int:
        return jobs.handle_expired_subscriptions(self.config_cache, self.cache, now=now)

    def cleanup_abandoned_payments(self, now: Optional[datetime] = None) -> int:
        return jobs.cleanup_abandoned_payments(self.cache, now=now)


_manager: Optional[SubscriptionLifecycleManager] = None


def get_lifecycle_manager() -> SubscriptionLifecycleManager:
    global _manager
    if _manager is None:
        _manager = SubscriptionLifecycleManager(get_gateway(), get_plan_config_cache(), get_cache())
    return _manager


def set_lifecycle_manager(manager: Optional[SubscriptionLifecycleManager]) -> None:
    global _manager
    _manager = manager
