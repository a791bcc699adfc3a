"""
planguard/models/subscription.py

Subscription and payment state.

Subscription: pending_payment (checkout placeholder) -> active -> expired,
and back to active on a new successful payment.
Payment: pending -> success (terminal) | failed.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    pending_plan_id: Optional[str] = None

