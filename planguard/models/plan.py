"""
planguard/models/plan.py

Plans are priced bundles of entitlement values.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict

from planguard.models.entitlement import EntitlementType


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PlanEntitlement(BaseModel):
    """One entitlement value granted by a plan."""
    model_config = ConfigDict(frozen=True)

    entitlement_id: str
    key: str
    name: str
    type: EntitlementType
    value: Any


class Plan(BaseModel):
    """
    Plan represents a priced capability tier.

    `price` is in the major currency unit; the gateway is charged in
    minor units (see `price_minor`). Inactive plans are kept for existing
    subscribers but cannot be purchased.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    price: float
    interval: str
    is_active: bool = True
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    entitlements: tuple[PlanEntitlement, ...] = ()

    @property
    def price_minor(self) -> int:
        return int(round(self.price * 100))

    @property
    def is_free(self) -> bool:
        return self.price <= 0

    def entitlement_for(self, key: str) -> Optional[PlanEntitlement]:
        for item in self.entitlements:
            if item.key == key:
                return item
        return None
