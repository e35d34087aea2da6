"""
Static subscription plan table.

The table is built once when the module is imported and exposed as a
read-only mapping. Looking up an unknown plan id is an error, never a
fallback to the free plan.
"""
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from pydantic import BaseModel, model_validator

from celebthumb.core.config import Settings, settings
from celebthumb.core.exceptions import InvalidPlanError

FREE_PLAN_ID = "free"


class Plan(BaseModel):
    """A subscription tier: monthly credit allotment, price and features."""
    id: str
    name: str
    price_id: Optional[str] = None  # Stripe price reference
    credits: int
    price_per_month: Decimal = Decimal("0")
    features: Tuple[str, ...] = ()

    class Config:
        frozen = True

    @model_validator(mode="after")
    def check_price_reference(self) -> "Plan":
        if self.credits < 0:
            raise ValueError(f"Plan '{self.id}' grants a negative allotment")
        if self.is_paid and not self.price_id:
            raise ValueError(f"Paid plan '{self.id}' has no billing price reference")
        return self

    @property
    def is_paid(self) -> bool:
        return self.price_per_month > 0


def load_plans(config: Settings) -> Mapping[str, Plan]:
    plans = [
        Plan(
            id=FREE_PLAN_ID,
            name="Free Tier",
            credits=10,
            price_per_month=Decimal("0"),
            features=(
                "10 thumbnails per month",
                "Basic styles",
                "Standard quality",
            ),
        ),
        Plan(
            id="pro",
            name="Pro",
            price_id=config.STRIPE_PRO_PRICE_ID,
            credits=100,
            price_per_month=Decimal("29.99"),
            features=(
                "100 thumbnails per month",
                "Advanced styles",
                "HD quality",
                "Priority processing",
            ),
        ),
        Plan(
            id="enterprise",
            name="Enterprise",
            price_id=config.STRIPE_ENTERPRISE_PRICE_ID,
            credits=1000,
            price_per_month=Decimal("199.99"),
            features=(
                "1000 thumbnails per month",
                "Custom styles",
                "4K quality",
                "Dedicated support",
                "API access",
            ),
        ),
    ]
    return MappingProxyType({plan.id: plan for plan in plans})


def get_plan(plans: Mapping[str, Plan], plan_id: str) -> Plan:
    """Look up a plan, raising InvalidPlanError for unknown ids."""
    plan = plans.get(plan_id)
    if plan is None:
        raise InvalidPlanError(plan_id)
    return plan


PLANS = load_plans(settings)
