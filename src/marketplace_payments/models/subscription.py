from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Dict, Optional

from pydantic import BaseModel, Field

from .base import TimestampedModel


class BillingPeriod(str, Enum):
    MONTHLY = "month"
    YEARLY = "year"


class SubscriptionType(str, Enum):
    REGULAR = "regular"
    PREMIUM = "premium"


class SubscriptionPlan(BaseModel):
    """
    Plan definition shared across users. Plans are a fixed catalog; the
    external price id comes from configuration.
    """

    key: SubscriptionType
    name: str
    price_id: str = ""
    trial_days: int
    initial_credits: int = Field(description="Granted once when the subscription is created.")
    cycle_credits: int = Field(description="Granted on every paid renewal invoice.")
    billing_period: BillingPeriod


class CreditPackage(BaseModel):
    key: str
    name: str
    credits: int
    price: float


CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    "small": CreditPackage(key="small", name="Small Credit Package", credits=20, price=5.99),
    "medium": CreditPackage(key="medium", name="Medium Credit Package", credits=50, price=12.99),
    "large": CreditPackage(key="large", name="Large Credit Package", credits=100, price=19.99),
}


def build_plan_catalog(
    regular_price_id: str = "", premium_price_id: str = ""
) -> Dict[SubscriptionType, SubscriptionPlan]:
    return {
        SubscriptionType.REGULAR: SubscriptionPlan(
            key=SubscriptionType.REGULAR,
            name="Regular Subscription",
            price_id=regular_price_id,
            trial_days=7,
            initial_credits=10,
            cycle_credits=100,
            billing_period=BillingPeriod.MONTHLY,
        ),
        SubscriptionType.PREMIUM: SubscriptionPlan(
            key=SubscriptionType.PREMIUM,
            name="Premium Subscription",
            price_id=premium_price_id,
            trial_days=10,
            initial_credits=20,
            cycle_credits=200,
            billing_period=BillingPeriod.YEARLY,
        ),
    }


class Subscription(TimestampedModel):
    """
    Local mirror of an external recurring-billing subscription. Created and
    updated by billing webhook handlers only.
    """

    collection_name: ClassVar[str] = "subscriptions"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("stripe_subscription_id",),
        ("user_id", "is_active"),
    )

    id: Optional[str] = Field(default=None)
    user_id: str
    name: Optional[str] = None
    stripe_customer_id: str
    stripe_subscription_id: str
    subscription_type: SubscriptionType
    status: str
    is_active: bool = True
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
