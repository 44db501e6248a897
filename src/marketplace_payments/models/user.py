from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, List, Optional

from pydantic import Field

from .base import TimestampedModel


class UserRole(str, Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"


class UserAccount(TimestampedModel):
    """
    Marketplace user as seen by the payment core.

    `credits` is only ever mutated through the credit ledger; the
    subscription fields are only mutated by billing webhook handlers.
    """

    collection_name: ClassVar[str] = "users"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("email",),
        ("stripe_customer_id",),
    )

    id: Optional[str] = Field(default=None)
    name: str
    email: str
    role: UserRole = UserRole.CUSTOMER
    credits: int = 0

    subscription_type: str = Field(default="none", description="none | regular | premium")
    subscription_status: str = Field(
        default="none",
        description="Mirrors the external subscription status (active, trialing, past_due, ...).",
    )
    trial_ends_at: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    subscription_ids: List[str] = Field(default_factory=list)
