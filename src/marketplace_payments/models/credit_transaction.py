from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class CreditTransactionType(str, Enum):
    SUBSCRIPTION = "subscription"
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class CreditTransaction(DBSerializableModel):
    """
    Immutable credit ledger entry.

    `amount` is signed: positive for grants, negative for deductions. The
    sum of a user's entries equals their `credits` balance as long as no
    deduction/grant was interrupted between its two writes.
    A non-null `reference` is unique per user and type.
    """

    collection_name: ClassVar[str] = "credit_transactions"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("user_id", "created_at"),
        ("user_id", "reference"),
    )
    unique_indexes: ClassVar[tuple[tuple[str, ...], ...]] = (("user_id", "reference", "type"),)

    id: Optional[str] = Field(default=None)
    user_id: str
    amount: int
    type: CreditTransactionType
    description: str
    reference: Optional[str] = Field(
        default=None,
        description="Booking id, external session/invoice id, ... used for idempotency checks.",
    )
    created_at: datetime = Field(default_factory=utcnow)
