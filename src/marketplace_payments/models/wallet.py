from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, TimestampedModel, utcnow


class WalletUserType(str, Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"


class Wallet(TimestampedModel):
    """
    Per-user currency balance, fed by deposits and escrow releases and
    drained by withdrawals. `balance` only changes alongside a
    `WalletTransaction`.
    """

    collection_name: ClassVar[str] = "wallets"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (("stripe_account_id",),)
    unique_indexes: ClassVar[tuple[tuple[str, ...], ...]] = (("user_id",),)

    id: Optional[str] = Field(default=None)
    user_id: str
    user_type: WalletUserType
    balance: float = 0.0
    is_active: bool = True
    stripe_account_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    bank_account_connected: bool = False


class WalletTransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    SERVICE_PAYMENT = "service_payment"
    REFUND = "refund"


class WalletTransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WalletTransaction(DBSerializableModel):
    collection_name: ClassVar[str] = "wallet_transactions"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("wallet_id", "created_at"),
    )
    unique_indexes: ClassVar[tuple[tuple[str, ...], ...]] = (("stripe_payment_id",),)

    id: Optional[str] = Field(default=None)
    wallet_id: str
    user_id: str
    amount: float
    type: WalletTransactionType
    status: WalletTransactionStatus = WalletTransactionStatus.PENDING
    booking_id: Optional[str] = None
    stripe_payment_id: Optional[str] = None
    stripe_transfer_id: Optional[str] = None
    description: str
    created_at: datetime = Field(default_factory=utcnow)
