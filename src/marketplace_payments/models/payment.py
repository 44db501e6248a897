from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Dict, FrozenSet, Optional

from pydantic import Field

from .base import TimestampedModel
from .booking import BookingPaymentStatus


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    FAILED = "failed"


PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PROCESSING, PaymentStatus.HELD, PaymentStatus.FAILED}
    ),
    PaymentStatus.PROCESSING: frozenset(
        {
            PaymentStatus.HELD,
            PaymentStatus.REFUNDED,
            PaymentStatus.FAILED,
            PaymentStatus.PENDING,
        }
    ),
    PaymentStatus.HELD: frozenset({PaymentStatus.RELEASED, PaymentStatus.REFUNDED}),
    PaymentStatus.RELEASED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}

TERMINAL_PAYMENT_STATUSES = frozenset(
    status for status, targets in PAYMENT_TRANSITIONS.items() if not targets
)

# Local payment status -> booking.payment_status
BOOKING_STATUS_FROM_PAYMENT: Dict[PaymentStatus, BookingPaymentStatus] = {
    PaymentStatus.PENDING: BookingPaymentStatus.UNPAID,
    PaymentStatus.PROCESSING: BookingPaymentStatus.PROCESSING,
    PaymentStatus.HELD: BookingPaymentStatus.PAID,
    PaymentStatus.RELEASED: BookingPaymentStatus.PAID,
    PaymentStatus.REFUNDED: BookingPaymentStatus.REFUNDED,
    PaymentStatus.FAILED: BookingPaymentStatus.FAILED,
}

# Gateway payment-intent status -> local payment status
STATUS_FROM_GATEWAY: Dict[str, PaymentStatus] = {
    "succeeded": PaymentStatus.HELD,
    "processing": PaymentStatus.PROCESSING,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PENDING,
    "canceled": PaymentStatus.FAILED,
}


def map_gateway_status(gateway_status: str) -> PaymentStatus:
    return STATUS_FROM_GATEWAY.get(gateway_status, PaymentStatus.FAILED)


def is_noop(current: PaymentStatus, target: PaymentStatus) -> bool:
    return PaymentStatus(current) == PaymentStatus(target)


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


class Payment(TimestampedModel):
    """
    Escrow record linked 1:1 to a booking. Its status mirrors the external
    payment intent (`stripe_payment_intent_id` is the correlation key).
    """

    collection_name: ClassVar[str] = "payments"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("stripe_payment_intent_id",),
        ("booking_id",),
        ("status", "updated_at"),
    )

    id: Optional[str] = Field(default=None)
    booking_id: str
    customer_id: str
    provider_id: str
    amount: float
    currency: str = "usd"
    stripe_payment_intent_id: str
    status: PaymentStatus = PaymentStatus.PENDING
    release_date: Optional[datetime] = None
    refund_id: Optional[str] = None
