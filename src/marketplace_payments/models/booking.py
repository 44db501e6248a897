from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Optional

from pydantic import Field

from .base import DBSerializableModel, TimestampedModel
from .refs import Ref
from .user import UserAccount


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingPaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PROCESSING = "processing"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"


BOOKING_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in BOOKING_TRANSITIONS[BookingStatus(current)]


class Service(DBSerializableModel):
    """Listing a provider offers. Owned by the catalog; read-only here."""

    collection_name: ClassVar[str] = "services"

    id: Optional[str] = Field(default=None)
    name: str
    category: Optional[str] = None
    provider_id: str
    price: float = 0.0
    is_active: bool = True


class Booking(TimestampedModel):
    collection_name: ClassVar[str] = "bookings"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("customer_id", "status"),
        ("provider_id", "status"),
    )

    id: Optional[str] = Field(default=None)
    service_id: str
    customer_id: str
    provider_id: str
    service_option: str
    price: float
    date: datetime
    time_slot: str
    address: str
    notes: Optional[str] = None
    status: BookingStatus = BookingStatus.PENDING
    payment_status: BookingPaymentStatus = BookingPaymentStatus.UNPAID
    payment_id: Optional[str] = None


@dataclass
class BookingDetails:
    """Booking with its service and parties resolved for display."""

    booking: Booking
    service: Ref[Service]
    customer: Ref[UserAccount]
    provider: Ref[UserAccount]

    def to_dict(self) -> Dict[str, Any]:
        data = self.booking.model_dump(mode="json")
        data["service"] = _ref_dump(self.service, ("id", "name", "category"))
        data["customer"] = _ref_dump(self.customer, ("id", "name", "email"))
        data["provider"] = _ref_dump(self.provider, ("id", "name", "email"))
        return data


def _ref_dump(ref: Ref, fields: tuple[str, ...]) -> Dict[str, Any]:
    value = getattr(ref, "value", None)
    if value is None:
        return {"id": ref.id}
    return value.model_dump(mode="json", include=set(fields))
