from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from .booking import BookingStatus
from .subscription import SubscriptionType
from .user import UserRole


class ApiResponse(BaseModel):
    success: bool = True
    data: Any = None
    count: Optional[int] = None


class RegisterUserRequest(BaseModel):
    name: str
    email: str
    role: UserRole = UserRole.CUSTOMER


class CreditBalanceResponse(BaseModel):
    user_id: str
    credits: int


class BookingCreateRequest(BaseModel):
    service_id: str
    service_option: str
    date: datetime
    time_slot: str
    address: str
    notes: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0, description="Defaults to the service price.")


class BookingStatusRequest(BaseModel):
    status: BookingStatus


class PaymentIntentRequest(BaseModel):
    booking_id: str


class ReleasePaymentRequest(BaseModel):
    booking_id: str


class RefundPaymentRequest(BaseModel):
    booking_id: str
    reason: Optional[str] = None


class DepositRequest(BaseModel):
    amount: float = Field(gt=0)


class ConfirmDepositRequest(BaseModel):
    payment_intent_id: str
    amount: Optional[float] = None


class WithdrawRequest(BaseModel):
    amount: float = Field(gt=0)


class CheckoutRequest(BaseModel):
    plan: SubscriptionType


class PurchaseCreditsRequest(BaseModel):
    package: str


class ActivateSubscriptionRequest(BaseModel):
    subscription_id: str


class AdjustCreditsRequest(BaseModel):
    user_id: str
    amount: int = Field(gt=0)
    description: str = "Manual credit adjustment"
