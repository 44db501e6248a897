from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field


def to_minor_units(amount: float) -> int:
    """Currency amount -> integer minor units (cents)."""
    return int(round(amount * 100))


def from_minor_units(amount: int) -> float:
    return round(amount / 100, 2)


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class PaymentIntentResult(BaseModel):
    id: str
    status: str
    client_secret: Optional[str] = None
    amount: int = 0
    amount_received: int = 0
    currency: str = "usd"
    customer: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class GatewayCustomer(BaseModel):
    id: str
    email: Optional[str] = None


class TransferResult(BaseModel):
    id: str
    amount: int
    destination: str


class ConnectedAccount(BaseModel):
    id: str
    payouts_enabled: bool = False


class AccountLinkResult(BaseModel):
    url: str


class CheckoutSessionResult(BaseModel):
    id: str
    url: Optional[str] = None


class RefundResult(BaseModel):
    id: str
    status: str
    amount: int = 0


class GatewaySubscription(BaseModel):
    id: str
    status: str
    customer: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    price_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class GatewayEvent(BaseModel):
    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def object(self) -> Dict[str, Any]:
        return self.data.get("object") or {}


def subscription_from_payload(obj: Mapping[str, Any]) -> GatewaySubscription:
    """
    Parse a subscription object as delivered by the gateway.

    Newer API versions moved the billing period onto the subscription
    items; both layouts are accepted.
    """
    items: List[Mapping[str, Any]] = list((obj.get("items") or {}).get("data") or [])
    first_item: Mapping[str, Any] = items[0] if items else {}
    period_start = obj.get("current_period_start") or first_item.get("current_period_start")
    period_end = obj.get("current_period_end") or first_item.get("current_period_end")
    price = first_item.get("price") or {}
    return GatewaySubscription(
        id=obj["id"],
        status=obj.get("status") or "incomplete",
        customer=obj.get("customer"),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        trial_start=from_timestamp(obj.get("trial_start")),
        trial_end=from_timestamp(obj.get("trial_end")),
        canceled_at=from_timestamp(obj.get("canceled_at")),
        price_id=price.get("id") if isinstance(price, Mapping) else None,
        metadata=dict(obj.get("metadata") or {}),
    )


class PaymentGateway(ABC):
    """
    The external payment processor as seen by the services.

    Implementations raise `ExternalGatewayError` for any failed call and
    `ValidationError` for webhook payloads that fail verification.
    """

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Mapping[str, str],
        customer_id: Optional[str] = None,
    ) -> PaymentIntentResult: ...

    @abstractmethod
    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentResult: ...

    @abstractmethod
    async def create_customer(
        self, email: str, name: Optional[str] = None, metadata: Optional[Mapping[str, str]] = None
    ) -> GatewayCustomer: ...

    @abstractmethod
    async def create_refund(self, intent_id: str, reason: Optional[str] = None) -> RefundResult: ...

    @abstractmethod
    async def create_connected_account(
        self, email: str, metadata: Optional[Mapping[str, str]] = None
    ) -> ConnectedAccount: ...

    @abstractmethod
    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> AccountLinkResult: ...

    @abstractmethod
    async def create_transfer(
        self,
        amount: int,
        currency: str,
        destination: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> TransferResult: ...

    @abstractmethod
    async def create_checkout_session(
        self,
        mode: str,
        customer_id: str,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Optional[Mapping[str, str]] = None,
        trial_days: Optional[int] = None,
    ) -> CheckoutSessionResult: ...

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription: ...

    @abstractmethod
    async def update_subscription(
        self, subscription_id: str, cancel_at_period_end: bool
    ) -> GatewaySubscription: ...

    @abstractmethod
    async def construct_event(self, payload: bytes, signature: str) -> GatewayEvent: ...
