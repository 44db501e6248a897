from __future__ import annotations

import hashlib
import hmac
import json
from itertools import count
from typing import Any, Dict, List, Mapping, Optional, Set

from ..errors import ExternalGatewayError, NotFoundError, ValidationError
from .base import (
    AccountLinkResult,
    CheckoutSessionResult,
    ConnectedAccount,
    GatewayCustomer,
    GatewayEvent,
    GatewaySubscription,
    PaymentGateway,
    PaymentIntentResult,
    RefundResult,
    TransferResult,
)


class InMemoryPaymentGateway(PaymentGateway):
    """
    Deterministic gateway used for tests and local development.

    Webhook payloads are "signed" with an HMAC-SHA256 of the raw body using
    the configured secret; `sign()` produces a matching signature.
    """

    def __init__(self, webhook_secret: str = "whsec_test") -> None:
        self._webhook_secret = webhook_secret
        self._ids = count(1)
        self.intents: Dict[str, PaymentIntentResult] = {}
        self.customers: Dict[str, GatewayCustomer] = {}
        self.accounts: Dict[str, ConnectedAccount] = {}
        self.transfers: List[TransferResult] = []
        self.refunds: List[RefundResult] = []
        self.checkout_sessions: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, GatewaySubscription] = {}
        self.failing_operations: Set[str] = set()
        self.failing_intents: Set[str] = set()

    def _next(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _check(self, operation: str) -> None:
        if operation in self.failing_operations:
            raise ExternalGatewayError(
                f"Payment gateway error during {operation}", details={"operation": operation}
            )

    # Test helpers
    def set_intent_status(self, intent_id: str, status: str, amount_received: Optional[int] = None) -> None:
        intent = self.intents[intent_id]
        intent.status = status
        if status == "succeeded":
            intent.amount_received = intent.amount if amount_received is None else amount_received

    def add_intent(
        self, amount: int, status: str = "requires_payment_method", metadata: Optional[Mapping[str, str]] = None
    ) -> PaymentIntentResult:
        intent_id = self._next("pi")
        intent = PaymentIntentResult(
            id=intent_id,
            status=status,
            client_secret=f"{intent_id}_secret",
            amount=amount,
            amount_received=amount if status == "succeeded" else 0,
            currency="usd",
            metadata=dict(metadata or {}),
        )
        self.intents[intent_id] = intent
        return intent.model_copy()

    def sign(self, payload: bytes) -> str:
        return hmac.new(self._webhook_secret.encode(), payload, hashlib.sha256).hexdigest()

    def build_event(self, event_type: str, obj: Mapping[str, Any], event_id: Optional[str] = None) -> bytes:
        body = {"id": event_id or self._next("evt"), "type": event_type, "data": {"object": dict(obj)}}
        return json.dumps(body).encode()

    # PaymentGateway
    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Mapping[str, str],
        customer_id: Optional[str] = None,
    ) -> PaymentIntentResult:
        self._check("payment_intent.create")
        intent_id = self._next("pi")
        intent = PaymentIntentResult(
            id=intent_id,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret",
            amount=amount,
            currency=currency,
            customer=customer_id,
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        return intent.model_copy()

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentResult:
        self._check("payment_intent.retrieve")
        if intent_id in self.failing_intents:
            raise ExternalGatewayError(
                "Payment gateway error during payment_intent.retrieve",
                details={"payment_intent_id": intent_id},
            )
        intent = self.intents.get(intent_id)
        if intent is None:
            raise ExternalGatewayError("No such payment_intent", details={"payment_intent_id": intent_id})
        return intent.model_copy()

    async def create_customer(
        self, email: str, name: Optional[str] = None, metadata: Optional[Mapping[str, str]] = None
    ) -> GatewayCustomer:
        self._check("customer.create")
        customer = GatewayCustomer(id=self._next("cus"), email=email)
        self.customers[customer.id] = customer
        return customer

    async def create_refund(self, intent_id: str, reason: Optional[str] = None) -> RefundResult:
        self._check("refund.create")
        intent = self.intents.get(intent_id)
        if intent is None:
            raise ExternalGatewayError("No such payment_intent", details={"payment_intent_id": intent_id})
        refund = RefundResult(id=self._next("re"), status="succeeded", amount=intent.amount)
        self.refunds.append(refund)
        return refund

    async def create_connected_account(
        self, email: str, metadata: Optional[Mapping[str, str]] = None
    ) -> ConnectedAccount:
        self._check("account.create")
        account = ConnectedAccount(id=self._next("acct"))
        self.accounts[account.id] = account
        return account

    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> AccountLinkResult:
        self._check("account_link.create")
        if account_id not in self.accounts:
            raise NotFoundError("No such account", details={"account_id": account_id})
        return AccountLinkResult(url=f"https://connect.example.test/setup/{account_id}")

    async def create_transfer(
        self,
        amount: int,
        currency: str,
        destination: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> TransferResult:
        self._check("transfer.create")
        transfer = TransferResult(id=self._next("tr"), amount=amount, destination=destination)
        self.transfers.append(transfer)
        return transfer

    async def create_checkout_session(
        self,
        mode: str,
        customer_id: str,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Optional[Mapping[str, str]] = None,
        trial_days: Optional[int] = None,
    ) -> CheckoutSessionResult:
        self._check("checkout.session.create")
        session_id = self._next("cs")
        self.checkout_sessions[session_id] = {
            "mode": mode,
            "customer": customer_id,
            "line_items": line_items,
            "metadata": dict(metadata or {}),
            "trial_days": trial_days,
        }
        return CheckoutSessionResult(id=session_id, url=f"https://checkout.example.test/{session_id}")

    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        self._check("subscription.retrieve")
        sub = self.subscriptions.get(subscription_id)
        if sub is None:
            raise ExternalGatewayError(
                "No such subscription", details={"subscription_id": subscription_id}
            )
        return sub.model_copy()

    async def update_subscription(
        self, subscription_id: str, cancel_at_period_end: bool
    ) -> GatewaySubscription:
        self._check("subscription.modify")
        sub = self.subscriptions.get(subscription_id)
        if sub is None:
            raise ExternalGatewayError(
                "No such subscription", details={"subscription_id": subscription_id}
            )
        sub.cancel_at_period_end = cancel_at_period_end
        return sub.model_copy()

    async def construct_event(self, payload: bytes, signature: str) -> GatewayEvent:
        if not signature or not hmac.compare_digest(self.sign(payload), signature):
            raise ValidationError("Invalid webhook signature")
        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise ValidationError("Invalid webhook payload") from exc
        return GatewayEvent(id=body["id"], type=body["type"], data=body.get("data") or {})
