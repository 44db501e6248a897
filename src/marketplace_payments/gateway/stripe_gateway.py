from __future__ import annotations

import asyncio
import functools
import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

import stripe

from ..errors import ExternalGatewayError, ValidationError
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
    subscription_from_payload,
)


logger = logging.getLogger(__name__)


class StripeGateway(PaymentGateway):
    """
    Stripe-backed gateway.

    The SDK is synchronous; every call runs in a worker thread and is
    bounded by `timeout_seconds` so a slow Stripe response cannot stall the
    event loop or a reconciliation batch.
    """

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        timeout_seconds: float = 10.0,
        max_network_retries: int = 2,
        connect_country: str = "US",
    ) -> None:
        stripe.api_key = secret_key
        stripe.max_network_retries = max_network_retries
        self._webhook_secret = webhook_secret
        self._timeout = timeout_seconds
        self._connect_country = connect_country

    async def _call(self, operation: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(functools.partial(fn, **kwargs)), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Stripe %s timed out after %.1fs", operation, self._timeout)
            raise ExternalGatewayError(
                f"Payment gateway timed out during {operation}",
                details={"operation": operation},
            ) from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe %s failed: %s", operation, exc.user_message or str(exc))
            raise ExternalGatewayError(
                f"Payment gateway error during {operation}",
                details={"operation": operation, "gateway_message": exc.user_message or str(exc)},
            ) from exc

    @staticmethod
    def _intent(obj: Mapping[str, Any]) -> PaymentIntentResult:
        return PaymentIntentResult(
            id=obj["id"],
            status=obj["status"],
            client_secret=obj.get("client_secret"),
            amount=obj.get("amount") or 0,
            amount_received=obj.get("amount_received") or 0,
            currency=obj.get("currency") or "usd",
            customer=obj.get("customer"),
            metadata=dict(obj.get("metadata") or {}),
        )

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Mapping[str, str],
        customer_id: Optional[str] = None,
    ) -> PaymentIntentResult:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "metadata": dict(metadata),
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_id:
            params["customer"] = customer_id
        intent = await self._call("payment_intent.create", stripe.PaymentIntent.create, **params)
        return self._intent(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentResult:
        intent = await self._call("payment_intent.retrieve", stripe.PaymentIntent.retrieve, id=intent_id)
        return self._intent(intent)

    async def create_customer(
        self, email: str, name: Optional[str] = None, metadata: Optional[Mapping[str, str]] = None
    ) -> GatewayCustomer:
        customer = await self._call(
            "customer.create",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=dict(metadata or {}),
        )
        return GatewayCustomer(id=customer["id"], email=customer.get("email"))

    async def create_refund(self, intent_id: str, reason: Optional[str] = None) -> RefundResult:
        params: Dict[str, Any] = {"payment_intent": intent_id}
        if reason:
            params["metadata"] = {"reason": reason}
        refund = await self._call("refund.create", stripe.Refund.create, **params)
        return RefundResult(id=refund["id"], status=refund["status"], amount=refund.get("amount") or 0)

    async def create_connected_account(
        self, email: str, metadata: Optional[Mapping[str, str]] = None
    ) -> ConnectedAccount:
        account = await self._call(
            "account.create",
            stripe.Account.create,
            type="express",
            country=self._connect_country,
            email=email,
            capabilities={"transfers": {"requested": True}},
            metadata=dict(metadata or {}),
        )
        return ConnectedAccount(id=account["id"], payouts_enabled=bool(account.get("payouts_enabled")))

    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> AccountLinkResult:
        link = await self._call(
            "account_link.create",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        return AccountLinkResult(url=link["url"])

    async def create_transfer(
        self,
        amount: int,
        currency: str,
        destination: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> TransferResult:
        transfer = await self._call(
            "transfer.create",
            stripe.Transfer.create,
            amount=amount,
            currency=currency,
            destination=destination,
            metadata=dict(metadata or {}),
        )
        return TransferResult(id=transfer["id"], amount=transfer["amount"], destination=destination)

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
        params: Dict[str, Any] = {
            "mode": mode,
            "customer": customer_id,
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": dict(metadata or {}),
        }
        if mode == "subscription":
            subscription_data: Dict[str, Any] = {"metadata": dict(metadata or {})}
            if trial_days:
                subscription_data["trial_period_days"] = trial_days
            params["subscription_data"] = subscription_data
        session = await self._call("checkout.session.create", stripe.checkout.Session.create, **params)
        return CheckoutSessionResult(id=session["id"], url=session.get("url"))

    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        sub = await self._call("subscription.retrieve", stripe.Subscription.retrieve, id=subscription_id)
        return subscription_from_payload(sub)

    async def update_subscription(
        self, subscription_id: str, cancel_at_period_end: bool
    ) -> GatewaySubscription:
        sub = await self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            id=subscription_id,
            cancel_at_period_end=cancel_at_period_end,
        )
        return subscription_from_payload(sub)

    async def construct_event(self, payload: bytes, signature: str) -> GatewayEvent:
        if not self._webhook_secret:
            raise ValidationError("Webhook secret not configured")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise ValidationError("Invalid webhook signature") from exc
        except ValueError as exc:
            raise ValidationError("Invalid webhook payload") from exc
        # Signature verified; work on the plain JSON rather than StripeObjects
        body = json.loads(payload)
        return GatewayEvent(id=body["id"], type=body["type"], data=body.get("data") or {})
