"""
Subscriptions and credit top-ups.

Checkout sessions are created on request; everything else (the local
subscription mirror, user subscription fields, credit grants) is driven by
billing webhooks. Every grant carries the external object id as its
reference, so a redelivered event never grants twice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

from ..access.ownership import AccessController
from ..access.policy import Action, Principal, Resource
from ..db.base import BaseDBManager
from ..errors import ExternalGatewayError, InvalidStateError, NotFoundError, ValidationError
from ..gateway.base import (
    GatewaySubscription,
    PaymentGateway,
    subscription_from_payload,
    to_minor_units,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.credit_transaction import CreditTransactionType
from ..models.subscription import (
    CREDIT_PACKAGES,
    BillingPeriod,
    CreditPackage,
    Subscription,
    SubscriptionPlan,
    SubscriptionType,
    build_plan_catalog,
)
from ..models.user import UserAccount
from .credit_service import CreditService


logger = logging.getLogger(__name__)

ACTIVATABLE_STATUSES = frozenset({"active", "trialing"})
PREVIOUSLY_SUBSCRIBED_STATUSES = frozenset({"active", "trialing", "canceled"})


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    # Newer API versions nest the subscription under parent.subscription_details
    sub = invoice.get("subscription")
    if sub:
        return sub if isinstance(sub, str) else sub.get("id")
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


class SubscriptionService:
    def __init__(
        self,
        db: BaseDBManager,
        gateway: PaymentGateway,
        credits: CreditService,
        ledger: LedgerLogger,
        access: AccessController,
        plans: Optional[Dict[SubscriptionType, SubscriptionPlan]] = None,
        packages: Optional[Dict[str, CreditPackage]] = None,
        currency: str = "usd",
        frontend_url: str = "http://localhost:5173",
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._credits = credits
        self._ledger = ledger
        self._access = access
        self._plans = plans if plans is not None else build_plan_catalog()
        self._packages = packages if packages is not None else CREDIT_PACKAGES
        self._currency = currency
        self._frontend_url = frontend_url.rstrip("/")

    def list_plans(self) -> List[SubscriptionPlan]:
        return list(self._plans.values())

    def list_credit_packages(self) -> List[CreditPackage]:
        return list(self._packages.values())

    def _plan(self, key: str) -> SubscriptionPlan:
        try:
            return self._plans[SubscriptionType(key)]
        except (ValueError, KeyError) as exc:
            raise ValidationError("Invalid subscription plan", details={"plan": key}) from exc

    async def _user(self, user_id: str) -> UserAccount:
        user = await self._db.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        return user

    async def _ensure_gateway_customer(self, user: UserAccount) -> UserAccount:
        if user.stripe_customer_id:
            return user
        customer = await self._gateway.create_customer(
            email=user.email, name=user.name, metadata={"userId": user.id or ""}
        )
        user.stripe_customer_id = customer.id
        return await self._db.update_user(user)

    async def _has_had_subscription(self, user: UserAccount) -> bool:
        if user.subscription_status in PREVIOUSLY_SUBSCRIBED_STATUSES:
            return True
        return bool(await self._db.get_user_subscriptions(user.id))  # type: ignore[arg-type]

    # Checkout

    async def create_checkout_session(self, principal: Principal, plan: str) -> Dict[str, Any]:
        await self._access.authorize(principal, Resource.SUBSCRIPTION, Action.CREATE)
        plan_details = self._plan(plan)
        if not plan_details.price_id:
            raise ValidationError(
                "Subscription plan has no configured price", details={"plan": plan_details.key.value}
            )

        user = await self._ensure_gateway_customer(await self._user(principal.user_id))
        had_subscription = await self._has_had_subscription(user)

        session = await self._gateway.create_checkout_session(
            mode="subscription",
            customer_id=user.stripe_customer_id,  # type: ignore[arg-type]
            line_items=[{"price": plan_details.price_id, "quantity": 1}],
            success_url=f"{self._frontend_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self._frontend_url}/subscription/cancel",
            metadata={
                "userId": user.id or "",
                "plan": plan_details.key.value,
                "hasHadTrial": "true" if had_subscription else "false",
            },
            trial_days=None if had_subscription else plan_details.trial_days,
        )
        logger.info(
            "Checkout session %s for %s plan (user %s, trial=%s)",
            session.id,
            plan_details.key.value,
            user.id,
            not had_subscription,
        )
        return {"session_id": session.id, "url": session.url}

    async def purchase_credits(self, principal: Principal, package: str) -> Dict[str, Any]:
        await self._access.authorize(principal, Resource.SUBSCRIPTION, Action.CREATE)
        details = self._packages.get(package)
        if details is None:
            raise ValidationError("Invalid credit package", details={"package": package})

        user = await self._ensure_gateway_customer(await self._user(principal.user_id))
        session = await self._gateway.create_checkout_session(
            mode="payment",
            customer_id=user.stripe_customer_id,  # type: ignore[arg-type]
            line_items=[
                {
                    "price_data": {
                        "currency": self._currency,
                        "product_data": {
                            "name": details.name,
                            "description": f"{details.credits} Credits",
                        },
                        "unit_amount": to_minor_units(details.price),
                    },
                    "quantity": 1,
                }
            ],
            success_url=f"{self._frontend_url}/subscription/success?type=credits&package={details.key}",
            cancel_url=f"{self._frontend_url}/subscription/cancel",
            metadata={
                "userId": user.id or "",
                "creditPackage": details.key,
                "credits": str(details.credits),
            },
        )
        logger.info("Credit purchase session %s (%s) for user %s", session.id, details.key, user.id)
        return {"session_id": session.id, "url": session.url}

    # Webhook handlers

    async def handle_subscription_created(
        self, obj: Mapping[str, Any], correlation_id: Optional[str] = None
    ) -> Optional[Subscription]:
        sub = subscription_from_payload(obj)
        user = await self._user_for_customer(sub.customer)
        if user is None:
            return None

        existing = await self._db.find_subscription_by_stripe_id(sub.id)
        if existing is not None:
            logger.info("Subscription %s already recorded as %s", sub.id, existing.id)
            if existing.id not in user.subscription_ids:
                user.subscription_ids.append(existing.id)  # type: ignore[arg-type]
                await self._db.update_user(user)
            return existing

        plan_key = sub.metadata.get("plan", SubscriptionType.REGULAR.value)
        if plan_key not in {t.value for t in SubscriptionType}:
            logger.warning("Unknown plan %r on subscription %s, using regular", plan_key, sub.id)
            plan_key = SubscriptionType.REGULAR.value
        plan = self._plans[SubscriptionType(plan_key)]

        record = await self._db.add_subscription(
            Subscription(
                user_id=user.id,  # type: ignore[arg-type]
                name=plan.name,
                stripe_customer_id=sub.customer or "",
                stripe_subscription_id=sub.id,
                subscription_type=plan.key,
                status=sub.status,
                is_active=True,
                current_period_start=sub.current_period_start,
                current_period_end=sub.current_period_end,
                cancel_at_period_end=sub.cancel_at_period_end,
                trial_start=sub.trial_start,
                trial_end=sub.trial_end,
            )
        )

        # Only one subscription is active per user
        if user.stripe_subscription_id and user.stripe_subscription_id != sub.id:
            await self._set_active(user.stripe_subscription_id, False)

        user.stripe_subscription_id = sub.id
        user.subscription_type = plan.key.value
        user.subscription_status = sub.status
        if sub.trial_end is not None:
            user.trial_ends_at = sub.trial_end
        user.next_billing_date = sub.current_period_end
        if record.id not in user.subscription_ids:
            user.subscription_ids.append(record.id)  # type: ignore[arg-type]
        await self._db.update_user(user)

        if not await self._credits.has_reference(user.id, sub.id, CreditTransactionType.SUBSCRIPTION):  # type: ignore[arg-type]
            await self._credits.grant_credits(
                user.id,  # type: ignore[arg-type]
                plan.initial_credits,
                CreditTransactionType.SUBSCRIPTION,
                f"Initial credits for {plan.key.value} subscription",
                reference=sub.id,
                correlation_id=correlation_id,
            )

        await self._ledger.log_transaction(
            user_id=user.id,
            message="Subscription created",
            details={"subscription_id": sub.id, "plan": plan.key.value, "status": sub.status},
            correlation_id=correlation_id,
        )
        return record

    async def handle_subscription_updated(
        self, obj: Mapping[str, Any], correlation_id: Optional[str] = None
    ) -> Optional[Subscription]:
        sub = subscription_from_payload(obj)
        user = await self._user_for_customer(sub.customer)
        if user is None:
            return None

        if user.stripe_subscription_id in (None, sub.id):
            user.subscription_status = sub.status
            if sub.trial_end is not None:
                user.trial_ends_at = sub.trial_end
            user.next_billing_date = sub.current_period_end
            await self._db.update_user(user)

        record = await self._db.find_subscription_by_stripe_id(sub.id)
        if record is None:
            logger.warning("Subscription %s updated before it was recorded", sub.id)
            return None
        record.status = sub.status
        record.current_period_start = sub.current_period_start
        record.current_period_end = sub.current_period_end
        record.cancel_at_period_end = sub.cancel_at_period_end
        record.canceled_at = sub.canceled_at
        record = await self._db.update_subscription(record)
        logger.info("Subscription %s updated for user %s: %s", sub.id, user.id, sub.status)
        return record

    async def handle_subscription_deleted(
        self, obj: Mapping[str, Any], correlation_id: Optional[str] = None
    ) -> Optional[Subscription]:
        sub = subscription_from_payload(obj)
        user = await self._user_for_customer(sub.customer)
        if user is None:
            return None

        if user.stripe_subscription_id in (None, sub.id):
            user.subscription_status = "none"
            user.subscription_type = "none"
            user.stripe_subscription_id = None
            user.trial_ends_at = None
            user.next_billing_date = None
            await self._db.update_user(user)

        record = await self._db.find_subscription_by_stripe_id(sub.id)
        if record is not None:
            record.status = "canceled"
            record.is_active = False
            record.canceled_at = sub.canceled_at or utcnow()
            record = await self._db.update_subscription(record)

        await self._ledger.log_transaction(
            user_id=user.id,
            message="Subscription deleted",
            details={"subscription_id": sub.id},
            correlation_id=correlation_id,
        )
        return record

    async def handle_invoice_payment_succeeded(
        self, invoice: Mapping[str, Any], correlation_id: Optional[str] = None
    ) -> Optional[UserAccount]:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return None
        if invoice.get("billing_reason") == "subscription_create":
            # The first invoice is covered by the initial credits
            logger.debug("Skipping initial invoice %s", invoice.get("id"))
            return None

        user = await self._user_for_customer(invoice.get("customer"))
        if user is None:
            return None
        record = await self._db.find_subscription_by_stripe_id(subscription_id)
        if record is None:
            logger.error("Subscription not found: %s", subscription_id)
            return None

        invoice_id = invoice.get("id") or ""
        if await self._credits.has_reference(user.id, invoice_id, CreditTransactionType.SUBSCRIPTION):  # type: ignore[arg-type]
            logger.info("Invoice %s already credited", invoice_id)
            return user

        plan = self._plans[record.subscription_type]
        period = "Monthly" if plan.billing_period == BillingPeriod.MONTHLY else "Yearly"
        return await self._credits.grant_credits(
            user.id,  # type: ignore[arg-type]
            plan.cycle_credits,
            CreditTransactionType.SUBSCRIPTION,
            f"{period} credits for {plan.key.value} subscription",
            reference=invoice_id,
            correlation_id=correlation_id,
        )

    async def handle_invoice_payment_failed(
        self, invoice: Mapping[str, Any], correlation_id: Optional[str] = None
    ) -> Optional[UserAccount]:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return None
        user = await self._user_for_customer(invoice.get("customer"))
        if user is None:
            return None

        user.subscription_status = "past_due"
        user = await self._db.update_user(user)
        record = await self._db.find_subscription_by_stripe_id(subscription_id)
        if record is not None:
            record.status = "past_due"
            await self._db.update_subscription(record)

        await self._ledger.log_transaction(
            user_id=user.id,
            message="Subscription invoice payment failed",
            details={"subscription_id": subscription_id, "invoice_id": invoice.get("id")},
            correlation_id=correlation_id,
        )
        return user

    async def handle_checkout_session_completed(
        self, session: Mapping[str, Any], correlation_id: Optional[str] = None
    ) -> Optional[UserAccount]:
        metadata = session.get("metadata") or {}
        if session.get("mode") != "payment" or not metadata.get("creditPackage"):
            return None

        user_id = metadata.get("userId") or ""
        try:
            amount = int(metadata.get("credits") or 0)
        except ValueError:
            logger.error("Checkout session %s has invalid credits metadata", session.get("id"))
            return None
        if amount <= 0:
            return None

        user = await self._db.get_user(user_id)
        if user is None:
            logger.error("User not found for ID: %s", user_id)
            return None

        session_id = session.get("id") or ""
        if await self._credits.has_reference(user_id, session_id, CreditTransactionType.PURCHASE):
            logger.info("Checkout session %s already credited", session_id)
            return user

        return await self._credits.grant_credits(
            user_id,
            amount,
            CreditTransactionType.PURCHASE,
            f"Purchased {amount} credits",
            reference=session_id,
            correlation_id=correlation_id,
        )

    async def _user_for_customer(self, customer_id: Optional[str]) -> Optional[UserAccount]:
        user = await self._db.find_user_by_stripe_customer(customer_id) if customer_id else None
        if user is None:
            logger.error("User not found for Stripe customer ID: %s", customer_id)
        return user

    async def _set_active(self, stripe_subscription_id: str, active: bool) -> None:
        record = await self._db.find_subscription_by_stripe_id(stripe_subscription_id)
        if record is not None and record.is_active != active:
            record.is_active = active
            await self._db.update_subscription(record)

    # User-facing management

    async def cancel_subscription(self, principal: Principal) -> Dict[str, Any]:
        return await self._set_cancel_at_period_end(principal, True)

    async def resume_subscription(self, principal: Principal) -> Dict[str, Any]:
        return await self._set_cancel_at_period_end(principal, False)

    async def _set_cancel_at_period_end(self, principal: Principal, cancel: bool) -> Dict[str, Any]:
        await self._access.authorize(principal, Resource.SUBSCRIPTION, Action.UPDATE)
        user = await self._user(principal.user_id)
        if not user.stripe_subscription_id:
            raise InvalidStateError("No active subscription found", condition="active_subscription")

        remote = await self._gateway.update_subscription(user.stripe_subscription_id, cancel_at_period_end=cancel)
        record = await self._db.find_subscription_by_stripe_id(user.stripe_subscription_id)
        if record is not None:
            record.cancel_at_period_end = cancel
            await self._db.update_subscription(record)

        await self._ledger.log_transaction(
            user_id=user.id,
            message="Subscription cancellation scheduled" if cancel else "Subscription resumed",
            details={"subscription_id": user.stripe_subscription_id},
        )
        return {
            "cancel_at_period_end": remote.cancel_at_period_end,
            "current_period_end": remote.current_period_end,
        }

    async def get_user_subscription(self, principal: Principal) -> Dict[str, Any]:
        await self._access.authorize(principal, Resource.SUBSCRIPTION, Action.READ)
        user = await self._user(principal.user_id)
        remote = await self._remote(user.stripe_subscription_id) if user.stripe_subscription_id else None
        return {
            "credits": user.credits,
            "subscription_type": user.subscription_type,
            "subscription_status": user.subscription_status,
            "trial_ends_at": user.trial_ends_at,
            "next_billing_date": user.next_billing_date,
            "stripe_subscription": remote.model_dump(
                include={"id", "status", "current_period_end", "cancel_at_period_end"}
            )
            if remote is not None
            else None,
        }

    async def list_user_subscriptions(self, principal: Principal) -> List[Dict[str, Any]]:
        await self._access.authorize(principal, Resource.SUBSCRIPTION, Action.READ)
        records = await self._db.get_user_subscriptions(principal.user_id)
        remotes = await asyncio.gather(*(self._remote(r.stripe_subscription_id) for r in records))
        result = []
        for record, remote in zip(records, remotes):
            item = record.model_dump(mode="json")
            item["stripe_data"] = (
                remote.model_dump(mode="json", include={"status", "current_period_end", "cancel_at_period_end"})
                if remote is not None
                else None
            )
            result.append(item)
        return result

    async def _remote(self, subscription_id: str) -> Optional[GatewaySubscription]:
        try:
            return await self._gateway.retrieve_subscription(subscription_id)
        except ExternalGatewayError as exc:
            logger.warning("Could not retrieve subscription %s: %s", subscription_id, exc.message)
            return None

    async def activate_subscription(self, principal: Principal, subscription_id: str) -> Subscription:
        await self._access.authorize(principal, Resource.SUBSCRIPTION, Action.UPDATE)
        user = await self._user(principal.user_id)
        record = await self._db.get_subscription(subscription_id)
        if record is None or record.user_id != user.id:
            raise NotFoundError("Subscription not found", details={"subscription_id": subscription_id})

        try:
            remote = await self._gateway.retrieve_subscription(record.stripe_subscription_id)
        except ExternalGatewayError as exc:
            raise ValidationError(
                "Invalid subscription in Stripe",
                details={"subscription_id": subscription_id},
            ) from exc
        if remote.status not in ACTIVATABLE_STATUSES:
            raise InvalidStateError(
                "Cannot activate a non-active subscription",
                condition="subscription_active",
                status=remote.status,
            )

        if user.stripe_subscription_id and user.stripe_subscription_id != record.stripe_subscription_id:
            await self._set_active(user.stripe_subscription_id, False)
        record.is_active = True
        record.status = remote.status
        record = await self._db.update_subscription(record)

        user.stripe_subscription_id = record.stripe_subscription_id
        user.subscription_type = record.subscription_type.value
        user.subscription_status = record.status
        if record.trial_end is not None:
            user.trial_ends_at = record.trial_end
        user.next_billing_date = record.current_period_end
        await self._db.update_user(user)

        logger.info("User %s activated subscription %s", user.id, record.id)
        return record
