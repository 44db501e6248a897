from __future__ import annotations

import asyncio

import pytest

from marketplace_payments.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from marketplace_payments.gateway.base import GatewaySubscription
from marketplace_payments.models.credit_transaction import CreditTransactionType
from marketplace_payments.models.subscription import SubscriptionType

PERIOD_START = 1_790_000_000
PERIOD_END = PERIOD_START + 30 * 24 * 3600


async def _deliver(container, gateway, event_type, obj, event_id=None):
    payload = gateway.build_event(event_type, obj, event_id=event_id)
    return await container.webhooks.handle(payload, gateway.sign(payload))


async def _billing_customer(container, seed, customer_id="cus_42"):
    user = await seed.user()
    user.stripe_customer_id = customer_id
    return await container.db.update_user(user)


def _subscription_payload(sub_id="sub_1", customer="cus_42", plan="regular", status="trialing", **extra):
    return {
        "id": sub_id,
        "customer": customer,
        "status": status,
        "metadata": {"plan": plan},
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "trial_end": PERIOD_START + 7 * 24 * 3600,
        **extra,
    }


@pytest.mark.asyncio
async def test_subscription_created_grants_initial_credits_once(container, gateway, seed):
    user = await _billing_customer(container, seed)
    payload = _subscription_payload(plan="premium")

    await _deliver(container, gateway, "customer.subscription.created", payload, event_id="evt_1")
    await _deliver(container, gateway, "customer.subscription.created", payload, event_id="evt_2")

    stored = await container.db.get_user(user.id)
    assert stored.credits == 20
    assert stored.stripe_subscription_id == "sub_1"
    assert stored.subscription_type == "premium"
    assert stored.subscription_status == "trialing"
    assert stored.next_billing_date is not None
    assert len(stored.subscription_ids) == 1

    record = await container.db.find_subscription_by_stripe_id("sub_1")
    assert record.subscription_type == SubscriptionType.PREMIUM
    assert record.is_active
    grants = list(await container.db.get_credit_transactions(user.id))
    assert [(tx.amount, tx.type, tx.reference) for tx in grants] == [
        (20, CreditTransactionType.SUBSCRIPTION, "sub_1")
    ]


@pytest.mark.asyncio
async def test_unknown_customer_is_ignored(container, gateway, seed):
    ack = await _deliver(
        container, gateway, "customer.subscription.created", _subscription_payload(customer="cus_ghost")
    )
    assert ack["received"] is True
    assert await container.db.find_subscription_by_stripe_id("sub_1") is None


@pytest.mark.asyncio
async def test_renewal_invoice_grants_cycle_credits_once(container, gateway, seed):
    user = await _billing_customer(container, seed)
    await _deliver(container, gateway, "customer.subscription.created", _subscription_payload())

    first_invoice = {"id": "in_0", "customer": "cus_42", "subscription": "sub_1", "billing_reason": "subscription_create"}
    renewal = {"id": "in_1", "customer": "cus_42", "subscription": "sub_1", "billing_reason": "subscription_cycle"}
    await _deliver(container, gateway, "invoice.payment_succeeded", first_invoice)
    await _deliver(container, gateway, "invoice.payment_succeeded", renewal)
    await _deliver(container, gateway, "invoice.payment_succeeded", renewal)

    assert (await container.db.get_user(user.id)).credits == 10 + 100
    history = list(await container.db.get_credit_transactions(user.id))
    assert history[-1].reference == "in_1"
    assert history[-1].description == "Monthly credits for regular subscription"


@pytest.mark.asyncio
async def test_invoice_with_nested_subscription_reference(container, gateway, seed):
    user = await _billing_customer(container, seed)
    await _deliver(container, gateway, "customer.subscription.created", _subscription_payload())

    invoice = {
        "id": "in_2",
        "customer": "cus_42",
        "billing_reason": "subscription_cycle",
        "parent": {"subscription_details": {"subscription": "sub_1"}},
    }
    await _deliver(container, gateway, "invoice.payment_succeeded", invoice)

    assert (await container.db.get_user(user.id)).credits == 110


@pytest.mark.asyncio
async def test_failed_invoice_marks_past_due(container, gateway, seed):
    user = await _billing_customer(container, seed)
    await _deliver(container, gateway, "customer.subscription.created", _subscription_payload(status="active"))

    await _deliver(
        container, gateway, "invoice.payment_failed", {"id": "in_3", "customer": "cus_42", "subscription": "sub_1"}
    )

    assert (await container.db.get_user(user.id)).subscription_status == "past_due"
    assert (await container.db.find_subscription_by_stripe_id("sub_1")).status == "past_due"


@pytest.mark.asyncio
async def test_subscription_updated_and_deleted(container, gateway, seed):
    user = await _billing_customer(container, seed)
    await _deliver(container, gateway, "customer.subscription.created", _subscription_payload())

    await _deliver(
        container,
        gateway,
        "customer.subscription.updated",
        _subscription_payload(status="active", cancel_at_period_end=True),
    )
    assert (await container.db.get_user(user.id)).subscription_status == "active"
    assert (await container.db.find_subscription_by_stripe_id("sub_1")).cancel_at_period_end

    await _deliver(container, gateway, "customer.subscription.deleted", _subscription_payload(status="canceled"))
    stored = await container.db.get_user(user.id)
    assert stored.subscription_status == "none"
    assert stored.subscription_type == "none"
    assert stored.stripe_subscription_id is None
    record = await container.db.find_subscription_by_stripe_id("sub_1")
    assert record.status == "canceled"
    assert not record.is_active
    # Credits already granted stay with the user
    assert stored.credits == 10


@pytest.mark.asyncio
async def test_deleting_an_old_subscription_keeps_the_current_one(container, gateway, seed):
    user = await _billing_customer(container, seed)
    await _deliver(container, gateway, "customer.subscription.created", _subscription_payload("sub_old"))
    await _deliver(container, gateway, "customer.subscription.created", _subscription_payload("sub_new", plan="premium"))

    assert not (await container.db.find_subscription_by_stripe_id("sub_old")).is_active

    await _deliver(container, gateway, "customer.subscription.deleted", _subscription_payload("sub_old"))
    stored = await container.db.get_user(user.id)
    assert stored.stripe_subscription_id == "sub_new"
    assert stored.subscription_type == "premium"


@pytest.mark.asyncio
async def test_credit_package_checkout_grants_once(container, gateway, seed):
    user = await seed.user()
    purchase = await container.subscriptions.purchase_credits(seed.principal(user), "medium")
    session = gateway.checkout_sessions[purchase["session_id"]]
    assert session["mode"] == "payment"
    assert session["line_items"][0]["price_data"]["unit_amount"] == 1299

    completed = {"id": purchase["session_id"], "mode": "payment", "metadata": session["metadata"]}
    await _deliver(container, gateway, "checkout.session.completed", completed)
    await _deliver(container, gateway, "checkout.session.completed", completed)

    assert (await container.db.get_user(user.id)).credits == 50
    tx = list(await container.db.get_credit_transactions(user.id))
    assert len(tx) == 1
    assert tx[0].type == CreditTransactionType.PURCHASE
    assert tx[0].description == "Purchased 50 credits"


@pytest.mark.asyncio
async def test_concurrent_checkout_redeliveries_grant_once(container, gateway, seed, monkeypatch):
    user = await seed.user()
    purchase = await container.subscriptions.purchase_credits(seed.principal(user), "medium")
    session = gateway.checkout_sessions[purchase["session_id"]]
    completed = {"id": purchase["session_id"], "mode": "payment", "metadata": session["metadata"]}

    has_reference = container.credits.has_reference

    async def _yielding_has_reference(*args, **kwargs):
        found = await has_reference(*args, **kwargs)
        await asyncio.sleep(0)
        return found

    monkeypatch.setattr(container.credits, "has_reference", _yielding_has_reference)

    await asyncio.gather(
        _deliver(container, gateway, "checkout.session.completed", completed),
        _deliver(container, gateway, "checkout.session.completed", completed),
    )

    assert (await container.db.get_user(user.id)).credits == 50
    assert len(list(await container.db.get_credit_transactions(user.id))) == 1
    assert (await container.credits.audit_balance(user.id)).consistent


@pytest.mark.asyncio
async def test_unknown_plan_and_package_are_rejected(container, seed):
    user = await seed.user()
    with pytest.raises(ValidationError):
        await container.subscriptions.create_checkout_session(seed.principal(user), "gold")
    with pytest.raises(ValidationError):
        await container.subscriptions.purchase_credits(seed.principal(user), "huge")


@pytest.mark.asyncio
async def test_trial_is_offered_only_once(container, gateway, seed):
    user = await seed.user()

    first = await container.subscriptions.create_checkout_session(seed.principal(user), "regular")
    session = gateway.checkout_sessions[first["session_id"]]
    assert session["trial_days"] == 7
    assert session["metadata"]["hasHadTrial"] == "false"
    assert session["line_items"] == [{"price": "price_regular", "quantity": 1}]

    customer_id = (await container.db.get_user(user.id)).stripe_customer_id
    assert customer_id in gateway.customers
    await _deliver(
        container, gateway, "customer.subscription.created", _subscription_payload(customer=customer_id)
    )

    second = await container.subscriptions.create_checkout_session(seed.principal(user), "premium")
    session = gateway.checkout_sessions[second["session_id"]]
    assert session["trial_days"] is None
    assert session["metadata"]["hasHadTrial"] == "true"
    # The gateway customer is reused
    assert session["customer"] == customer_id


@pytest.mark.asyncio
async def test_cancel_and_resume(container, gateway, seed):
    user = await _billing_customer(container, seed)
    principal = seed.principal(user)

    with pytest.raises(InvalidStateError) as exc_info:
        await container.subscriptions.cancel_subscription(principal)
    assert exc_info.value.condition == "active_subscription"

    gateway.subscriptions["sub_1"] = GatewaySubscription(id="sub_1", status="active", customer="cus_42")
    await _deliver(container, gateway, "customer.subscription.created", _subscription_payload(status="active"))

    cancelled = await container.subscriptions.cancel_subscription(principal)
    assert cancelled["cancel_at_period_end"] is True
    assert (await container.db.find_subscription_by_stripe_id("sub_1")).cancel_at_period_end

    resumed = await container.subscriptions.resume_subscription(principal)
    assert resumed["cancel_at_period_end"] is False
    assert not gateway.subscriptions["sub_1"].cancel_at_period_end


@pytest.mark.asyncio
async def test_subscription_overview_tolerates_gateway_errors(container, gateway, seed):
    user = await _billing_customer(container, seed)
    await _deliver(container, gateway, "customer.subscription.created", _subscription_payload())

    # Not known to the gateway: remote data is simply missing
    overview = await container.subscriptions.get_user_subscription(seed.principal(user))
    assert overview["subscription_type"] == "regular"
    assert overview["stripe_subscription"] is None

    gateway.subscriptions["sub_1"] = GatewaySubscription(id="sub_1", status="trialing", customer="cus_42")
    listed = await container.subscriptions.list_user_subscriptions(seed.principal(user))
    assert listed[0]["stripe_data"]["status"] == "trialing"


@pytest.mark.asyncio
async def test_activate_subscription(container, gateway, seed):
    user = await _billing_customer(container, seed)
    other = await seed.user()
    await _deliver(container, gateway, "customer.subscription.created", _subscription_payload("sub_a"))
    await _deliver(container, gateway, "customer.subscription.created", _subscription_payload("sub_b", plan="premium"))
    old = await container.db.find_subscription_by_stripe_id("sub_a")

    with pytest.raises(NotFoundError):
        await container.subscriptions.activate_subscription(seed.principal(other), old.id)
    with pytest.raises(ValidationError):
        await container.subscriptions.activate_subscription(seed.principal(user), old.id)

    gateway.subscriptions["sub_a"] = GatewaySubscription(id="sub_a", status="canceled", customer="cus_42")
    with pytest.raises(InvalidStateError):
        await container.subscriptions.activate_subscription(seed.principal(user), old.id)

    gateway.subscriptions["sub_a"].status = "active"
    activated = await container.subscriptions.activate_subscription(seed.principal(user), old.id)

    assert activated.is_active
    stored = await container.db.get_user(user.id)
    assert stored.stripe_subscription_id == "sub_a"
    assert stored.subscription_type == "regular"
    assert not (await container.db.find_subscription_by_stripe_id("sub_b")).is_active


@pytest.mark.asyncio
async def test_tampered_webhook_is_rejected(container, gateway):
    payload = gateway.build_event("checkout.session.completed", {"id": "cs_x"})
    with pytest.raises(ValidationError):
        await container.webhooks.handle(payload, "deadbeef")
    with pytest.raises(ValidationError):
        await container.webhooks.handle(payload, "")


@pytest.mark.asyncio
async def test_unhandled_event_types_are_acknowledged(container, gateway):
    ack = await _deliver(container, gateway, "charge.captured", {"id": "ch_1"})
    assert ack == {"received": True, "type": "charge.captured"}
    assert "invoice.payment_succeeded" in container.webhooks.event_types


def test_plan_catalog_is_fixed(container):
    plans = {p.key: p for p in container.subscriptions.list_plans()}
    assert plans[SubscriptionType.REGULAR].initial_credits == 10
    assert plans[SubscriptionType.PREMIUM].cycle_credits == 200
    assert [p.key for p in container.subscriptions.list_credit_packages()] == ["small", "medium", "large"]
