from __future__ import annotations

import hashlib
import hmac
import json
import time

import pytest
import stripe

from marketplace_payments.errors import ExternalGatewayError, ValidationError
from marketplace_payments.gateway.stripe_gateway import StripeGateway


def _stripe_signature(payload: bytes, secret: str) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def stripe_gateway():
    return StripeGateway(secret_key="sk_test_123", webhook_secret="whsec_live_test")


@pytest.mark.asyncio
async def test_construct_event_verifies_signature(stripe_gateway):
    payload = json.dumps(
        {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}
    ).encode()

    event = await stripe_gateway.construct_event(payload, _stripe_signature(payload, "whsec_live_test"))

    assert event.id == "evt_1"
    assert event.object == {"id": "pi_1"}

    with pytest.raises(ValidationError):
        await stripe_gateway.construct_event(payload, _stripe_signature(payload, "whsec_other"))


@pytest.mark.asyncio
async def test_missing_webhook_secret_is_rejected():
    gateway = StripeGateway(secret_key="sk_test_123", webhook_secret="")
    with pytest.raises(ValidationError, match="not configured"):
        await gateway.construct_event(b"{}", "t=1,v1=abc")


@pytest.mark.asyncio
async def test_sdk_errors_become_gateway_errors(stripe_gateway, monkeypatch):
    def _fail(**kwargs):
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _fail)

    with pytest.raises(ExternalGatewayError) as exc_info:
        await stripe_gateway.retrieve_payment_intent("pi_1")
    assert exc_info.value.details["operation"] == "payment_intent.retrieve"


@pytest.mark.asyncio
async def test_intent_is_mapped_from_sdk_object(stripe_gateway, monkeypatch):
    def _retrieve(**kwargs):
        return {
            "id": kwargs["id"],
            "status": "succeeded",
            "amount": 5000,
            "amount_received": 5000,
            "currency": "usd",
            "metadata": {"bookingId": "b-1"},
        }

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _retrieve)

    intent = await stripe_gateway.retrieve_payment_intent("pi_9")
    assert intent.id == "pi_9"
    assert intent.status == "succeeded"
    assert intent.metadata == {"bookingId": "b-1"}
