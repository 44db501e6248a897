from __future__ import annotations

import pytest

from marketplace_payments.api.container import build_container
from marketplace_payments.config import Settings
from marketplace_payments.errors import ValidationError
from marketplace_payments.gateway.memory import InMemoryPaymentGateway


def _settings(tmp_path, **overrides) -> Settings:
    values = dict(
        MONGO_URI="",
        STRIPE_SECRET_KEY="",
        STRIPE_WEBHOOK_SECRET="",
        LOG_DIR="",
        LEDGER_LOG_FILE=str(tmp_path / "ledger.jsonl"),
    )
    values.update(overrides)
    return Settings(**values)


def test_missing_stripe_key_is_refused(tmp_path):
    with pytest.raises(RuntimeError, match="ALLOW_IN_MEMORY_GATEWAY"):
        build_container(_settings(tmp_path))


@pytest.mark.asyncio
async def test_in_memory_gateway_never_uses_a_known_secret(tmp_path):
    container = build_container(_settings(tmp_path, ALLOW_IN_MEMORY_GATEWAY=True))
    assert isinstance(container.gateway, InMemoryPaymentGateway)

    forger = InMemoryPaymentGateway(webhook_secret="whsec_test")
    payload = forger.build_event("payment_intent.succeeded", {"id": "pi_1"})
    with pytest.raises(ValidationError):
        await container.gateway.construct_event(payload, forger.sign(payload))

    # Events signed by the configured gateway itself still verify
    event = await container.gateway.construct_event(payload, container.gateway.sign(payload))
    assert event.type == "payment_intent.succeeded"


def test_configured_webhook_secret_is_used(tmp_path):
    container = build_container(
        _settings(tmp_path, ALLOW_IN_MEMORY_GATEWAY=True, STRIPE_WEBHOOK_SECRET="whsec_local")
    )
    payload = b'{"id": "evt_1", "type": "ping", "data": {}}'
    assert container.gateway.sign(payload) == InMemoryPaymentGateway("whsec_local").sign(payload)
