from __future__ import annotations

import asyncio

import pytest

from marketplace_payments.errors import (
    AuthorizationError,
    InsufficientFundsError,
    InvalidStateError,
    ValidationError,
)
from marketplace_payments.models.user import UserRole
from marketplace_payments.models.wallet import (
    WalletTransactionStatus,
    WalletTransactionType,
    WalletUserType,
)


async def _deliver(container, gateway, event_type, obj):
    payload = gateway.build_event(event_type, obj)
    return await container.webhooks.handle(payload, gateway.sign(payload))


async def _funded_provider(container, gateway, seed, balance=100.0):
    """Provider with a payout-enabled connected account and `balance` in the wallet."""
    provider = await seed.user(UserRole.PROVIDER)
    principal = seed.principal(provider)
    link = await container.wallets.connect_bank_account(principal)
    await _deliver(container, gateway, "account.updated", {"id": link["account_id"], "payouts_enabled": True})
    wallet = await container.db.get_wallet_by_user(provider.id)
    await container.db.adjust_wallet_balance(wallet.id, balance, floor=None)
    return provider, wallet


@pytest.mark.asyncio
async def test_wallet_is_created_on_first_read(container, seed):
    customer = await seed.user()
    provider = await seed.user(UserRole.PROVIDER)

    wallet = await container.wallets.get_wallet(seed.principal(customer))
    assert wallet.balance == 0.0
    assert wallet.user_type == WalletUserType.CUSTOMER
    assert (await container.wallets.get_wallet(seed.principal(customer))).id == wallet.id
    assert (await container.wallets.get_wallet(seed.principal(provider))).user_type == WalletUserType.PROVIDER


@pytest.mark.asyncio
async def test_deposit_is_credited_once(container, gateway, seed):
    customer = await seed.user()
    principal = seed.principal(customer)

    created = await container.wallets.create_deposit_intent(principal, 25.5)
    intent_id = created["payment_intent_id"]
    assert gateway.intents[intent_id].amount == 2550

    with pytest.raises(InvalidStateError) as exc_info:
        await container.wallets.confirm_deposit(principal, intent_id)
    assert exc_info.value.condition == "payment_intent_succeeded"

    gateway.set_intent_status(intent_id, "succeeded")
    tx = await container.wallets.confirm_deposit(principal, intent_id)
    assert tx.amount == 25.5
    assert tx.type == WalletTransactionType.DEPOSIT

    replay = await container.wallets.confirm_deposit(principal, intent_id)
    assert replay.id == tx.id
    wallet = await container.db.get_wallet_by_user(customer.id)
    assert wallet.balance == 25.5
    assert len(list(await container.db.get_wallet_transactions(wallet.id))) == 1


@pytest.mark.asyncio
async def test_deposit_amount_comes_from_the_gateway(container, gateway, seed):
    customer = await seed.user()
    principal = seed.principal(customer)
    intent_id = (await container.wallets.create_deposit_intent(principal, 10))["payment_intent_id"]
    gateway.set_intent_status(intent_id, "succeeded")

    with pytest.raises(ValidationError):
        await container.wallets.confirm_deposit(principal, intent_id, amount=1000)
    assert (await container.db.get_wallet_by_user(customer.id)).balance == 0.0


@pytest.mark.asyncio
async def test_deposit_of_someone_elses_intent_is_rejected(container, gateway, seed):
    owner = await seed.user()
    thief = await seed.user()
    intent_id = (await container.wallets.create_deposit_intent(seed.principal(owner), 10))["payment_intent_id"]
    gateway.set_intent_status(intent_id, "succeeded")

    with pytest.raises(AuthorizationError):
        await container.wallets.confirm_deposit(seed.principal(thief), intent_id)


@pytest.mark.asyncio
async def test_deposit_guards(container, seed):
    customer = await seed.user()
    provider = await seed.user(UserRole.PROVIDER)

    with pytest.raises(ValidationError):
        await container.wallets.create_deposit_intent(seed.principal(customer), 0)
    with pytest.raises(AuthorizationError):
        await container.wallets.create_deposit_intent(seed.principal(provider), 10)


@pytest.mark.asyncio
async def test_withdraw_requires_connected_bank(container, gateway, seed):
    provider = await seed.user(UserRole.PROVIDER)
    principal = seed.principal(provider)

    with pytest.raises(InvalidStateError) as exc_info:
        await container.wallets.withdraw(principal, 10)
    assert exc_info.value.condition == "bank_account_connected"

    # Account exists but onboarding is not finished
    link = await container.wallets.connect_bank_account(principal)
    assert link["url"].endswith(link["account_id"])
    with pytest.raises(InvalidStateError):
        await container.wallets.withdraw(principal, 10)

    await _deliver(container, gateway, "account.updated", {"id": link["account_id"], "payouts_enabled": True})
    assert (await container.db.get_wallet_by_user(provider.id)).bank_account_connected


@pytest.mark.asyncio
async def test_only_providers_connect_banks_and_withdraw(container, seed):
    customer = await seed.user()
    with pytest.raises(AuthorizationError):
        await container.wallets.connect_bank_account(seed.principal(customer))
    with pytest.raises(AuthorizationError):
        await container.wallets.withdraw(seed.principal(customer), 5)


@pytest.mark.asyncio
async def test_overdraw_leaves_wallet_unchanged(container, gateway, seed):
    provider, wallet = await _funded_provider(container, gateway, seed, balance=30.0)

    with pytest.raises(InsufficientFundsError) as exc_info:
        await container.wallets.withdraw(seed.principal(provider), 30.01)

    assert exc_info.value.available == 30.0
    assert (await container.db.get_wallet(wallet.id)).balance == 30.0
    assert list(await container.db.get_wallet_transactions(wallet.id)) == []
    assert gateway.transfers == []


@pytest.mark.asyncio
async def test_withdraw_transfers_and_debits(container, gateway, seed):
    provider, wallet = await _funded_provider(container, gateway, seed, balance=100.0)

    tx = await container.wallets.withdraw(seed.principal(provider), 40.0)

    assert tx.amount == -40.0
    assert tx.status == WalletTransactionStatus.COMPLETED
    assert tx.stripe_transfer_id == gateway.transfers[0].id
    assert gateway.transfers[0].amount == 4000
    assert gateway.transfers[0].destination == wallet.stripe_account_id
    assert (await container.db.get_wallet(wallet.id)).balance == 60.0


@pytest.mark.asyncio
async def test_audit_reports_drift(container, gateway, seed):
    customer = await seed.user()
    principal = seed.principal(customer)
    intent_id = (await container.wallets.create_deposit_intent(principal, 20))["payment_intent_id"]
    gateway.set_intent_status(intent_id, "succeeded")
    await container.wallets.confirm_deposit(principal, intent_id)
    wallet = await container.db.get_wallet_by_user(customer.id)

    assert (await container.wallets.audit_balance(wallet.id)).consistent

    await container.db.adjust_wallet_balance(wallet.id, 5.0, floor=None)
    audit = await container.wallets.audit_balance(wallet.id)
    assert not audit.consistent
    assert audit.drift == 5.0


@pytest.mark.asyncio
async def test_concurrent_confirmations_credit_once(container, gateway, seed, monkeypatch):
    customer = await seed.user()
    principal = seed.principal(customer)
    intent_id = (await container.wallets.create_deposit_intent(principal, 10))["payment_intent_id"]
    gateway.set_intent_status(intent_id, "succeeded")

    retrieve = gateway.retrieve_payment_intent

    async def _yielding_retrieve(payment_intent_id):
        await asyncio.sleep(0)
        return await retrieve(payment_intent_id)

    monkeypatch.setattr(gateway, "retrieve_payment_intent", _yielding_retrieve)

    first, second = await asyncio.gather(
        container.wallets.confirm_deposit(principal, intent_id),
        container.wallets.confirm_deposit(principal, intent_id),
    )

    assert first.id == second.id
    wallet = await container.db.get_wallet_by_user(customer.id)
    assert wallet.balance == 10.0
    txs = list(await container.db.get_wallet_transactions(wallet.id))
    assert [(tx.amount, tx.status) for tx in txs] == [(10.0, WalletTransactionStatus.COMPLETED)]
    assert (await container.wallets.audit_balance(wallet.id)).consistent


@pytest.mark.asyncio
async def test_concurrent_first_reads_share_one_wallet(container, seed, monkeypatch):
    customer = await seed.user()
    get_user = container.db.get_user

    async def _yielding_get_user(user_id):
        await asyncio.sleep(0)
        return await get_user(user_id)

    monkeypatch.setattr(container.db, "get_user", _yielding_get_user)

    first, second = await asyncio.gather(
        container.wallets.get_or_create_wallet(customer.id),
        container.wallets.get_or_create_wallet(customer.id),
    )

    assert first.id == second.id
