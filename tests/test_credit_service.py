from __future__ import annotations

import pytest

from marketplace_payments.cache.memory import InMemoryAsyncCache
from marketplace_payments.db.memory import InMemoryDBManager
from marketplace_payments.errors import InsufficientCreditsError, NotFoundError, ValidationError
from marketplace_payments.logging.ledger_logger import LedgerLogger
from marketplace_payments.models.credit_transaction import CreditTransactionType
from marketplace_payments.models.ledger import LedgerEventType
from marketplace_payments.models.user import UserAccount
from marketplace_payments.services.credit_service import CreditService


async def _user(db: InMemoryDBManager, credits: int = 0) -> UserAccount:
    return await db.add_user(UserAccount(name="Ana", email="ana@example.com", credits=credits))


@pytest.mark.asyncio
async def test_grant_and_deduct_credits(tmp_path):
    db = InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.jsonl")
    cache = InMemoryAsyncCache()
    service = CreditService(db=db, ledger=ledger, cache=cache)
    user = await _user(db)

    granted = await service.grant_credits(user.id, 20, CreditTransactionType.PURCHASE, "Purchased 20 credits")
    assert granted.credits == 20
    assert await service.get_balance(user.id) == 20

    deducted = await service.deduct_credits(user.id, 5, "Booking for service: Deep Cleaning", reference="b-1")
    assert deducted.credits == 15
    # Cache is invalidated on every mutation
    assert await service.get_balance(user.id) == 15

    history = list(await service.get_credit_history(user.id))
    assert [tx.amount for tx in history] == [-5, 20]
    assert history[0].type == CreditTransactionType.USAGE
    assert history[0].reference == "b-1"


@pytest.mark.asyncio
async def test_deduct_exact_balance_reaches_zero(tmp_path):
    db = InMemoryDBManager()
    service = CreditService(db=db, ledger=LedgerLogger(db=db, file_path=tmp_path / "ledger.jsonl"))
    user = await _user(db, credits=5)

    assert await service.has_enough_credits(user.id, 5)
    updated = await service.deduct_credits(user.id, 5, "Booking")
    assert updated.credits == 0
    assert not await service.has_enough_credits(user.id, 1)


@pytest.mark.asyncio
async def test_deduct_more_than_balance_leaves_state_unchanged(tmp_path):
    db = InMemoryDBManager()
    service = CreditService(db=db, ledger=LedgerLogger(db=db, file_path=tmp_path / "ledger.jsonl"))
    user = await _user(db, credits=4)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await service.deduct_credits(user.id, 5, "Booking")

    assert exc_info.value.required == 5
    assert exc_info.value.available == 4
    assert (await db.get_user(user.id)).credits == 4
    assert list(await db.get_credit_transactions(user.id)) == []
    errors = [e for e in await db.get_ledger_entries(user.id) if e.event_type == LedgerEventType.ERROR]
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_invalid_amounts_and_unknown_users(tmp_path):
    db = InMemoryDBManager()
    service = CreditService(db=db, ledger=LedgerLogger(db=db, file_path=tmp_path / "ledger.jsonl"))
    user = await _user(db, credits=10)

    with pytest.raises(ValidationError):
        await service.deduct_credits(user.id, 0, "nothing")
    with pytest.raises(ValidationError):
        await service.grant_credits(user.id, -3, CreditTransactionType.ADJUSTMENT, "negative")
    with pytest.raises(NotFoundError):
        await service.deduct_credits("missing", 1, "ghost")
    with pytest.raises(NotFoundError):
        await service.grant_credits("missing", 1, CreditTransactionType.ADJUSTMENT, "ghost")
    assert not await service.has_enough_credits("missing", 1)


@pytest.mark.asyncio
async def test_has_reference_is_scoped_by_user_and_type(tmp_path):
    db = InMemoryDBManager()
    service = CreditService(db=db, ledger=LedgerLogger(db=db, file_path=tmp_path / "ledger.jsonl"))
    user = await _user(db)

    await service.grant_credits(user.id, 50, CreditTransactionType.PURCHASE, "Purchased 50 credits", reference="cs_1")

    assert await service.has_reference(user.id, "cs_1")
    assert await service.has_reference(user.id, "cs_1", CreditTransactionType.PURCHASE)
    assert not await service.has_reference(user.id, "cs_1", CreditTransactionType.SUBSCRIPTION)
    assert not await service.has_reference("someone-else", "cs_1")


@pytest.mark.asyncio
async def test_repeated_grant_for_a_reference_is_ignored(tmp_path):
    db = InMemoryDBManager()
    service = CreditService(db=db, ledger=LedgerLogger(db=db, file_path=tmp_path / "ledger.jsonl"))
    user = await _user(db)

    await service.grant_credits(user.id, 50, CreditTransactionType.PURCHASE, "Purchased 50 credits", reference="cs_1")
    again = await service.grant_credits(
        user.id, 50, CreditTransactionType.PURCHASE, "Purchased 50 credits", reference="cs_1"
    )

    assert again.credits == user.credits + 50
    assert (await db.get_user(user.id)).credits == user.credits + 50
    assert len(list(await db.get_credit_transactions(user.id))) == 1
    assert (await service.audit_balance(user.id)).consistent


@pytest.mark.asyncio
async def test_audit_matches_ledger_and_reports_drift(tmp_path):
    db = InMemoryDBManager()
    service = CreditService(db=db, ledger=LedgerLogger(db=db, file_path=tmp_path / "ledger.jsonl"))
    user = await _user(db)

    await service.grant_credits(user.id, 20, CreditTransactionType.ADJUSTMENT, "Initial signup credits")
    await service.deduct_credits(user.id, 5, "Booking")
    audit = await service.audit_balance(user.id)
    assert audit.consistent
    assert audit.balance == audit.ledger_total == 15

    # A balance change without its ledger entry, as after an interrupted write
    await db.adjust_user_credits(user.id, 3, floor=None)
    audit = await service.audit_balance(user.id)
    assert not audit.consistent
    assert audit.drift == 3


@pytest.mark.asyncio
async def test_ledger_entries_are_mirrored_to_file(tmp_path):
    db = InMemoryDBManager()
    path = tmp_path / "ledger.jsonl"
    service = CreditService(db=db, ledger=LedgerLogger(db=db, file_path=path))
    user = await _user(db)

    await service.grant_credits(user.id, 10, CreditTransactionType.ADJUSTMENT, "bonus")

    lines = path.read_text().strip().splitlines()
    assert len(lines) == 1
    assert "Credits granted" in lines[0]
