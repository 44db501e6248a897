from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ...access.policy import Principal
from ...models.api_models import ConfirmDepositRequest, DepositRequest, WithdrawRequest
from ..container import Container
from ..dependencies import get_container, get_principal, ok


router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("")
async def get_wallet(
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.wallets.get_wallet(principal))


@router.get("/transactions")
async def list_transactions(
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    transactions = list(await container.wallets.list_transactions(principal))
    return ok(transactions, count=len(transactions))


@router.post("/connect-bank")
async def connect_bank_account(
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.wallets.connect_bank_account(principal))


@router.post("/deposit")
async def create_deposit(
    payload: DepositRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.wallets.create_deposit_intent(principal, payload.amount))


@router.post("/deposit/confirm")
async def confirm_deposit(
    payload: ConfirmDepositRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(
        await container.wallets.confirm_deposit(principal, payload.payment_intent_id, payload.amount)
    )


@router.post("/withdraw")
async def withdraw(
    payload: WithdrawRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.wallets.withdraw(principal, payload.amount))
