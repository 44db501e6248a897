from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ...access.policy import Action, Possession, Principal, Resource
from ...errors import AuthorizationError
from ...models.api_models import AdjustCreditsRequest, CreditBalanceResponse
from ...models.credit_transaction import CreditTransactionType
from ..container import Container
from ..dependencies import get_container, get_principal, ok


router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/balance")
async def get_balance(
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    await container.access.authorize(principal, Resource.CREDITS, Action.READ, principal.user_id)
    balance = await container.credits.get_balance(principal.user_id)
    return ok(CreditBalanceResponse(user_id=principal.user_id, credits=balance))


@router.get("/history")
async def get_history(
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    await container.access.authorize(principal, Resource.CREDITS, Action.READ, principal.user_id)
    history = list(await container.credits.get_credit_history(principal.user_id))
    return ok(history, count=len(history))


@router.get("/audit/{user_id}")
async def audit_balance(
    user_id: str,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    await container.access.authorize(principal, Resource.CREDITS, Action.READ, user_id)
    return ok(await container.credits.audit_balance(user_id))


@router.post("/adjust")
async def adjust_credits(
    payload: AdjustCreditsRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    if await container.access.authorize(principal, Resource.CREDITS, Action.UPDATE) != Possession.ANY:
        raise AuthorizationError("Not authorized to adjust credits")
    user = await container.credits.grant_credits(
        payload.user_id,
        payload.amount,
        CreditTransactionType.ADJUSTMENT,
        payload.description,
        correlation_id=f"admin:{principal.user_id}",
    )
    return ok(CreditBalanceResponse(user_id=payload.user_id, credits=user.credits))
