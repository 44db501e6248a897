from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ...access.policy import Action, Possession, Principal, Resource
from ...errors import AuthorizationError
from ...models.api_models import PaymentIntentRequest, RefundPaymentRequest, ReleasePaymentRequest
from ..container import Container
from ..dependencies import get_container, get_principal, ok


router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/create-payment-intent")
async def create_payment_intent(
    payload: PaymentIntentRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.payments.create_payment_intent(principal, payload.booking_id))


@router.post("/release")
async def release_payment(
    payload: ReleasePaymentRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.payments.release_payment(principal, payload.booking_id))


@router.post("/refund")
async def refund_payment(
    payload: RefundPaymentRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.payments.refund_payment(principal, payload.booking_id, payload.reason))


@router.post("/sync")
async def sync_payments(
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    """Run payment reconciliation now instead of waiting for the schedule."""
    if await container.access.authorize(principal, Resource.PAYMENT, Action.UPDATE) != Possession.ANY:
        raise AuthorizationError("Not authorized to synchronize payments")
    return await container.reconciliation.run_manually()


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.payments.get_payment(principal, payment_id))
