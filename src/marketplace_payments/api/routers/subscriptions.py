from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ...access.policy import Principal
from ...models.api_models import ActivateSubscriptionRequest, CheckoutRequest, PurchaseCreditsRequest
from ..container import Container
from ..dependencies import get_container, get_principal, ok


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/plans")
async def list_plans(container: Container = Depends(get_container)) -> Dict[str, Any]:
    plans = container.subscriptions.list_plans()
    # Price ids are configuration, not catalog data
    return ok([plan.model_dump(mode="json", exclude={"price_id"}) for plan in plans])


@router.get("/packages")
async def list_credit_packages(container: Container = Depends(get_container)) -> Dict[str, Any]:
    return ok(container.subscriptions.list_credit_packages())


@router.get("")
async def get_subscription(
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.subscriptions.get_user_subscription(principal))


@router.get("/all")
async def list_subscriptions(
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    subscriptions = await container.subscriptions.list_user_subscriptions(principal)
    return ok(subscriptions, count=len(subscriptions))


@router.post("/checkout")
async def create_checkout_session(
    payload: CheckoutRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.subscriptions.create_checkout_session(principal, payload.plan.value))


@router.post("/credits/purchase")
async def purchase_credits(
    payload: PurchaseCreditsRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.subscriptions.purchase_credits(principal, payload.package))


@router.post("/cancel")
async def cancel_subscription(
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.subscriptions.cancel_subscription(principal))


@router.post("/resume")
async def resume_subscription(
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.subscriptions.resume_subscription(principal))


@router.post("/activate")
async def activate_subscription(
    payload: ActivateSubscriptionRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.subscriptions.activate_subscription(principal, payload.subscription_id))
