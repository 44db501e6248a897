from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request

from ..container import Container
from ..dependencies import get_container


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    # Signature verification needs the raw, unparsed body
    payload = await request.body()
    return await container.webhooks.handle(payload, stripe_signature or "")
