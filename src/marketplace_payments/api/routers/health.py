"""
Health check endpoints.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from ..container import Container
from ..dependencies import get_container


router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request, container: Container = Depends(get_container)) -> Dict[str, Any]:
    scheduler = getattr(request.app.state, "payment_sync", None)
    return {
        "status": "healthy",
        "database": type(container.db).__name__,
        "gateway": type(container.gateway).__name__,
        "payment_sync": "running" if scheduler is not None and scheduler.running else "stopped",
    }


@router.get("/health/live")
async def liveness_check() -> Dict[str, Any]:
    return {"alive": True}
