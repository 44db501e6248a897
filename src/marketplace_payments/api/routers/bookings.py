from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status

from ...access.policy import Principal
from ...models.api_models import BookingCreateRequest, BookingStatusRequest
from ...models.booking import BookingStatus
from ..container import Container
from ..dependencies import get_container, get_principal, ok


router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreateRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.bookings.create_booking(principal, payload))


@router.get("")
async def list_bookings(
    status: Optional[BookingStatus] = None,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    bookings = await container.bookings.list_bookings(principal, status=status)
    return ok(bookings, count=len(bookings))


@router.get("/my")
async def list_my_bookings(
    status: Optional[BookingStatus] = None,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    bookings = await container.bookings.list_my_bookings(principal, status=status)
    return ok(bookings, count=len(bookings))


@router.get("/{booking_id}")
async def get_booking(
    booking_id: str,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    details = await container.bookings.get_booking_details(principal, booking_id)
    return ok(details.to_dict())


@router.patch("/{booking_id}/status")
async def update_booking_status(
    booking_id: str,
    payload: BookingStatusRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.bookings.update_booking_status(principal, booking_id, payload.status))


@router.delete("/{booking_id}")
async def delete_booking(
    booking_id: str,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    await container.bookings.delete_booking(principal, booking_id)
    return ok({})
