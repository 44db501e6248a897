from __future__ import annotations

import logging
from typing import List, Optional

from ..access.ownership import AccessController
from ..access.policy import Action, Possession, Principal, Resource
from ..db.base import BaseDBManager
from ..errors import (
    AuthorizationError,
    InsufficientCreditsError,
    InvalidStateError,
    MarketplaceError,
    NotFoundError,
)
from ..models.api_models import BookingCreateRequest
from ..models.booking import (
    Booking,
    BookingDetails,
    BookingPaymentStatus,
    BookingStatus,
    can_transition,
)
from ..models.refs import IdRef, Ref, resolve
from ..models.user import UserRole
from .credit_service import CreditService
from .notification_service import NotificationService
from .payment_service import PaymentService


logger = logging.getLogger(__name__)

PROVIDER_SETTABLE = frozenset(
    {BookingStatus.CONFIRMED, BookingStatus.COMPLETED, BookingStatus.CANCELLED}
)


class BookingService:
    """
    Booking lifecycle: creation gated by credits, then a role-gated state
    machine (pending -> confirmed -> completed, or -> cancelled).

    Creation persists the booking first and deducts the credits second.
    The two steps are separate writes; if the deduction loses a race the
    booking is removed again, but a crash in between leaves a booking
    without its matching ledger entry.
    """

    def __init__(
        self,
        db: BaseDBManager,
        credits: CreditService,
        payments: PaymentService,
        access: AccessController,
        notifications: Optional[NotificationService] = None,
        booking_credit_cost: int = 5,
        auto_release_on_completion: bool = True,
    ) -> None:
        self._db = db
        self._credits = credits
        self._payments = payments
        self._access = access
        self._notifications = notifications
        self._cost = booking_credit_cost
        self._auto_release = auto_release_on_completion

    async def create_booking(self, principal: Principal, request: BookingCreateRequest) -> Booking:
        if principal.role != UserRole.CUSTOMER:
            raise AuthorizationError("Only customers can create bookings")
        await self._access.authorize(principal, Resource.BOOKING, Action.CREATE)

        service = await self._db.get_service(request.service_id)
        if service is None:
            raise NotFoundError("Service not found", details={"service_id": request.service_id})

        if not await self._credits.has_enough_credits(principal.user_id, self._cost):
            user = await self._db.get_user(principal.user_id)
            raise InsufficientCreditsError(
                required=self._cost, available=user.credits if user is not None else 0
            )

        booking = await self._db.add_booking(
            Booking(
                service_id=service.id,  # type: ignore[arg-type]
                customer_id=principal.user_id,
                provider_id=service.provider_id,
                service_option=request.service_option,
                price=request.price if request.price is not None else service.price,
                date=request.date,
                time_slot=request.time_slot,
                address=request.address,
                notes=request.notes,
                status=BookingStatus.PENDING,
                payment_status=BookingPaymentStatus.UNPAID,
            )
        )

        try:
            user = await self._credits.deduct_credits(
                principal.user_id,
                self._cost,
                description=f"Booking for service: {service.name} (Booking ID: {booking.id})",
                reference=booking.id,
            )
        except InsufficientCreditsError:
            # Balance was spent concurrently since the check above
            await self._db.delete_booking(booking.id)  # type: ignore[arg-type]
            logger.warning("Removed booking %s: credits no longer available", booking.id)
            raise

        logger.info("Booking %s created by %s for service %s", booking.id, principal.user_id, service.id)
        if self._notifications is not None:
            await self._notifications.notify_low_credits(principal.user_id, user.credits)
        return booking

    async def update_booking_status(
        self, principal: Principal, booking_id: str, status: BookingStatus
    ) -> Booking:
        target = BookingStatus(status)
        booking = await self._db.get_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", details={"booking_id": booking_id})

        if principal.role == UserRole.CUSTOMER:
            if booking.customer_id != principal.user_id:
                raise AuthorizationError("Not authorized to update this booking")
            if target != BookingStatus.CANCELLED:
                raise AuthorizationError("Customers can only cancel bookings")
            if booking.payment_status == BookingPaymentStatus.PAID:
                raise InvalidStateError(
                    "Cannot cancel a booking that has been paid. Please contact support.",
                    condition="booking_not_paid",
                )
        elif principal.role == UserRole.PROVIDER:
            await self._access.authorize(principal, Resource.PROVIDER_BOOKING, Action.UPDATE, booking_id)
            if target not in PROVIDER_SETTABLE:
                raise AuthorizationError("Providers can only confirm, complete, or cancel bookings")
        else:
            await self._access.authorize(principal, Resource.BOOKING, Action.UPDATE, booking_id)

        if not can_transition(booking.status, target):
            raise InvalidStateError(
                f"Cannot change booking status from {booking.status.value} to {target.value}",
                condition=f"booking_{booking.status.value}_to_{target.value}",
            )
        if target == BookingStatus.COMPLETED and booking.payment_status != BookingPaymentStatus.PAID:
            raise InvalidStateError(
                "Cannot mark as completed until customer has paid",
                condition="booking_paid",
                payment_status=booking.payment_status.value,
            )

        previous = booking.status
        booking.status = target
        booking = await self._db.update_booking(booking)
        logger.info("Booking %s: %s -> %s by %s", booking.id, previous.value, target.value, principal.user_id)

        if target == BookingStatus.COMPLETED and self._auto_release:
            try:
                await self._payments.release_for_booking(booking)
            except MarketplaceError as exc:
                # Completion stands; an admin can still release manually
                logger.warning("Automatic release for booking %s skipped: %s", booking.id, exc.message)
        return booking

    async def get_booking(self, principal: Principal, booking_id: str) -> Booking:
        await self._access.authorize(principal, Resource.BOOKING, Action.READ, booking_id)
        booking = await self._db.get_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", details={"booking_id": booking_id})
        return booking

    async def get_booking_details(self, principal: Principal, booking_id: str) -> BookingDetails:
        booking = await self.get_booking(principal, booking_id)
        return BookingDetails(
            booking=booking,
            service=await self._resolve_or_id(IdRef(booking.service_id), self._db.get_service, "Service"),
            customer=await self._resolve_or_id(IdRef(booking.customer_id), self._db.get_user, "Customer"),
            provider=await self._resolve_or_id(IdRef(booking.provider_id), self._db.get_user, "Provider"),
        )

    @staticmethod
    async def _resolve_or_id(ref: IdRef, loader, label: str) -> Ref:
        try:
            return await resolve(ref, loader, label)
        except NotFoundError:
            logger.warning("%s %s referenced by a booking no longer exists", label, ref.id)
            return ref

    async def list_my_bookings(
        self, principal: Principal, status: Optional[BookingStatus] = None
    ) -> List[Booking]:
        await self._access.authorize(principal, Resource.BOOKING, Action.READ)
        if principal.role == UserRole.CUSTOMER:
            return await self._db.find_bookings(customer_id=principal.user_id, status=status)
        if principal.role == UserRole.PROVIDER:
            return await self._db.find_bookings(provider_id=principal.user_id, status=status)
        raise AuthorizationError("Invalid user role")

    async def list_bookings(
        self, principal: Principal, status: Optional[BookingStatus] = None
    ) -> List[Booking]:
        if await self._access.authorize(principal, Resource.BOOKING, Action.READ) != Possession.ANY:
            raise AuthorizationError("Not authorized to access all bookings")
        return await self._db.find_bookings(status=status)

    async def delete_booking(self, principal: Principal, booking_id: str) -> None:
        if await self._access.authorize(principal, Resource.BOOKING, Action.DELETE) != Possession.ANY:
            raise AuthorizationError("Not authorized to delete bookings")
        booking = await self._db.get_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", details={"booking_id": booking_id})
        await self._db.delete_booking(booking_id)
        logger.info("Booking %s deleted by admin %s", booking_id, principal.user_id)
