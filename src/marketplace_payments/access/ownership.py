from __future__ import annotations

import logging
from typing import Mapping, Optional, Protocol

from ..db.base import BaseDBManager
from ..errors import AuthorizationError, NotFoundError
from .policy import Action, Possession, Principal, Resource, permission


logger = logging.getLogger(__name__)


class OwnershipChecker(Protocol):
    async def is_owner(self, principal: Principal, resource_id: str) -> bool:
        """Raise NotFoundError if the resource is missing."""
        ...


class BookingOwnership:
    """Customer or assigned provider of a booking."""

    def __init__(self, db: BaseDBManager) -> None:
        self._db = db

    async def is_owner(self, principal: Principal, resource_id: str) -> bool:
        booking = await self._db.get_booking(resource_id)
        if booking is None:
            raise NotFoundError("Booking not found", details={"booking_id": resource_id})
        return principal.user_id in (booking.customer_id, booking.provider_id)


class ProviderBookingOwnership:
    def __init__(self, db: BaseDBManager) -> None:
        self._db = db

    async def is_owner(self, principal: Principal, resource_id: str) -> bool:
        booking = await self._db.get_booking(resource_id)
        if booking is None:
            raise NotFoundError("Booking not found", details={"booking_id": resource_id})
        return booking.provider_id == principal.user_id


class PaymentOwnership:
    def __init__(self, db: BaseDBManager) -> None:
        self._db = db

    async def is_owner(self, principal: Principal, resource_id: str) -> bool:
        payment = await self._db.get_payment(resource_id)
        if payment is None:
            raise NotFoundError("Payment not found", details={"payment_id": resource_id})
        return principal.user_id in (payment.customer_id, payment.provider_id)


class WalletOwnership:
    def __init__(self, db: BaseDBManager) -> None:
        self._db = db

    async def is_owner(self, principal: Principal, resource_id: str) -> bool:
        wallet = await self._db.get_wallet(resource_id)
        if wallet is None:
            raise NotFoundError("Wallet not found", details={"wallet_id": resource_id})
        return wallet.user_id == principal.user_id


class SelfOwnership:
    """Resources keyed by the user id itself (credit balance, subscriptions)."""

    async def is_owner(self, principal: Principal, resource_id: str) -> bool:
        return principal.user_id == resource_id


def default_checkers(db: BaseDBManager) -> Mapping[Resource, OwnershipChecker]:
    return {
        Resource.BOOKING: BookingOwnership(db),
        Resource.PROVIDER_BOOKING: ProviderBookingOwnership(db),
        Resource.PAYMENT: PaymentOwnership(db),
        Resource.WALLET: WalletOwnership(db),
        Resource.CREDITS: SelfOwnership(),
        Resource.SUBSCRIPTION: SelfOwnership(),
    }


class AccessController:
    """
    Combines the static grant table with per-resource ownership checks.

    An `any` grant allows the call outright. An `own` grant allows it when
    no specific resource is addressed (list/create on the caller's own
    records) or when the resource's checker confirms ownership.
    """

    def __init__(self, checkers: Mapping[Resource, OwnershipChecker]) -> None:
        self._checkers = dict(checkers)

    async def authorize(
        self,
        principal: Principal,
        resource: Resource,
        action: Action,
        resource_id: Optional[str] = None,
    ) -> Possession:
        granted = permission(principal.role, resource, action)
        if granted is None:
            logger.info(
                "Denied %s %s on %s for %s", principal.role.value, action.value, resource.value, principal.user_id
            )
            raise AuthorizationError(
                "You do not have permission to perform this action",
                details={"resource": resource.value, "action": action.value},
            )
        if granted == Possession.ANY or resource_id is None:
            return granted

        checker = self._checkers.get(resource)
        if checker is None or not await checker.is_owner(principal, resource_id):
            raise AuthorizationError(
                f"Not authorized to {action.value} this {resource.value}",
                details={"resource": resource.value, "action": action.value},
            )
        return granted
