from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from ..access.ownership import AccessController
from ..access.policy import Action, Principal, Resource
from ..db.base import BaseDBManager
from ..errors import AuthorizationError, InvalidStateError, NotFoundError
from ..gateway.base import PaymentGateway, to_minor_units
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.booking import Booking, BookingPaymentStatus, BookingStatus
from ..models.payment import (
    BOOKING_STATUS_FROM_PAYMENT,
    Payment,
    PaymentStatus,
    can_transition,
    is_noop,
)
from .notification_service import NotificationService
from .wallet_service import WALLET_DEPOSIT, WalletService


logger = logging.getLogger(__name__)

REFUNDABLE_STATUSES = frozenset({PaymentStatus.HELD, PaymentStatus.PROCESSING})


class PaymentService:
    """
    Escrow payments linked 1:1 to bookings.

    All status changes go through `transition()`, which is idempotent:
    re-applying the stored status is a no-op, so webhook deliveries and the
    reconciliation job can race on the same payment safely.
    """

    def __init__(
        self,
        db: BaseDBManager,
        gateway: PaymentGateway,
        wallets: WalletService,
        ledger: LedgerLogger,
        access: AccessController,
        notifications: Optional[NotificationService] = None,
        currency: str = "usd",
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._wallets = wallets
        self._ledger = ledger
        self._access = access
        self._notifications = notifications
        self._currency = currency

    async def create_payment_intent(self, principal: Principal, booking_id: str) -> Dict[str, Any]:
        await self._access.authorize(principal, Resource.PAYMENT, Action.CREATE)

        booking = await self._db.get_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", details={"booking_id": booking_id})
        if booking.customer_id != principal.user_id:
            raise AuthorizationError("Not authorized to make payment for this booking")
        if booking.payment_status != BookingPaymentStatus.UNPAID:
            raise InvalidStateError(
                "Payment already processed for this booking",
                condition="booking_unpaid",
                payment_status=booking.payment_status.value,
            )

        # A pending payment survives a reconciliation downgrade; keep the 1:1 link
        existing = await self._existing_pending_payment(booking)
        if existing is not None:
            intent = await self._gateway.retrieve_payment_intent(existing.stripe_payment_intent_id)
            booking.payment_status = BookingPaymentStatus.PROCESSING
            await self._db.update_booking(booking)
            logger.info("Reusing pending payment %s for booking %s", existing.id, booking.id)
            return {"client_secret": intent.client_secret, "payment_id": existing.id}

        service = await self._db.get_service(booking.service_id)
        if service is None:
            raise NotFoundError("Service not found", details={"service_id": booking.service_id})
        customer = await self._db.get_user(principal.user_id)
        if customer is None:
            raise NotFoundError("Customer not found", details={"user_id": principal.user_id})

        if not customer.stripe_customer_id:
            gateway_customer = await self._gateway.create_customer(
                email=customer.email, name=customer.name, metadata={"userId": customer.id or ""}
            )
            customer.stripe_customer_id = gateway_customer.id
            customer = await self._db.update_user(customer)

        intent = await self._gateway.create_payment_intent(
            amount=to_minor_units(booking.price),
            currency=self._currency,
            customer_id=customer.stripe_customer_id,
            metadata={
                "bookingId": booking.id or "",
                "serviceId": service.id or "",
                "customerId": customer.id or "",
                "providerId": booking.provider_id,
            },
        )

        payment = await self._db.add_payment(
            Payment(
                booking_id=booking.id,  # type: ignore[arg-type]
                customer_id=customer.id,  # type: ignore[arg-type]
                provider_id=booking.provider_id,
                amount=booking.price,
                currency=self._currency,
                stripe_payment_intent_id=intent.id,
                status=PaymentStatus.PENDING,
            )
        )
        booking.payment_id = payment.id
        booking.payment_status = BookingPaymentStatus.PROCESSING
        await self._db.update_booking(booking)

        await self._ledger.log_transaction(
            user_id=customer.id,
            message="Payment intent created",
            details={
                "payment_id": payment.id,
                "booking_id": booking.id,
                "amount": payment.amount,
                "payment_intent_id": intent.id,
            },
        )
        return {"client_secret": intent.client_secret, "payment_id": payment.id}

    async def _existing_pending_payment(self, booking: Booking) -> Optional[Payment]:
        payment = await self._find_payment(booking)
        if payment is not None and payment.status == PaymentStatus.PENDING:
            return payment
        return None

    async def transition(
        self,
        payment: Payment,
        target: PaymentStatus,
        source: str,
        correlation_id: Optional[str] = None,
    ) -> bool:
        """
        Move `payment` to `target` and mirror it onto the booking.

        Returns False when the payment is already in `target`. Raises
        InvalidStateError for a transition the state machine forbids.
        """
        target = PaymentStatus(target)
        previous = PaymentStatus(payment.status)
        if is_noop(previous, target):
            return False
        if not can_transition(previous, target):
            raise InvalidStateError(
                f"Cannot move payment from {previous.value} to {target.value}",
                condition=f"payment_{previous.value}_to_{target.value}",
                payment_id=payment.id,
            )

        payment.status = target
        await self._db.update_payment(payment)

        booking = await self._db.get_booking(payment.booking_id)
        if booking is None:
            logger.warning("Booking %s missing for payment %s", payment.booking_id, payment.id)
        else:
            booking.payment_status = BOOKING_STATUS_FROM_PAYMENT[target]
            await self._db.update_booking(booking)

        await self._ledger.log_transaction(
            user_id=payment.customer_id,
            message="Payment status changed",
            details={
                "payment_id": payment.id,
                "booking_id": payment.booking_id,
                "previous_status": previous.value,
                "new_status": target.value,
                "source": source,
            },
            correlation_id=correlation_id,
        )
        logger.info("Payment %s: %s -> %s (%s)", payment.id, previous.value, target.value, source)

        if target == PaymentStatus.FAILED and self._notifications is not None:
            await self._notifications.notify_payment_failed(payment)
        return True

    async def handle_payment_intent_succeeded(
        self, intent: Mapping[str, Any], correlation_id: Optional[str] = None
    ) -> Optional[Payment]:
        return await self._apply_intent_event(intent, PaymentStatus.HELD, correlation_id)

    async def handle_payment_intent_failed(
        self, intent: Mapping[str, Any], correlation_id: Optional[str] = None
    ) -> Optional[Payment]:
        return await self._apply_intent_event(intent, PaymentStatus.FAILED, correlation_id)

    async def handle_payment_intent_processing(
        self, intent: Mapping[str, Any], correlation_id: Optional[str] = None
    ) -> Optional[Payment]:
        return await self._apply_intent_event(intent, PaymentStatus.PROCESSING, correlation_id)

    async def _apply_intent_event(
        self, intent: Mapping[str, Any], target: PaymentStatus, correlation_id: Optional[str]
    ) -> Optional[Payment]:
        metadata = intent.get("metadata") or {}
        if metadata.get("type") == WALLET_DEPOSIT:
            # Deposits are credited through the explicit confirm call
            logger.debug("Ignoring wallet deposit intent %s", intent.get("id"))
            return None

        intent_id = intent.get("id")
        payment = await self._db.find_payment_by_intent(intent_id) if intent_id else None
        if payment is None:
            logger.warning("Payment not found for payment intent: %s", intent_id)
            return None

        await self.transition(payment, target, source="webhook", correlation_id=correlation_id)
        return payment

    async def release_payment(
        self, principal: Principal, booking_id: str, correlation_id: Optional[str] = None
    ) -> Payment:
        await self._access.authorize(principal, Resource.PAYMENT, Action.UPDATE)
        booking = await self._db.get_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", details={"booking_id": booking_id})
        return await self.release_for_booking(booking, correlation_id=correlation_id)

    async def release_for_booking(
        self, booking: Booking, correlation_id: Optional[str] = None
    ) -> Payment:
        """Release the held escrow of a completed, paid booking to the provider's wallet."""
        if booking.status != BookingStatus.COMPLETED:
            raise InvalidStateError(
                "Cannot release payment for incomplete service",
                condition="booking_completed",
                booking_status=booking.status.value,
            )
        if booking.payment_status != BookingPaymentStatus.PAID:
            raise InvalidStateError(
                "No payment to release",
                condition="booking_paid",
                payment_status=booking.payment_status.value,
            )

        payment = await self._payment_for(booking)
        # Only the caller that wins held -> released credits the wallet
        claimed = await self._db.transition_payment_status(
            payment.id,  # type: ignore[arg-type]
            PaymentStatus.HELD,
            PaymentStatus.RELEASED,
            release_date=utcnow(),
        )
        if claimed is None:
            current = await self._db.get_payment(payment.id) or payment  # type: ignore[arg-type]
            raise InvalidStateError(
                "Payment is not in held status",
                condition="payment_held",
                status=PaymentStatus(current.status).value,
            )
        payment = claimed

        try:
            await self._wallets.credit_escrow_release(payment, booking, correlation_id=correlation_id)
        except Exception:
            await self._db.transition_payment_status(
                payment.id,  # type: ignore[arg-type]
                PaymentStatus.RELEASED,
                PaymentStatus.HELD,
                release_date=None,
            )
            logger.exception("Escrow credit failed; payment %s returned to held", payment.id)
            raise

        await self._ledger.log_transaction(
            user_id=payment.provider_id,
            message="Payment released",
            details={"payment_id": payment.id, "booking_id": booking.id, "amount": payment.amount},
            correlation_id=correlation_id,
        )
        if self._notifications is not None:
            await self._notifications.notify_payment_released(payment)
        return payment

    async def refund_payment(
        self, principal: Principal, booking_id: str, reason: Optional[str] = None
    ) -> Payment:
        await self._access.authorize(principal, Resource.PAYMENT, Action.UPDATE)
        booking = await self._db.get_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", details={"booking_id": booking_id})

        payment = await self._payment_for(booking)
        if payment.status not in REFUNDABLE_STATUSES:
            raise InvalidStateError(
                "Payment cannot be refunded in its current state",
                condition="payment_refundable",
                status=payment.status.value,
            )

        refund = await self._gateway.create_refund(payment.stripe_payment_intent_id, reason=reason)
        payment.refund_id = refund.id
        await self.transition(payment, PaymentStatus.REFUNDED, source="refund")
        logger.info("Refunded payment %s (%s)", payment.id, refund.id)
        return payment

    async def get_payment(self, principal: Principal, payment_id: str) -> Payment:
        await self._access.authorize(principal, Resource.PAYMENT, Action.READ, payment_id)
        payment = await self._db.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", details={"payment_id": payment_id})
        return payment

    async def _find_payment(self, booking: Booking) -> Optional[Payment]:
        payment: Optional[Payment] = None
        if booking.payment_id:
            payment = await self._db.get_payment(booking.payment_id)
        if payment is None:
            payment = await self._db.find_payment_by_booking(booking.id)  # type: ignore[arg-type]
        return payment

    async def _payment_for(self, booking: Booking) -> Payment:
        payment = await self._find_payment(booking)
        if payment is None:
            raise NotFoundError("Payment not found", details={"booking_id": booking.id})
        return payment
