from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from ..gateway.base import GatewayEvent, PaymentGateway
from ..logging.ledger_logger import LedgerLogger
from .payment_service import PaymentService
from .subscription_service import SubscriptionService
from .wallet_service import WalletService


logger = logging.getLogger(__name__)

Handler = Callable[[Mapping[str, Any], Optional[str]], Awaitable[Any]]


class WebhookService:
    """
    Entry point for gateway webhooks.

    The signature is verified first; an invalid one raises ValidationError
    and nothing is applied. Once verified, an event is always acknowledged:
    a handler failure is logged and written to the ledger, and the
    reconciliation job repairs payment state later.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        payments: PaymentService,
        subscriptions: SubscriptionService,
        wallets: WalletService,
        ledger: LedgerLogger,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._wallets = wallets
        self._handlers: Dict[str, Handler] = {
            "payment_intent.succeeded": payments.handle_payment_intent_succeeded,
            "payment_intent.payment_failed": payments.handle_payment_intent_failed,
            "payment_intent.processing": payments.handle_payment_intent_processing,
            "customer.subscription.created": subscriptions.handle_subscription_created,
            "customer.subscription.updated": subscriptions.handle_subscription_updated,
            "customer.subscription.deleted": subscriptions.handle_subscription_deleted,
            "invoice.payment_succeeded": subscriptions.handle_invoice_payment_succeeded,
            "invoice.payment_failed": subscriptions.handle_invoice_payment_failed,
            "checkout.session.completed": subscriptions.handle_checkout_session_completed,
            "account.updated": self._handle_account_updated,
        }

    @property
    def event_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    async def handle(self, payload: bytes, signature: str) -> Dict[str, Any]:
        event = await self._gateway.construct_event(payload, signature)
        await self.dispatch(event)
        return {"received": True, "type": event.type}

    async def dispatch(self, event: GatewayEvent) -> bool:
        """Apply a verified event. Returns False if no handler ran to completion."""
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled event type: %s", event.type)
            return False

        logger.info("Processing webhook %s (%s)", event.id, event.type)
        try:
            await handler(event.object, event.id)
        except Exception as exc:
            logger.exception("Error processing webhook %s (%s)", event.id, event.type)
            await self._ledger.log_error(
                message="Webhook processing failed",
                details={
                    "event_type": event.type,
                    "object_id": event.object.get("id"),
                    "error": str(exc),
                },
                correlation_id=event.id,
            )
            return False
        return True

    async def _handle_account_updated(
        self, account: Mapping[str, Any], correlation_id: Optional[str] = None
    ) -> None:
        account_id = account.get("id")
        if not account_id:
            return
        await self._wallets.mark_account_status(
            account_id, bool(account.get("payouts_enabled")), correlation_id=correlation_id
        )
