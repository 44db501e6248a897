"""
Payment reconciliation: heal payments whose webhooks never arrived.

A sweep selects payments stuck in a non-final status for longer than the
threshold, asks the gateway for the authoritative intent status and applies
the mapped status through `PaymentService.transition`. Each payment is
handled in isolation: a failed lookup is recorded in its result and the
batch carries on. Running the sweep twice is harmless because applying a
status the payment already has is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..db.base import BaseDBManager
from ..errors import ExternalGatewayError, MarketplaceError
from ..gateway.base import PaymentGateway
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.payment import Payment, PaymentStatus, map_gateway_status
from .payment_service import PaymentService


logger = logging.getLogger(__name__)


class SyncResult(BaseModel):
    payment_id: str
    booking_id: str
    previous_status: PaymentStatus
    new_status: PaymentStatus
    gateway_status: str = "unknown"
    success: bool = False
    error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.previous_status != self.new_status


class SyncReport(BaseModel):
    success: bool = True
    processed: int = 0
    updated: int = 0
    failed: int = 0
    threshold_hours: float
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[SyncResult] = Field(default_factory=list)


class PaymentReconciliationService:
    def __init__(
        self,
        db: BaseDBManager,
        gateway: PaymentGateway,
        payments: PaymentService,
        ledger: LedgerLogger,
        threshold_hours: float = 12.0,
        statuses: Sequence[PaymentStatus] = (PaymentStatus.PROCESSING,),
        concurrency: int = 5,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._payments = payments
        self._ledger = ledger
        self._threshold_hours = threshold_hours
        self._statuses = tuple(PaymentStatus(s) for s in statuses)
        self._concurrency = max(1, concurrency)
        self._timeout = timeout_seconds

    async def find_stale_payments(self, threshold_hours: Optional[float] = None) -> List[Payment]:
        hours = self._threshold_hours if threshold_hours is None else threshold_hours
        cutoff = utcnow() - timedelta(hours=hours)
        logger.info(
            "Finding payments in %s older than %s hours (before %s)",
            [s.value for s in self._statuses],
            hours,
            cutoff.isoformat(),
        )
        stale = await self._db.find_stale_payments(self._statuses, cutoff)
        logger.info("Found %d stale payments", len(stale))
        return stale

    async def check_gateway_status(self, payment_intent_id: str) -> str:
        """Raw gateway status of an intent, bounded by the configured timeout."""
        try:
            intent = await asyncio.wait_for(
                self._gateway.retrieve_payment_intent(payment_intent_id), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            raise ExternalGatewayError(
                "Payment gateway timed out",
                details={"payment_intent_id": payment_intent_id, "timeout_seconds": self._timeout},
            ) from exc
        logger.debug("Gateway payment intent %s status: %s", payment_intent_id, intent.status)
        return intent.status

    async def reconcile_payment(
        self, payment: Payment, correlation_id: Optional[str] = None
    ) -> SyncResult:
        result = SyncResult(
            payment_id=payment.id or "",
            booking_id=payment.booking_id,
            previous_status=payment.status,
            new_status=payment.status,
        )
        try:
            result.gateway_status = await self.check_gateway_status(payment.stripe_payment_intent_id)
            target = map_gateway_status(result.gateway_status)

            # A webhook may have landed while we were asking the gateway
            current = await self._db.get_payment(payment.id) if payment.id else None
            if current is None or current.status != payment.status:
                result.new_status = current.status if current is not None else payment.status
                result.success = True
                logger.info("Payment %s changed during reconciliation; skipping", payment.id)
                return result

            await self._payments.transition(
                current, target, source="reconciliation", correlation_id=correlation_id
            )
            result.new_status = target
            result.success = True
        except MarketplaceError as exc:
            result.error = exc.message
            logger.warning("Reconciliation of payment %s failed: %s", payment.id, exc.message)
        except Exception as exc:
            result.error = str(exc)
            logger.exception("Unexpected error reconciling payment %s", payment.id)
        return result

    async def synchronize_payments(self, threshold_hours: Optional[float] = None) -> SyncReport:
        hours = self._threshold_hours if threshold_hours is None else threshold_hours
        report = SyncReport(threshold_hours=hours, started_at=utcnow())
        correlation_id = f"payment-sync-{report.started_at:%Y%m%dT%H%M%S}"
        logger.info("Starting payment synchronization (threshold: %s hours)", hours)

        stale = await self.find_stale_payments(hours)
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(payment: Payment) -> SyncResult:
            async with semaphore:
                return await self.reconcile_payment(payment, correlation_id=correlation_id)

        report.results = list(await asyncio.gather(*(_bounded(p) for p in stale)))
        report.processed = len(report.results)
        report.updated = sum(1 for r in report.results if r.success and r.changed)
        report.failed = sum(1 for r in report.results if not r.success)
        report.finished_at = utcnow()

        for change in (r for r in report.results if r.changed):
            logger.info(
                "Payment %s (Booking %s): %s -> %s",
                change.payment_id,
                change.booking_id,
                change.previous_status.value,
                change.new_status.value,
            )
        logger.info(
            "Payment synchronization complete: %d processed, %d updated, %d failed",
            report.processed,
            report.updated,
            report.failed,
        )
        await self._ledger.log_system(
            message="Payment synchronization run",
            details={
                "threshold_hours": hours,
                "processed": report.processed,
                "updated": report.updated,
                "failed": report.failed,
            },
            correlation_id=correlation_id,
        )
        return report

    async def run_manually(self) -> Dict[str, Any]:
        logger.info("Manually running payment synchronization task")
        report = await self.synchronize_payments()
        return {
            "success": report.success,
            "processed": report.processed,
            "updated": report.updated,
            "results": [r.model_dump(mode="json") for r in report.results],
        }
