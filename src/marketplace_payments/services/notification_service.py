from __future__ import annotations

import logging
from typing import Any, Dict

from ..db.base import BaseDBManager
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..models.payment import Payment
from ..notifications.queue import AsyncNotificationQueue


logger = logging.getLogger(__name__)


class NotificationService:
    """
    Orchestrates notification creation and dispatch via a message queue.
    """

    def __init__(
        self,
        db: BaseDBManager,
        queue: AsyncNotificationQueue,
        low_credit_threshold: int,
    ) -> None:
        self._db = db
        self._queue = queue
        self._low_credit_threshold = low_credit_threshold

    async def notify_low_credits(self, user_id: str, balance: int) -> bool:
        """Enqueue a low-credit notice when `balance` fell below the threshold."""
        if balance >= self._low_credit_threshold:
            return False
        await self._dispatch(
            user_id,
            NotificationType.LOW_CREDITS,
            {"current_credits": balance, "threshold": self._low_credit_threshold},
        )
        return True

    async def notify_payment_failed(self, payment: Payment) -> None:
        await self._dispatch(
            payment.customer_id,
            NotificationType.PAYMENT_FAILED,
            {
                "payment_id": payment.id,
                "booking_id": payment.booking_id,
                "amount": payment.amount,
            },
        )

    async def notify_payment_released(self, payment: Payment) -> None:
        await self._dispatch(
            payment.provider_id,
            NotificationType.PAYMENT_RELEASED,
            {
                "payment_id": payment.id,
                "booking_id": payment.booking_id,
                "amount": payment.amount,
            },
        )

    async def _dispatch(
        self, user_id: str, notification_type: NotificationType, payload: Dict[str, Any]
    ) -> NotificationEvent:
        event = NotificationEvent(
            user_id=user_id,
            notification_type=notification_type,
            payload=payload,
            status=NotificationStatus.PENDING,
        )
        event = await self._db.add_notification_event(event)

        await self._queue.enqueue(
            {
                "notification_id": event.id,
                "type": event.notification_type.value,
                "user_id": user_id,
                "payload": event.payload,
            }
        )
        logger.info("Queued %s notification for user %s", notification_type.value, user_id)
        return event
