from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List


logger = logging.getLogger(__name__)


class AsyncNotificationQueue(ABC):
    """
    Abstract async message queue for dispatching user notifications
    (low credits, failed payments, released payouts). Delivery workers
    consume from the concrete broker.
    """

    @abstractmethod
    async def enqueue(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """
    In-memory queue used for tests and as a reference implementation.
    """

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        logger.debug("Queued %s notification for user %s", payload.get("type"), payload.get("user_id"))
        self.messages.append(payload)
