"""
Service wiring.

One `Container` holds every collaborator for an app instance. Backends are
picked from settings: an empty `MONGO_URI` selects the in-memory store. An
empty `STRIPE_SECRET_KEY` is refused unless `ALLOW_IN_MEMORY_GATEWAY` is set,
which selects the in-memory gateway.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..access.ownership import AccessController, default_checkers
from ..cache.base import AsyncCacheBackend
from ..cache.memory import InMemoryAsyncCache
from ..config import Settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..gateway.base import PaymentGateway
from ..gateway.memory import InMemoryPaymentGateway
from ..gateway.stripe_gateway import StripeGateway
from ..logging.ledger_logger import LedgerLogger
from ..models.payment import PaymentStatus
from ..models.subscription import build_plan_catalog
from ..notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from ..services.booking_service import BookingService
from ..services.credit_service import CreditService
from ..services.notification_service import NotificationService
from ..services.payment_service import PaymentService
from ..services.reconciliation_service import PaymentReconciliationService
from ..services.subscription_service import SubscriptionService
from ..services.user_service import UserService
from ..services.wallet_service import WalletService
from ..services.webhook_service import WebhookService


logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    db: BaseDBManager
    gateway: PaymentGateway
    cache: AsyncCacheBackend
    queue: AsyncNotificationQueue
    ledger: LedgerLogger
    access: AccessController
    notifications: NotificationService
    credits: CreditService
    users: UserService
    wallets: WalletService
    payments: PaymentService
    bookings: BookingService
    subscriptions: SubscriptionService
    reconciliation: PaymentReconciliationService
    webhooks: WebhookService


def _create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        logger.info("Using MongoDB database %s", settings.MONGO_DB)
        return MongoDBManager.from_client_uri(settings.MONGO_URI, settings.MONGO_DB)
    logger.warning("MONGO_URI not set; using the in-memory store")
    return InMemoryDBManager()


def _create_gateway(settings: Settings) -> PaymentGateway:
    if settings.STRIPE_SECRET_KEY:
        if not settings.STRIPE_WEBHOOK_SECRET:
            logger.error("STRIPE_WEBHOOK_SECRET not set; every webhook will be rejected")
        return StripeGateway(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            timeout_seconds=settings.STRIPE_TIMEOUT_SECONDS,
            max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
            connect_country=settings.STRIPE_CONNECT_COUNTRY,
        )
    if not settings.ALLOW_IN_MEMORY_GATEWAY:
        raise RuntimeError(
            "STRIPE_SECRET_KEY is not set; set ALLOW_IN_MEMORY_GATEWAY=true to run "
            "against the in-memory payment gateway"
        )
    webhook_secret = settings.STRIPE_WEBHOOK_SECRET
    if not webhook_secret:
        # Never fall back to a well-known secret
        webhook_secret = f"whsec_{secrets.token_hex(16)}"
    logger.warning("STRIPE_SECRET_KEY not set; using the in-memory payment gateway")
    return InMemoryPaymentGateway(webhook_secret=webhook_secret)


def build_container(
    settings: Settings,
    db: Optional[BaseDBManager] = None,
    gateway: Optional[PaymentGateway] = None,
    queue: Optional[AsyncNotificationQueue] = None,
) -> Container:
    db = db if db is not None else _create_db_manager(settings)
    gateway = gateway if gateway is not None else _create_gateway(settings)
    queue = queue if queue is not None else InMemoryNotificationQueue()
    cache = InMemoryAsyncCache()
    ledger = LedgerLogger(
        db=db, file_path=Path(settings.LEDGER_LOG_FILE) if settings.LEDGER_LOG_FILE else None
    )
    access = AccessController(default_checkers(db))
    currency = settings.STRIPE_CURRENCY

    notifications = NotificationService(
        db=db, queue=queue, low_credit_threshold=settings.LOW_CREDIT_THRESHOLD
    )
    credits = CreditService(db=db, ledger=ledger, cache=cache)
    users = UserService(db=db, credits=credits, signup_bonus=settings.SIGNUP_BONUS_CREDITS)
    wallets = WalletService(
        db=db,
        gateway=gateway,
        ledger=ledger,
        access=access,
        currency=currency,
        frontend_url=settings.FRONTEND_URL,
    )
    payments = PaymentService(
        db=db,
        gateway=gateway,
        wallets=wallets,
        ledger=ledger,
        access=access,
        notifications=notifications,
        currency=currency,
    )
    bookings = BookingService(
        db=db,
        credits=credits,
        payments=payments,
        access=access,
        notifications=notifications,
        booking_credit_cost=settings.BOOKING_CREDIT_COST,
        auto_release_on_completion=settings.AUTO_RELEASE_ON_COMPLETION,
    )
    subscriptions = SubscriptionService(
        db=db,
        gateway=gateway,
        credits=credits,
        ledger=ledger,
        access=access,
        plans=build_plan_catalog(settings.STRIPE_PRICE_REGULAR, settings.STRIPE_PRICE_PREMIUM),
        currency=currency,
        frontend_url=settings.FRONTEND_URL,
    )
    reconciliation = PaymentReconciliationService(
        db=db,
        gateway=gateway,
        payments=payments,
        ledger=ledger,
        threshold_hours=settings.PAYMENT_SYNC_THRESHOLD_HOURS,
        statuses=[PaymentStatus(s) for s in settings.PAYMENT_SYNC_STATUSES],
        concurrency=settings.PAYMENT_SYNC_CONCURRENCY,
        timeout_seconds=settings.STRIPE_TIMEOUT_SECONDS,
    )
    webhooks = WebhookService(
        gateway=gateway,
        payments=payments,
        subscriptions=subscriptions,
        wallets=wallets,
        ledger=ledger,
    )
    return Container(
        settings=settings,
        db=db,
        gateway=gateway,
        cache=cache,
        queue=queue,
        ledger=ledger,
        access=access,
        notifications=notifications,
        credits=credits,
        users=users,
        wallets=wallets,
        payments=payments,
        bookings=bookings,
        subscriptions=subscriptions,
        reconciliation=reconciliation,
        webhooks=webhooks,
    )
