"""
FastAPI application factory.

The lifespan prepares the store and, when enabled, runs payment
reconciliation on a fixed interval for as long as the app is up.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from .api.container import Container, build_container
from .api.dependencies import install_exception_handlers
from .api.middleware import RequestLoggingMiddleware
from .api.routers import bookings, credits, health, payments, subscriptions, users, wallet, webhooks
from .config import Settings, settings as default_settings
from .db.mongo import MongoDBManager
from .services.scheduler import PeriodicTask


logger = logging.getLogger(__name__)


def _payment_sync_task(container: Container) -> PeriodicTask:
    return PeriodicTask(
        name="payment-sync",
        job=container.reconciliation.synchronize_payments,
        interval_seconds=container.settings.PAYMENT_SYNC_INTERVAL_HOURS * 3600,
        run_on_start=container.settings.PAYMENT_SYNC_ON_STARTUP,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    container: Container = app.state.container
    logger.info("Starting marketplace payments API")
    if isinstance(container.db, MongoDBManager):
        await container.db.ensure_indexes()

    task: Optional[PeriodicTask] = None
    if container.settings.PAYMENT_SYNC_ENABLED:
        task = _payment_sync_task(container)
        task.start()
    app.state.payment_sync = task

    yield

    if task is not None:
        await task.stop()
    logger.info("Shutting down marketplace payments API")


def create_app(container: Optional[Container] = None, settings: Optional[Settings] = None) -> FastAPI:
    if container is None:
        container = build_container(settings or default_settings)

    app = FastAPI(
        title="Marketplace Payments API",
        description="Credits, bookings, escrow payments, wallets and subscriptions",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.container = container
    app.state.payment_sync = None

    app.add_middleware(RequestLoggingMiddleware, skip_paths=["/health"])
    install_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(users.router)
    app.include_router(credits.router)
    app.include_router(bookings.router)
    app.include_router(payments.router)
    app.include_router(wallet.router)
    app.include_router(subscriptions.router)
    app.include_router(webhooks.router)
    return app
