"""
Application configuration using Pydantic Settings.
"""

from __future__ import annotations

from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a local .env file)."""

    # Document store; empty URI selects the in-memory backend
    MONGO_URI: str = ""
    MONGO_DB: str = "marketplace"

    # Stripe; an empty secret key needs ALLOW_IN_MEMORY_GATEWAY (local development only)
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "usd"
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_MAX_NETWORK_RETRIES: int = 2
    STRIPE_PRICE_REGULAR: str = ""
    STRIPE_PRICE_PREMIUM: str = ""
    STRIPE_CONNECT_COUNTRY: str = "US"
    ALLOW_IN_MEMORY_GATEWAY: bool = False

    FRONTEND_URL: str = "http://localhost:5173"

    # Credits
    BOOKING_CREDIT_COST: int = 5
    SIGNUP_BONUS_CREDITS: int = 20
    LOW_CREDIT_THRESHOLD: int = 5

    # Payment reconciliation
    PAYMENT_SYNC_ENABLED: bool = True
    PAYMENT_SYNC_ON_STARTUP: bool = True
    PAYMENT_SYNC_INTERVAL_HOURS: float = 4.0
    PAYMENT_SYNC_THRESHOLD_HOURS: float = 12.0
    PAYMENT_SYNC_CONCURRENCY: int = 5
    PAYMENT_SYNC_STATUSES: List[str] = ["processing"]

    AUTO_RELEASE_ON_COMPLETION: bool = True

    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LEDGER_LOG_FILE: str = "logs/ledger.jsonl"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


settings = Settings()
