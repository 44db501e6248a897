from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from marketplace_payments.access.policy import Principal
from marketplace_payments.api.container import Container, build_container
from marketplace_payments.config import Settings
from marketplace_payments.db.memory import InMemoryDBManager
from marketplace_payments.gateway.memory import InMemoryPaymentGateway
from marketplace_payments.models.booking import (
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    Service,
)
from marketplace_payments.models.payment import Payment, PaymentStatus
from marketplace_payments.models.user import UserAccount, UserRole


class Seeder:
    """Writes fixtures straight into the store, bypassing the services."""

    def __init__(self, container: Container) -> None:
        self.container = container
        self.db = container.db
        self._n = 0

    @staticmethod
    def principal(user: UserAccount) -> Principal:
        return Principal(user_id=user.id, role=user.role)

    async def user(
        self, role: UserRole = UserRole.CUSTOMER, credits: int = 0, name: Optional[str] = None
    ) -> UserAccount:
        self._n += 1
        name = name or f"{role.value}-{self._n}"
        return await self.db.add_user(
            UserAccount(name=name, email=f"{name}@example.com", role=role, credits=credits)
        )

    async def service(self, provider: UserAccount, price: float = 50.0, name: str = "Deep Cleaning") -> Service:
        return await self.db.add_service(
            Service(name=name, category="cleaning", provider_id=provider.id, price=price)
        )

    async def booking(
        self,
        customer: UserAccount,
        provider: UserAccount,
        price: float = 50.0,
        status: BookingStatus = BookingStatus.PENDING,
        payment_status: BookingPaymentStatus = BookingPaymentStatus.UNPAID,
    ) -> Booking:
        service = await self.service(provider, price=price)
        return await self.db.add_booking(
            Booking(
                service_id=service.id,
                customer_id=customer.id,
                provider_id=provider.id,
                service_option="standard",
                price=price,
                date=datetime(2026, 11, 2, tzinfo=timezone.utc),
                time_slot="09:00-11:00",
                address="1 Main St",
                status=status,
                payment_status=payment_status,
            )
        )

    async def payment(
        self,
        booking: Booking,
        status: PaymentStatus,
        gateway_status: str = "processing",
        age: timedelta = timedelta(0),
    ) -> Payment:
        """Payment linked to `booking` with a matching gateway intent, last touched `age` ago."""
        intent = self.container.gateway.add_intent(
            round(booking.price * 100), status=gateway_status, metadata={"bookingId": booking.id}
        )
        stamp = datetime.now(timezone.utc) - age
        payment = await self.db.add_payment(
            Payment(
                booking_id=booking.id,
                customer_id=booking.customer_id,
                provider_id=booking.provider_id,
                amount=booking.price,
                stripe_payment_intent_id=intent.id,
                status=status,
                created_at=stamp,
                updated_at=stamp,
            )
        )
        booking.payment_id = payment.id
        await self.db.update_booking(booking)
        return payment


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        MONGO_URI="",
        STRIPE_SECRET_KEY="",
        STRIPE_WEBHOOK_SECRET="whsec_test",
        STRIPE_PRICE_REGULAR="price_regular",
        STRIPE_PRICE_PREMIUM="price_premium",
        LOG_DIR="",
        LEDGER_LOG_FILE=str(tmp_path / "ledger.jsonl"),
        PAYMENT_SYNC_ENABLED=False,
    )


@pytest.fixture
def db() -> InMemoryDBManager:
    return InMemoryDBManager()


@pytest.fixture
def gateway() -> InMemoryPaymentGateway:
    return InMemoryPaymentGateway(webhook_secret="whsec_test")


@pytest.fixture
def container(settings, db, gateway) -> Container:
    return build_container(settings, db=db, gateway=gateway)


@pytest.fixture
def seed(container) -> Seeder:
    return Seeder(container)
