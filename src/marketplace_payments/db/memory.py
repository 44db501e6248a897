from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, TypeVar

from .base import BaseDBManager, DuplicateRecordError
from ..models.base import DBSerializableModel, utcnow
from ..models.booking import Booking, BookingStatus, Service
from ..models.credit_transaction import CreditTransaction, CreditTransactionType
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.payment import Payment, PaymentStatus
from ..models.subscription import Subscription
from ..models.user import UserAccount
from ..models.wallet import Wallet, WalletTransaction


TModel = TypeVar("TModel", bound=DBSerializableModel)


def _copy(model: Optional[TModel]) -> Optional[TModel]:
    # Stored documents are detached from caller objects, like a real store.
    return model.model_copy(deep=True) if model is not None else None


def _check_unique(rows: Iterable[DBSerializableModel], model: DBSerializableModel) -> None:
    for fields in model.unique_indexes:
        key = tuple(getattr(model, f) for f in fields)
        if any(value is None for value in key):
            continue
        if any(tuple(getattr(row, f) for f in fields) == key for row in rows):
            raise DuplicateRecordError(model.collection_name, fields)


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.
    """

    def __init__(self) -> None:
        self._users: Dict[str, UserAccount] = {}
        self._services: Dict[str, Service] = {}
        self._bookings: Dict[str, Booking] = {}
        self._payments: Dict[str, Payment] = {}
        self._credit_transactions: List[CreditTransaction] = []
        self._wallets: Dict[str, Wallet] = {}
        self._wallet_transactions: List[WalletTransaction] = []
        self._subscriptions: Dict[str, Subscription] = {}
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _assign_id(self, model: DBSerializableModel) -> None:
        if getattr(model, "id", None) is None:
            setattr(model, "id", self._next_id())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # In-memory backend cannot provide real rollback; this is a no-op.
        yield

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        self._assign_id(user)
        self._users[user.id] = _copy(user)
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        return _copy(self._users.get(user_id))

    async def update_user(self, user: UserAccount) -> UserAccount:
        if user.id is None or user.id not in self._users:
            raise ValueError("User must have id to be updated")
        user.updated_at = utcnow()
        stored = _copy(user)
        stored.credits = self._users[user.id].credits
        self._users[user.id] = stored
        user.credits = stored.credits
        return user

    async def find_user_by_stripe_customer(self, customer_id: str) -> Optional[UserAccount]:
        for user in self._users.values():
            if user.stripe_customer_id == customer_id:
                return _copy(user)
        return None

    async def adjust_user_credits(
        self, user_id: str, delta: int, floor: Optional[int] = 0
    ) -> Optional[UserAccount]:
        user = self._users.get(user_id)
        if user is None:
            return None
        new_balance = user.credits + delta
        if floor is not None and new_balance < floor:
            return None
        user.credits = new_balance
        user.updated_at = utcnow()
        return _copy(user)

    # Services
    async def add_service(self, service: Service) -> Service:
        self._assign_id(service)
        self._services[service.id] = _copy(service)
        return service

    async def get_service(self, service_id: str) -> Optional[Service]:
        return _copy(self._services.get(service_id))

    # Bookings
    async def add_booking(self, booking: Booking) -> Booking:
        self._assign_id(booking)
        self._bookings[booking.id] = _copy(booking)
        return booking

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        return _copy(self._bookings.get(booking_id))

    async def update_booking(self, booking: Booking) -> Booking:
        if booking.id is None:
            raise ValueError("Booking must have id to be updated")
        booking.updated_at = utcnow()
        self._bookings[booking.id] = _copy(booking)
        return booking

    async def delete_booking(self, booking_id: str) -> None:
        self._bookings.pop(booking_id, None)

    async def find_bookings(
        self,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[BookingStatus] = None,
    ) -> List[Booking]:
        result = [
            b
            for b in self._bookings.values()
            if (customer_id is None or b.customer_id == customer_id)
            and (provider_id is None or b.provider_id == provider_id)
            and (status is None or b.status == status)
        ]
        result.sort(key=lambda b: b.created_at, reverse=True)
        return [_copy(b) for b in result]

    # Payments
    async def add_payment(self, payment: Payment) -> Payment:
        self._assign_id(payment)
        self._payments[payment.id] = _copy(payment)
        return payment

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        return _copy(self._payments.get(payment_id))

    async def update_payment(self, payment: Payment) -> Payment:
        if payment.id is None:
            raise ValueError("Payment must have id to be updated")
        payment.updated_at = utcnow()
        self._payments[payment.id] = _copy(payment)
        return payment

    async def transition_payment_status(
        self,
        payment_id: str,
        expected: PaymentStatus,
        target: PaymentStatus,
        **fields: Any,
    ) -> Optional[Payment]:
        payment = self._payments.get(payment_id)
        if payment is None or payment.status != PaymentStatus(expected):
            return None
        payment.status = PaymentStatus(target)
        for name, value in fields.items():
            setattr(payment, name, value)
        payment.updated_at = utcnow()
        return _copy(payment)

    async def find_payment_by_intent(self, payment_intent_id: str) -> Optional[Payment]:
        for payment in self._payments.values():
            if payment.stripe_payment_intent_id == payment_intent_id:
                return _copy(payment)
        return None

    async def find_payment_by_booking(self, booking_id: str) -> Optional[Payment]:
        for payment in self._payments.values():
            if payment.booking_id == booking_id:
                return _copy(payment)
        return None

    async def find_stale_payments(
        self, statuses: Sequence[PaymentStatus], updated_before: datetime
    ) -> List[Payment]:
        wanted = {PaymentStatus(s) for s in statuses}
        result = [
            p
            for p in self._payments.values()
            if p.status in wanted and p.updated_at < updated_before
        ]
        result.sort(key=lambda p: p.updated_at)
        return [_copy(p) for p in result]

    # Credit ledger
    async def add_credit_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        _check_unique(self._credit_transactions, tx)
        self._assign_id(tx)
        self._credit_transactions.append(_copy(tx))
        return tx

    async def get_credit_transactions(self, user_id: str) -> Iterable[CreditTransaction]:
        return [_copy(t) for t in self._credit_transactions if t.user_id == user_id]

    async def find_credit_transaction(
        self,
        user_id: str,
        reference: str,
        tx_type: Optional[CreditTransactionType] = None,
    ) -> Optional[CreditTransaction]:
        for tx in self._credit_transactions:
            if tx.user_id != user_id or tx.reference != reference:
                continue
            if tx_type is not None and tx.type != tx_type:
                continue
            return _copy(tx)
        return None

    # Wallets
    async def add_wallet(self, wallet: Wallet) -> Wallet:
        _check_unique(self._wallets.values(), wallet)
        self._assign_id(wallet)
        self._wallets[wallet.id] = _copy(wallet)
        return wallet

    async def get_wallet(self, wallet_id: str) -> Optional[Wallet]:
        return _copy(self._wallets.get(wallet_id))

    async def get_wallet_by_user(self, user_id: str) -> Optional[Wallet]:
        for wallet in self._wallets.values():
            if wallet.user_id == user_id:
                return _copy(wallet)
        return None

    async def find_wallet_by_account(self, stripe_account_id: str) -> Optional[Wallet]:
        for wallet in self._wallets.values():
            if wallet.stripe_account_id == stripe_account_id:
                return _copy(wallet)
        return None

    async def update_wallet(self, wallet: Wallet) -> Wallet:
        if wallet.id is None or wallet.id not in self._wallets:
            raise ValueError("Wallet must have id to be updated")
        wallet.updated_at = utcnow()
        stored = _copy(wallet)
        stored.balance = self._wallets[wallet.id].balance
        self._wallets[wallet.id] = stored
        wallet.balance = stored.balance
        return wallet

    async def adjust_wallet_balance(
        self, wallet_id: str, delta: float, floor: Optional[float] = 0.0
    ) -> Optional[Wallet]:
        wallet = self._wallets.get(wallet_id)
        if wallet is None:
            return None
        new_balance = round(wallet.balance + delta, 2)
        if floor is not None and new_balance < floor:
            return None
        wallet.balance = new_balance
        wallet.updated_at = utcnow()
        return _copy(wallet)

    async def add_wallet_transaction(self, tx: WalletTransaction) -> WalletTransaction:
        _check_unique(self._wallet_transactions, tx)
        self._assign_id(tx)
        self._wallet_transactions.append(_copy(tx))
        return tx

    async def update_wallet_transaction(self, tx: WalletTransaction) -> WalletTransaction:
        for index, stored in enumerate(self._wallet_transactions):
            if stored.id == tx.id:
                self._wallet_transactions[index] = _copy(tx)
                return tx
        raise ValueError("Wallet transaction must exist to be updated")

    async def get_wallet_transactions(self, wallet_id: str) -> Iterable[WalletTransaction]:
        result = [t for t in self._wallet_transactions if t.wallet_id == wallet_id]
        result.sort(key=lambda t: t.created_at, reverse=True)
        return [_copy(t) for t in result]

    async def find_wallet_transaction_by_payment(
        self, stripe_payment_id: str
    ) -> Optional[WalletTransaction]:
        for tx in self._wallet_transactions:
            if tx.stripe_payment_id == stripe_payment_id:
                return _copy(tx)
        return None

    # Subscriptions
    async def add_subscription(self, subscription: Subscription) -> Subscription:
        self._assign_id(subscription)
        self._subscriptions[subscription.id] = _copy(subscription)
        return subscription

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return _copy(self._subscriptions.get(subscription_id))

    async def find_subscription_by_stripe_id(
        self, stripe_subscription_id: str
    ) -> Optional[Subscription]:
        for sub in self._subscriptions.values():
            if sub.stripe_subscription_id == stripe_subscription_id:
                return _copy(sub)
        return None

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.id is None:
            raise ValueError("Subscription must have id to be updated")
        subscription.updated_at = utcnow()
        self._subscriptions[subscription.id] = _copy(subscription)
        return subscription

    async def get_user_subscriptions(self, user_id: str) -> List[Subscription]:
        result = [s for s in self._subscriptions.values() if s.user_id == user_id]
        result.sort(key=lambda s: s.created_at, reverse=True)
        return [_copy(s) for s in result]

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        self._assign_id(notification)
        self._notifications.append(_copy(notification))
        return notification

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        self._assign_id(entry)
        self._ledger.append(_copy(entry))
        return entry

    async def get_ledger_entries(self, user_id: Optional[str] = None) -> List[LedgerEntry]:
        return [
            _copy(e) for e in self._ledger if user_id is None or e.user_id == user_id
        ]
