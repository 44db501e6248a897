from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, List, Optional, Sequence

from ..models.booking import Booking, BookingStatus, Service
from ..models.credit_transaction import CreditTransaction, CreditTransactionType
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.payment import Payment, PaymentStatus
from ..models.subscription import Subscription
from ..models.user import UserAccount
from ..models.wallet import Wallet, WalletTransaction


class DuplicateRecordError(Exception):
    """An insert collided with a unique index."""

    def __init__(self, collection: str, fields: Sequence[str]) -> None:
        super().__init__(f"Duplicate {collection} record on {', '.join(fields)}")
        self.collection = collection
        self.fields = tuple(fields)


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface over the document store.

    Concrete implementations (MongoDB, in-memory) implement these methods.
    Whole-document updates never touch the `credits` of a user or the
    `balance` of a wallet: those change only through the conditional
    `adjust_*` operations so that concurrent writers cannot clobber them.

    Inserts into a collection with `unique_indexes` raise
    DuplicateRecordError on a collision.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context if the backend supports it.
        Should rollback on exception and commit on success.

        Neither bundled backend opens a multi-document transaction; callers
        that pair a balance change with a ledger append must treat the two
        writes as independent.
        """
        yield

    # User operations
    @abstractmethod
    async def add_user(self, user: UserAccount) -> UserAccount: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def update_user(self, user: UserAccount) -> UserAccount: ...

    @abstractmethod
    async def find_user_by_stripe_customer(self, customer_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def adjust_user_credits(
        self, user_id: str, delta: int, floor: Optional[int] = 0
    ) -> Optional[UserAccount]:
        """
        Atomically add `delta` to the user's credits.

        When `floor` is not None the update only applies if the resulting
        balance stays >= floor. Returns the updated user, or None if the
        user is missing or the floor condition failed.
        """
        ...

    # Services (read-mostly collaborator)
    @abstractmethod
    async def add_service(self, service: Service) -> Service: ...

    @abstractmethod
    async def get_service(self, service_id: str) -> Optional[Service]: ...

    # Bookings
    @abstractmethod
    async def add_booking(self, booking: Booking) -> Booking: ...

    @abstractmethod
    async def get_booking(self, booking_id: str) -> Optional[Booking]: ...

    @abstractmethod
    async def update_booking(self, booking: Booking) -> Booking: ...

    @abstractmethod
    async def delete_booking(self, booking_id: str) -> None: ...

    @abstractmethod
    async def find_bookings(
        self,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[BookingStatus] = None,
    ) -> List[Booking]: ...

    # Payments
    @abstractmethod
    async def add_payment(self, payment: Payment) -> Payment: ...

    @abstractmethod
    async def get_payment(self, payment_id: str) -> Optional[Payment]: ...

    @abstractmethod
    async def update_payment(self, payment: Payment) -> Payment: ...

    @abstractmethod
    async def transition_payment_status(
        self,
        payment_id: str,
        expected: PaymentStatus,
        target: PaymentStatus,
        **fields: Any,
    ) -> Optional[Payment]:
        """
        Atomically move a payment from `expected` to `target`, setting any
        extra `fields` in the same write.

        Returns the updated payment, or None if the payment is missing or
        no longer in `expected`.
        """
        ...

    @abstractmethod
    async def find_payment_by_intent(self, payment_intent_id: str) -> Optional[Payment]: ...

    @abstractmethod
    async def find_payment_by_booking(self, booking_id: str) -> Optional[Payment]: ...

    @abstractmethod
    async def find_stale_payments(
        self, statuses: Sequence[PaymentStatus], updated_before: datetime
    ) -> List[Payment]:
        """Payments in one of `statuses` whose `updated_at` is older than the cutoff."""
        ...

    # Credit ledger
    @abstractmethod
    async def add_credit_transaction(self, tx: CreditTransaction) -> CreditTransaction: ...

    @abstractmethod
    async def get_credit_transactions(self, user_id: str) -> Iterable[CreditTransaction]: ...

    @abstractmethod
    async def find_credit_transaction(
        self,
        user_id: str,
        reference: str,
        tx_type: Optional[CreditTransactionType] = None,
    ) -> Optional[CreditTransaction]: ...

    # Wallets
    @abstractmethod
    async def add_wallet(self, wallet: Wallet) -> Wallet: ...

    @abstractmethod
    async def get_wallet(self, wallet_id: str) -> Optional[Wallet]: ...

    @abstractmethod
    async def get_wallet_by_user(self, user_id: str) -> Optional[Wallet]: ...

    @abstractmethod
    async def find_wallet_by_account(self, stripe_account_id: str) -> Optional[Wallet]: ...

    @abstractmethod
    async def update_wallet(self, wallet: Wallet) -> Wallet: ...

    @abstractmethod
    async def adjust_wallet_balance(
        self, wallet_id: str, delta: float, floor: Optional[float] = 0.0
    ) -> Optional[Wallet]:
        """Same contract as `adjust_user_credits`, for wallet balances."""
        ...

    @abstractmethod
    async def add_wallet_transaction(self, tx: WalletTransaction) -> WalletTransaction: ...

    @abstractmethod
    async def update_wallet_transaction(self, tx: WalletTransaction) -> WalletTransaction: ...

    @abstractmethod
    async def get_wallet_transactions(self, wallet_id: str) -> Iterable[WalletTransaction]: ...

    @abstractmethod
    async def find_wallet_transaction_by_payment(
        self, stripe_payment_id: str
    ) -> Optional[WalletTransaction]: ...

    # Subscriptions
    @abstractmethod
    async def add_subscription(self, subscription: Subscription) -> Subscription: ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]: ...

    @abstractmethod
    async def find_subscription_by_stripe_id(
        self, stripe_subscription_id: str
    ) -> Optional[Subscription]: ...

    @abstractmethod
    async def update_subscription(self, subscription: Subscription) -> Subscription: ...

    @abstractmethod
    async def get_user_subscriptions(self, user_id: str) -> List[Subscription]: ...

    # Notifications
    @abstractmethod
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    @abstractmethod
    async def get_ledger_entries(self, user_id: Optional[str] = None) -> List[LedgerEntry]: ...
