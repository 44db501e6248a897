from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Type,
    TypeVar,
)
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

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


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)

INDEXED_MODELS: Sequence[Type[DBSerializableModel]] = (
    UserAccount,
    Booking,
    Payment,
    CreditTransaction,
    Wallet,
    WalletTransaction,
    Subscription,
    LedgerEntry,
)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    Balance changes go through `find_one_and_update` with a `$gte` guard on
    the current balance, so a deduction either applies in full or not at all
    even with several concurrent writers.

    Note: The `transaction()` context manager is currently a no-op. MongoDB
    supports multi-document transactions in replica sets; you can extend this
    class to use sessions and transactions if your deployment requires it.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        # tz_aware keeps datetimes comparable with utcnow() after a round trip
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # For simplicity, this implementation does not open an explicit
        # MongoDB multi-document transaction. Individual document writes
        # are atomic in MongoDB.
        yield

    async def ensure_indexes(self) -> None:
        for model_cls in INDEXED_MODELS:
            col = self._db[model_cls.collection_name]
            for fields in model_cls.indexes:
                await col.create_index([(f, ASCENDING) for f in fields])
            for fields in model_cls.unique_indexes:
                # Documents missing a key field stay outside the constraint
                await col.create_index(
                    [(f, ASCENDING) for f in fields],
                    unique=True,
                    partialFilterExpression={f: {"$type": "string"} for f in fields},
                )
            logger.debug(
                "Ensured %d indexes on %s",
                len(model_cls.indexes) + len(model_cls.unique_indexes),
                model_cls.collection_name,
            )

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _prepare_update(model: TModel, exclude: Sequence[str] = ()) -> Dict[str, Any]:
        model_id = getattr(model, "id", None)
        if not model_id:
            raise ValueError("Model must have id to be updated")
        if hasattr(model, "updated_at"):
            setattr(model, "updated_at", utcnow())
        data = model.serialize_for_db(exclude_none=False)
        for key in exclude:
            data.pop(key, None)
        data.pop("_id", None)
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    def _decode_all(self, model_cls: Type[TModel], docs: Iterable[Mapping[str, Any]]) -> List[TModel]:
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    async def _insert(self, model: TModel) -> TModel:
        col = self._db[model.collection_name]
        try:
            await col.insert_one(self._prepare_insert(model))
        except DuplicateKeyError as exc:
            key_pattern = (exc.details or {}).get("keyPattern") or {"_id": 1}
            raise DuplicateRecordError(model.collection_name, list(key_pattern)) from exc
        return model

    async def _get(self, model_cls: Type[TModel], model_id: str) -> Optional[TModel]:
        doc = await self._db[model_cls.collection_name].find_one({"_id": model_id})
        return self._decode(model_cls, doc)

    async def _find_one(self, model_cls: Type[TModel], query: Mapping[str, Any]) -> Optional[TModel]:
        doc = await self._db[model_cls.collection_name].find_one(query)
        return self._decode(model_cls, doc)

    async def _find(
        self,
        model_cls: Type[TModel],
        query: Mapping[str, Any],
        sort_field: str = "created_at",
        direction: int = -1,
    ) -> List[TModel]:
        cursor = self._db[model_cls.collection_name].find(query).sort(sort_field, direction)
        docs = await cursor.to_list(length=None)
        return self._decode_all(model_cls, docs)

    async def _set(self, model: TModel, exclude: Sequence[str] = ()) -> TModel:
        data = self._prepare_update(model, exclude)
        await self._db[model.collection_name].update_one({"_id": model.id}, {"$set": data})
        return model

    async def _adjust(
        self,
        model_cls: Type[TModel],
        model_id: str,
        field: str,
        delta: float,
        floor: Optional[float],
    ) -> Optional[TModel]:
        query: Dict[str, Any] = {"_id": model_id}
        if floor is not None:
            # balance + delta >= floor  <=>  balance >= floor - delta
            query[field] = {"$gte": floor - delta}
        doc = await self._db[model_cls.collection_name].find_one_and_update(
            query,
            {"$inc": {field: delta}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(model_cls, doc)

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        return await self._insert(user)

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        return await self._get(UserAccount, user_id)

    async def update_user(self, user: UserAccount) -> UserAccount:
        await self._set(user, exclude=("credits",))
        stored = await self.get_user(user.id)  # type: ignore[arg-type]
        if stored is not None:
            user.credits = stored.credits
        return user

    async def find_user_by_stripe_customer(self, customer_id: str) -> Optional[UserAccount]:
        return await self._find_one(UserAccount, {"stripe_customer_id": customer_id})

    async def adjust_user_credits(
        self, user_id: str, delta: int, floor: Optional[int] = 0
    ) -> Optional[UserAccount]:
        return await self._adjust(UserAccount, user_id, "credits", delta, floor)

    # Services
    async def add_service(self, service: Service) -> Service:
        return await self._insert(service)

    async def get_service(self, service_id: str) -> Optional[Service]:
        return await self._get(Service, service_id)

    # Bookings
    async def add_booking(self, booking: Booking) -> Booking:
        return await self._insert(booking)

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        return await self._get(Booking, booking_id)

    async def update_booking(self, booking: Booking) -> Booking:
        return await self._set(booking)

    async def delete_booking(self, booking_id: str) -> None:
        await self._db[Booking.collection_name].delete_one({"_id": booking_id})

    async def find_bookings(
        self,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[BookingStatus] = None,
    ) -> List[Booking]:
        query: Dict[str, Any] = {}
        if customer_id is not None:
            query["customer_id"] = customer_id
        if provider_id is not None:
            query["provider_id"] = provider_id
        if status is not None:
            query["status"] = BookingStatus(status).value
        return await self._find(Booking, query)

    # Payments
    async def add_payment(self, payment: Payment) -> Payment:
        return await self._insert(payment)

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        return await self._get(Payment, payment_id)

    async def update_payment(self, payment: Payment) -> Payment:
        return await self._set(payment)

    async def transition_payment_status(
        self,
        payment_id: str,
        expected: PaymentStatus,
        target: PaymentStatus,
        **fields: Any,
    ) -> Optional[Payment]:
        doc = await self._db[Payment.collection_name].find_one_and_update(
            {"_id": payment_id, "status": PaymentStatus(expected).value},
            {"$set": {**fields, "status": PaymentStatus(target).value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(Payment, doc)

    async def find_payment_by_intent(self, payment_intent_id: str) -> Optional[Payment]:
        return await self._find_one(Payment, {"stripe_payment_intent_id": payment_intent_id})

    async def find_payment_by_booking(self, booking_id: str) -> Optional[Payment]:
        return await self._find_one(Payment, {"booking_id": booking_id})

    async def find_stale_payments(
        self, statuses: Sequence[PaymentStatus], updated_before: datetime
    ) -> List[Payment]:
        query = {
            "status": {"$in": [PaymentStatus(s).value for s in statuses]},
            "updated_at": {"$lt": updated_before},
        }
        return await self._find(Payment, query, sort_field="updated_at", direction=1)

    # Credit ledger
    async def add_credit_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        return await self._insert(tx)

    async def get_credit_transactions(self, user_id: str) -> Iterable[CreditTransaction]:
        return await self._find(CreditTransaction, {"user_id": user_id}, direction=1)

    async def find_credit_transaction(
        self,
        user_id: str,
        reference: str,
        tx_type: Optional[CreditTransactionType] = None,
    ) -> Optional[CreditTransaction]:
        query: Dict[str, Any] = {"user_id": user_id, "reference": reference}
        if tx_type is not None:
            query["type"] = CreditTransactionType(tx_type).value
        return await self._find_one(CreditTransaction, query)

    # Wallets
    async def add_wallet(self, wallet: Wallet) -> Wallet:
        return await self._insert(wallet)

    async def get_wallet(self, wallet_id: str) -> Optional[Wallet]:
        return await self._get(Wallet, wallet_id)

    async def get_wallet_by_user(self, user_id: str) -> Optional[Wallet]:
        return await self._find_one(Wallet, {"user_id": user_id})

    async def find_wallet_by_account(self, stripe_account_id: str) -> Optional[Wallet]:
        return await self._find_one(Wallet, {"stripe_account_id": stripe_account_id})

    async def update_wallet(self, wallet: Wallet) -> Wallet:
        await self._set(wallet, exclude=("balance",))
        stored = await self.get_wallet(wallet.id)  # type: ignore[arg-type]
        if stored is not None:
            wallet.balance = stored.balance
        return wallet

    async def adjust_wallet_balance(
        self, wallet_id: str, delta: float, floor: Optional[float] = 0.0
    ) -> Optional[Wallet]:
        return await self._adjust(Wallet, wallet_id, "balance", delta, floor)

    async def add_wallet_transaction(self, tx: WalletTransaction) -> WalletTransaction:
        return await self._insert(tx)

    async def update_wallet_transaction(self, tx: WalletTransaction) -> WalletTransaction:
        return await self._set(tx)

    async def get_wallet_transactions(self, wallet_id: str) -> Iterable[WalletTransaction]:
        return await self._find(WalletTransaction, {"wallet_id": wallet_id})

    async def find_wallet_transaction_by_payment(
        self, stripe_payment_id: str
    ) -> Optional[WalletTransaction]:
        return await self._find_one(WalletTransaction, {"stripe_payment_id": stripe_payment_id})

    # Subscriptions
    async def add_subscription(self, subscription: Subscription) -> Subscription:
        return await self._insert(subscription)

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return await self._get(Subscription, subscription_id)

    async def find_subscription_by_stripe_id(
        self, stripe_subscription_id: str
    ) -> Optional[Subscription]:
        return await self._find_one(
            Subscription, {"stripe_subscription_id": stripe_subscription_id}
        )

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        return await self._set(subscription)

    async def get_user_subscriptions(self, user_id: str) -> List[Subscription]:
        return await self._find(Subscription, {"user_id": user_id})

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        return await self._insert(notification)

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        return await self._insert(entry)

    async def get_ledger_entries(self, user_id: Optional[str] = None) -> List[LedgerEntry]:
        query: Dict[str, Any] = {} if user_id is None else {"user_id": user_id}
        return await self._find(LedgerEntry, query, direction=1)
