from __future__ import annotations

import logging
from typing import Iterable, Optional

from pydantic import BaseModel

from ..cache.base import AsyncCacheBackend, credits_key
from ..db.base import BaseDBManager, DuplicateRecordError
from ..errors import InsufficientCreditsError, NotFoundError, ValidationError
from ..logging.ledger_logger import LedgerLogger
from ..models.credit_transaction import CreditTransaction, CreditTransactionType
from ..models.user import UserAccount


logger = logging.getLogger(__name__)


class CreditAudit(BaseModel):
    user_id: str
    balance: int
    ledger_total: int
    drift: int
    consistent: bool


class CreditService:
    """
    High-level credit ledger service.

    Every balance mutation is a conditional store update paired with exactly
    one `CreditTransaction`. Deductions update the balance first, grants
    write the ledger entry first. The two writes are NOT atomic: a crash
    between them leaves balance and ledger apart, which `audit_balance`
    detects.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        cache: Optional[AsyncCacheBackend] = None,
        cache_ttl_seconds: int = 300,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._cache = cache
        self._cache_ttl = cache_ttl_seconds

    async def has_enough_credits(self, user_id: str, required: int) -> bool:
        user = await self._db.get_user(user_id)
        if user is None:
            return False
        return user.credits >= required

    async def deduct_credits(
        self,
        user_id: str,
        amount: int,
        description: str,
        reference: str | None = None,
        correlation_id: str | None = None,
    ) -> UserAccount:
        """
        Deduct credits from a user account.

        Raises NotFoundError for an unknown user and InsufficientCreditsError
        (with required/available) when the balance cannot cover `amount`;
        the balance is left unchanged in both cases.
        """
        if amount <= 0:
            raise ValidationError("amount must be positive", details={"amount": amount})

        async with self._db.transaction():
            user = await self._db.get_user(user_id)
            if user is None:
                raise NotFoundError("User not found", details={"user_id": user_id})

            updated = await self._db.adjust_user_credits(user_id, -amount, floor=0)
            if updated is None:
                # Re-read so the shortfall reflects concurrent writers too
                current = await self._db.get_user(user_id)
                available = current.credits if current is not None else 0
                await self._ledger.log_error(
                    message="Insufficient credits for deduction",
                    details={"required": amount, "available": available},
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise InsufficientCreditsError(required=amount, available=available)

            await self._db.add_credit_transaction(
                CreditTransaction(
                    user_id=user_id,
                    amount=-amount,
                    type=CreditTransactionType.USAGE,
                    description=description,
                    reference=reference,
                )
            )

            await self._ledger.log_transaction(
                user_id=user_id,
                message="Credits deducted",
                details={
                    "amount": amount,
                    "new_balance": updated.credits,
                    "description": description,
                    "reference": reference,
                },
                correlation_id=correlation_id,
            )
            await self._invalidate(user_id)
            logger.info("Deducted %d credits from user %s (balance %d)", amount, user_id, updated.credits)
            return updated

    async def grant_credits(
        self,
        user_id: str,
        amount: int,
        tx_type: CreditTransactionType,
        description: str,
        reference: str | None = None,
        correlation_id: str | None = None,
    ) -> UserAccount:
        """
        Add credits to a user account.

        The ledger entry is written first. A non-null `reference` is unique
        per user and type, so a repeated grant for the same reference leaves
        the balance unchanged and returns the user as stored.
        """
        if amount <= 0:
            raise ValidationError("amount must be positive", details={"amount": amount})

        async with self._db.transaction():
            user = await self._db.get_user(user_id)
            if user is None:
                raise NotFoundError("User not found", details={"user_id": user_id})

            try:
                await self._db.add_credit_transaction(
                    CreditTransaction(
                        user_id=user_id,
                        amount=amount,
                        type=tx_type,
                        description=description,
                        reference=reference,
                    )
                )
            except DuplicateRecordError:
                logger.info("Credits for %s already granted to user %s", reference, user_id)
                return user

            updated = await self._db.adjust_user_credits(user_id, amount, floor=None)
            if updated is None:
                raise NotFoundError("User not found", details={"user_id": user_id})

            await self._ledger.log_transaction(
                user_id=user_id,
                message="Credits granted",
                details={
                    "amount": amount,
                    "type": CreditTransactionType(tx_type).value,
                    "new_balance": updated.credits,
                    "description": description,
                    "reference": reference,
                },
                correlation_id=correlation_id,
            )
            await self._invalidate(user_id)
            logger.info("Granted %d credits to user %s (balance %d)", amount, user_id, updated.credits)
            return updated

    async def has_reference(
        self,
        user_id: str,
        reference: str,
        tx_type: CreditTransactionType | None = None,
    ) -> bool:
        """True if a ledger entry with this reference already exists for the user."""
        existing = await self._db.find_credit_transaction(user_id, reference, tx_type)
        return existing is not None

    async def get_balance(self, user_id: str) -> int:
        """
        Current credit balance.

        Primary source: cache (invalidated on every credit modification).
        Fallback: the user record.
        """
        if self._cache:
            cached = await self._cache.get(credits_key(user_id))
            if isinstance(cached, int):
                return cached

        user = await self._db.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        if self._cache:
            await self._cache.set(credits_key(user_id), user.credits, ttl_seconds=self._cache_ttl)
        return user.credits

    async def get_credit_history(self, user_id: str) -> Iterable[CreditTransaction]:
        # Stores return oldest first
        return list(reversed(list(await self._db.get_credit_transactions(user_id))))

    async def audit_balance(self, user_id: str) -> CreditAudit:
        user = await self._db.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        ledger_total = sum(tx.amount for tx in await self._db.get_credit_transactions(user_id))
        drift = user.credits - ledger_total
        audit = CreditAudit(
            user_id=user_id,
            balance=user.credits,
            ledger_total=ledger_total,
            drift=drift,
            consistent=drift == 0,
        )
        if drift:
            logger.error("Credit ledger drift for user %s: %d", user_id, drift)
            await self._ledger.log_error(
                message="Credit balance does not match ledger",
                details=audit.model_dump(),
                user_id=user_id,
            )
        return audit

    async def _invalidate(self, user_id: str) -> None:
        if self._cache:
            await self._cache.delete(credits_key(user_id))
