from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel

from ..access.ownership import AccessController
from ..access.policy import Action, Principal, Resource
from ..db.base import BaseDBManager, DuplicateRecordError
from ..errors import (
    AuthorizationError,
    InsufficientFundsError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from ..gateway.base import PaymentGateway, from_minor_units, to_minor_units
from ..logging.ledger_logger import LedgerLogger
from ..models.booking import Booking
from ..models.payment import Payment
from ..models.user import UserRole
from ..models.wallet import (
    Wallet,
    WalletTransaction,
    WalletTransactionStatus,
    WalletTransactionType,
    WalletUserType,
)


logger = logging.getLogger(__name__)

WALLET_DEPOSIT = "wallet_deposit"


class WalletAudit(BaseModel):
    wallet_id: str
    balance: float
    transaction_total: float
    drift: float
    consistent: bool


class WalletService:
    """
    Currency wallets: deposits, provider payouts and escrow releases.

    A balance change pairs a conditional store update with one
    `WalletTransaction`. Deposits write the transaction first, keyed by the
    intent id; the pair is not atomic, and `audit_balance` reports any drift.
    """

    def __init__(
        self,
        db: BaseDBManager,
        gateway: PaymentGateway,
        ledger: LedgerLogger,
        access: AccessController,
        currency: str = "usd",
        frontend_url: str = "http://localhost:5173",
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._ledger = ledger
        self._access = access
        self._currency = currency
        self._frontend_url = frontend_url.rstrip("/")

    async def get_or_create_wallet(self, user_id: str) -> Wallet:
        wallet = await self._db.get_wallet_by_user(user_id)
        if wallet is not None:
            return wallet
        user = await self._db.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        user_type = WalletUserType.PROVIDER if user.role == UserRole.PROVIDER else WalletUserType.CUSTOMER
        try:
            wallet = await self._db.add_wallet(Wallet(user_id=user_id, user_type=user_type))
        except DuplicateRecordError:
            # Created concurrently
            return await self._db.get_wallet_by_user(user_id)  # type: ignore[return-value]
        logger.info("Created %s wallet %s for user %s", user_type.value, wallet.id, user_id)
        return wallet

    async def get_wallet(self, principal: Principal) -> Wallet:
        await self._access.authorize(principal, Resource.WALLET, Action.READ)
        return await self.get_or_create_wallet(principal.user_id)

    async def list_transactions(self, principal: Principal) -> Iterable[WalletTransaction]:
        await self._access.authorize(principal, Resource.WALLET, Action.READ)
        wallet = await self.get_or_create_wallet(principal.user_id)
        return await self._db.get_wallet_transactions(wallet.id)  # type: ignore[arg-type]

    async def connect_bank_account(self, principal: Principal) -> Dict[str, str]:
        await self._access.authorize(principal, Resource.WALLET, Action.UPDATE)
        if principal.role != UserRole.PROVIDER:
            raise AuthorizationError("Only service providers can connect bank accounts")

        user = await self._db.get_user(principal.user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": principal.user_id})
        wallet = await self.get_or_create_wallet(principal.user_id)

        if not wallet.stripe_account_id:
            account = await self._gateway.create_connected_account(
                email=user.email, metadata={"userId": principal.user_id}
            )
            wallet.stripe_account_id = account.id
            wallet = await self._db.update_wallet(wallet)
            logger.info("Created connected account %s for provider %s", account.id, principal.user_id)

        link = await self._gateway.create_account_link(
            wallet.stripe_account_id,  # type: ignore[arg-type]
            refresh_url=f"{self._frontend_url}/provider/wallet/connect-bank",
            return_url=f"{self._frontend_url}/provider/wallet/bank-connected",
        )
        return {"url": link.url, "account_id": wallet.stripe_account_id}  # type: ignore[dict-item]

    async def mark_account_status(
        self, account_id: str, payouts_enabled: bool, correlation_id: Optional[str] = None
    ) -> Optional[Wallet]:
        """Reflect a connected account's payout capability onto its wallet."""
        wallet = await self._db.find_wallet_by_account(account_id)
        if wallet is None:
            logger.warning("No wallet linked to connected account %s", account_id)
            return None
        if wallet.bank_account_connected == payouts_enabled:
            return wallet
        wallet.bank_account_connected = payouts_enabled
        wallet = await self._db.update_wallet(wallet)
        await self._ledger.log_transaction(
            user_id=wallet.user_id,
            message="Payout account status changed",
            details={"account_id": account_id, "bank_account_connected": payouts_enabled},
            correlation_id=correlation_id,
        )
        return wallet

    async def create_deposit_intent(self, principal: Principal, amount: float) -> Dict[str, Any]:
        await self._access.authorize(principal, Resource.WALLET, Action.UPDATE)
        if amount is None or amount <= 0:
            raise ValidationError("Please provide a valid amount to add", details={"amount": amount})
        if principal.role != UserRole.CUSTOMER:
            raise AuthorizationError("Only customers can add money to their wallet")

        user = await self._db.get_user(principal.user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": principal.user_id})
        wallet = await self.get_or_create_wallet(principal.user_id)

        if not wallet.stripe_customer_id:
            customer = await self._gateway.create_customer(
                email=user.email, name=user.name, metadata={"userId": user.id or ""}
            )
            wallet.stripe_customer_id = customer.id
            wallet = await self._db.update_wallet(wallet)

        intent = await self._gateway.create_payment_intent(
            amount=to_minor_units(amount),
            currency=self._currency,
            customer_id=wallet.stripe_customer_id,
            metadata={"userId": principal.user_id, "walletId": wallet.id or "", "type": WALLET_DEPOSIT},
        )
        return {"client_secret": intent.client_secret, "payment_intent_id": intent.id}

    async def confirm_deposit(
        self, principal: Principal, payment_intent_id: str, amount: Optional[float] = None
    ) -> WalletTransaction:
        """
        Credit a completed deposit intent to the caller's wallet.

        The intent is re-read from the gateway: it must have succeeded,
        belong to the caller and be a wallet deposit. The credited amount
        always comes from the intent. Confirming the same intent again
        returns the original transaction.
        """
        await self._access.authorize(principal, Resource.WALLET, Action.UPDATE)
        if not payment_intent_id:
            raise ValidationError("Payment intent ID is required")

        existing = await self._db.find_wallet_transaction_by_payment(payment_intent_id)
        if existing is not None:
            if existing.user_id != principal.user_id:
                raise AuthorizationError("Not authorized to confirm this payment")
            logger.info("Deposit %s already applied; returning existing transaction", payment_intent_id)
            return existing

        intent = await self._gateway.retrieve_payment_intent(payment_intent_id)
        if intent.status != "succeeded":
            raise InvalidStateError(
                "Payment has not been completed",
                condition="payment_intent_succeeded",
                gateway_status=intent.status,
            )
        if intent.metadata.get("userId") != principal.user_id:
            raise AuthorizationError("Not authorized to confirm this payment")
        if intent.metadata.get("type") != WALLET_DEPOSIT:
            raise ValidationError("Payment intent is not a wallet deposit")

        received = from_minor_units(intent.amount_received or intent.amount)
        if amount is not None and round(amount, 2) != received:
            raise ValidationError(
                "Amount does not match the confirmed payment",
                details={"amount": amount, "received": received},
            )

        wallet = await self.get_or_create_wallet(principal.user_id)
        # The intent id is unique among wallet transactions; the insert is the replay guard
        try:
            tx = await self._db.add_wallet_transaction(
                WalletTransaction(
                    wallet_id=wallet.id,  # type: ignore[arg-type]
                    user_id=principal.user_id,
                    amount=received,
                    type=WalletTransactionType.DEPOSIT,
                    status=WalletTransactionStatus.PENDING,
                    stripe_payment_id=payment_intent_id,
                    description="Added money to wallet",
                )
            )
        except DuplicateRecordError:
            existing = await self._db.find_wallet_transaction_by_payment(payment_intent_id)
            logger.info("Deposit %s confirmed concurrently; returning existing transaction", payment_intent_id)
            return existing  # type: ignore[return-value]

        updated = await self._db.adjust_wallet_balance(wallet.id, received, floor=None)  # type: ignore[arg-type]
        if updated is None:
            tx.status = WalletTransactionStatus.FAILED
            await self._db.update_wallet_transaction(tx)
            raise NotFoundError("Wallet not found", details={"wallet_id": wallet.id})
        tx.status = WalletTransactionStatus.COMPLETED
        tx = await self._db.update_wallet_transaction(tx)

        await self._ledger.log_transaction(
            user_id=principal.user_id,
            message="Wallet deposit confirmed",
            details={"amount": received, "payment_intent_id": payment_intent_id, "new_balance": updated.balance},
        )
        return tx

    async def withdraw(self, principal: Principal, amount: float) -> WalletTransaction:
        await self._access.authorize(principal, Resource.WALLET, Action.UPDATE)
        if amount is None or amount <= 0:
            raise ValidationError("Please provide a valid amount to withdraw", details={"amount": amount})
        if principal.role != UserRole.PROVIDER:
            raise AuthorizationError("Only service providers can withdraw funds")

        wallet = await self.get_or_create_wallet(principal.user_id)
        if not wallet.stripe_account_id or not wallet.bank_account_connected:
            raise InvalidStateError(
                "Please connect a bank account first", condition="bank_account_connected"
            )
        if amount > wallet.balance:
            raise InsufficientFundsError(requested=amount, available=wallet.balance)

        transfer = await self._gateway.create_transfer(
            amount=to_minor_units(amount),
            currency=self._currency,
            destination=wallet.stripe_account_id,
            metadata={"userId": principal.user_id, "walletId": wallet.id or ""},
        )

        updated = await self._db.adjust_wallet_balance(wallet.id, -amount, floor=0.0)  # type: ignore[arg-type]
        if updated is None:
            # The balance moved between the check and the transfer
            await self._db.add_wallet_transaction(
                WalletTransaction(
                    wallet_id=wallet.id,  # type: ignore[arg-type]
                    user_id=principal.user_id,
                    amount=-amount,
                    type=WalletTransactionType.WITHDRAWAL,
                    status=WalletTransactionStatus.FAILED,
                    stripe_transfer_id=transfer.id,
                    description="Withdrawal to bank account (balance changed during transfer)",
                )
            )
            await self._ledger.log_error(
                message="Wallet balance changed during withdrawal",
                details={"amount": amount, "transfer_id": transfer.id, "wallet_id": wallet.id},
                user_id=principal.user_id,
            )
            logger.error("Transfer %s sent but wallet %s could not be debited", transfer.id, wallet.id)
            raise InvalidStateError(
                "Wallet balance changed during withdrawal",
                condition="balance_unchanged",
                transfer_id=transfer.id,
            )

        tx = await self._db.add_wallet_transaction(
            WalletTransaction(
                wallet_id=wallet.id,  # type: ignore[arg-type]
                user_id=principal.user_id,
                amount=-amount,
                type=WalletTransactionType.WITHDRAWAL,
                status=WalletTransactionStatus.COMPLETED,
                stripe_transfer_id=transfer.id,
                description="Withdrawal to bank account",
            )
        )
        await self._ledger.log_transaction(
            user_id=principal.user_id,
            message="Wallet withdrawal",
            details={"amount": amount, "transfer_id": transfer.id, "new_balance": updated.balance},
        )
        return tx

    async def credit_escrow_release(
        self, payment: Payment, booking: Booking, correlation_id: Optional[str] = None
    ) -> WalletTransaction:
        wallet = await self.get_or_create_wallet(payment.provider_id)
        updated = await self._db.adjust_wallet_balance(wallet.id, payment.amount, floor=None)  # type: ignore[arg-type]
        if updated is None:
            raise NotFoundError("Wallet not found", details={"wallet_id": wallet.id})
        tx = await self._db.add_wallet_transaction(
            WalletTransaction(
                wallet_id=wallet.id,  # type: ignore[arg-type]
                user_id=payment.provider_id,
                amount=payment.amount,
                type=WalletTransactionType.SERVICE_PAYMENT,
                status=WalletTransactionStatus.COMPLETED,
                booking_id=booking.id,
                description=f"Payment for booking #{booking.id}",
            )
        )
        await self._ledger.log_transaction(
            user_id=payment.provider_id,
            message="Escrow released to wallet",
            details={
                "amount": payment.amount,
                "payment_id": payment.id,
                "booking_id": booking.id,
                "new_balance": updated.balance,
            },
            correlation_id=correlation_id,
        )
        return tx

    async def audit_balance(self, wallet_id: str) -> WalletAudit:
        wallet = await self._db.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError("Wallet not found", details={"wallet_id": wallet_id})
        total = round(
            sum(
                tx.amount
                for tx in await self._db.get_wallet_transactions(wallet_id)
                if tx.status == WalletTransactionStatus.COMPLETED
            ),
            2,
        )
        drift = round(wallet.balance - total, 2)
        audit = WalletAudit(
            wallet_id=wallet_id,
            balance=wallet.balance,
            transaction_total=total,
            drift=drift,
            consistent=drift == 0,
        )
        if drift:
            logger.error("Wallet %s balance drift: %.2f", wallet_id, drift)
            await self._ledger.log_error(
                message="Wallet balance does not match transactions",
                details=audit.model_dump(),
                user_id=wallet.user_id,
            )
        return audit
