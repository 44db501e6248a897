from __future__ import annotations

import logging

from ..db.base import BaseDBManager
from ..errors import NotFoundError, ValidationError
from ..models.credit_transaction import CreditTransactionType
from ..models.user import UserAccount, UserRole
from .credit_service import CreditService


logger = logging.getLogger(__name__)


class UserService:
    """Registration and lookup of marketplace users."""

    def __init__(self, db: BaseDBManager, credits: CreditService, signup_bonus: int = 20) -> None:
        self._db = db
        self._credits = credits
        self._signup_bonus = signup_bonus

    async def register_user(self, name: str, email: str, role: UserRole = UserRole.CUSTOMER) -> UserAccount:
        if not name or not email:
            raise ValidationError("name and email are required")
        user = await self._db.add_user(UserAccount(name=name, email=email, role=UserRole(role)))
        logger.info("Registered %s %s", user.role.value, user.id)

        # Only customers start with credits
        if user.role == UserRole.CUSTOMER and self._signup_bonus > 0:
            user = await self._credits.grant_credits(
                user.id,  # type: ignore[arg-type]
                self._signup_bonus,
                CreditTransactionType.ADJUSTMENT,
                "Initial signup credits",
            )
        return user

    async def get_user(self, user_id: str) -> UserAccount:
        user = await self._db.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        return user
